import logging

from django.db.models.signals import post_delete, post_save

from dispatch.change_feed import ChangeType, ProviderChange

from .models import ProviderProfile
from .services import get_change_feed

logger = logging.getLogger(__name__)


def publish_provider_saved(sender, instance: ProviderProfile, created: bool, **kwargs):
    """
    Every provider row change is a feed event for the live searches.
    """
    change_type = ChangeType.INSERT if created else ChangeType.UPDATE
    get_change_feed().publish(ProviderChange.upsert(instance.to_domain(), change_type))


def publish_provider_deleted(sender, instance: ProviderProfile, **kwargs):
    get_change_feed().publish(ProviderChange.delete(instance.provider_id))


def connect():
    post_save.connect(publish_provider_saved, sender=ProviderProfile, dispatch_uid="provider_saved_feed")
    post_delete.connect(publish_provider_deleted, sender=ProviderProfile, dispatch_uid="provider_deleted_feed")
