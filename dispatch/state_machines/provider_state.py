import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import List, Optional

from geo.distance import LatLng, is_valid_coordinate
from providers.models import Provider
from providers.policy import SearchPolicy, default_search_policy

logger = logging.getLogger(__name__)


class ProviderStateException(Exception):
    """Raised when an invalid provider presence update is attempted."""
    pass


def record_heartbeat(provider: Provider, now: datetime, location: Optional[LatLng] = None) -> Provider:
    """
    Called on every app ping. Marks the provider online and refreshes the heartbeat
    (and the location, when the ping carries one).
    """
    if provider.is_blocked:
        raise ProviderStateException(f"Provider {provider.id} is blocked and cannot go online")

    if location is not None:
        if not is_valid_coordinate(*location):
            raise ProviderStateException(f"Provider {provider.id} sent an invalid location {location}")
        location = (float(location[0]), float(location[1]))
    else:
        location = provider.location

    return replace(provider, is_online=True, last_heartbeat_at=now, location=location)


def go_offline(provider: Provider) -> Provider:
    return replace(provider, is_online=False)


def is_stale(provider: Provider, now: datetime, policy: SearchPolicy) -> bool:
    if provider.last_heartbeat_at is None:
        return True
    return now - provider.last_heartbeat_at > timedelta(seconds=policy.heartbeat_timeout_seconds)


def expire_stale_providers(store, now: datetime, policy: Optional[SearchPolicy] = None) -> List[str]:
    """
    Presence sweep: providers that stopped heartbeating are taken offline.
    Saving through the store publishes the change, so live searches drop them.
    """
    policy = policy or default_search_policy()
    expired = []
    for provider in store.list_providers():
        if provider.is_online and is_stale(provider, now, policy):
            store.save_provider(go_offline(provider))
            expired.append(provider.id)

    if expired:
        logger.info("Marked %d stale providers offline: %s", len(expired), ", ".join(expired))
    return expired
