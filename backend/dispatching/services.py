"""
Process-wide dispatch services for the Django backend.

One change feed, one store, one dispatcher (and its live search sessions) per process.
Tests swap the scheduler for a ManualScheduler through reset_services().
"""

import logging
import threading

from dispatch.change_feed import ProviderChangeFeed
from dispatch.dispatcher import Dispatcher
from dispatch.lifecycle import RequestLifecycle
from notifications.push_client import PUSH_GATEWAY_URL, PushClient

from .scheduling import DjangoThreadingScheduler
from .store import DjangoDispatchStore

logger = logging.getLogger(__name__)

_lock = threading.Lock()
_services = {}


def _build(scheduler=None, push_service=None):
    feed = ProviderChangeFeed()
    store = DjangoDispatchStore(feed=feed)
    scheduler = scheduler or DjangoThreadingScheduler()
    if push_service is None and PUSH_GATEWAY_URL:
        push_service = PushClient()
    if push_service is None:
        logger.info("PUSH_GATEWAY_URL not set; push notifications are disabled")

    dispatcher = Dispatcher(store, scheduler=scheduler, push_service=push_service, change_feed=feed)
    return {
        "feed": feed,
        "store": store,
        "scheduler": scheduler,
        "push": push_service,
        "dispatcher": dispatcher,
        "lifecycle": RequestLifecycle(store, clock=scheduler.now),
    }


def _get(name):
    with _lock:
        if not _services:
            _services.update(_build())
        return _services[name]


def reset_services(scheduler=None, push_service=None):
    """
    Stop every live search and rebuild the services.
    """
    with _lock:
        if _services:
            _services["dispatcher"].shutdown()
            _services.clear()
        _services.update(_build(scheduler, push_service))
        return dict(_services)


def get_change_feed() -> ProviderChangeFeed:
    return _get("feed")


def get_store() -> DjangoDispatchStore:
    return _get("store")


def get_scheduler():
    return _get("scheduler")


def get_push_service():
    return _get("push")


def get_dispatcher() -> Dispatcher:
    return _get("dispatcher")


def get_lifecycle() -> RequestLifecycle:
    return _get("lifecycle")
