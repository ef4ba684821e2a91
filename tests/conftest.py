from dataclasses import replace
from datetime import datetime, timezone

import pytest

from dispatch.change_feed import ProviderChangeFeed
from dispatch.dispatcher import Dispatcher
from dispatch.scheduling import ManualScheduler
from providers.models import Provider
from providers.policy import SearchPolicy
from store.memory import InMemoryDispatchStore

# Example: Sao Paulo city center
ORIGIN = (-23.55, -46.63)


class RecordingPushService:
    """
    Push stand-in: keeps every notification and revocation in order.
    """
    def __init__(self):
        self.sent = []
        self.revoked = []

    def notify(self, user_id, request_id, payload):
        self.sent.append((user_id, request_id, payload))
        return True

    def revoke_offer(self, provider_ids, request_id, reason="taken"):
        self.revoked.append((list(provider_ids), request_id, reason))
        return len(provider_ids)

    def offers_to(self, user_id):
        return [payload for uid, _, payload in self.sent if uid == user_id and payload.TYPE == "request_offer"]

    def of_type(self, payload_type):
        return [(uid, payload) for uid, _, payload in self.sent if payload.TYPE == payload_type]


@pytest.fixture
def scheduler():
    return ManualScheduler(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def feed():
    return ProviderChangeFeed()


@pytest.fixture
def store(feed):
    return InMemoryDispatchStore(feed=feed)


@pytest.fixture
def push():
    return RecordingPushService()


@pytest.fixture
def policy():
    # long heartbeat window so multi-minute virtual runs do not need re-pings
    return SearchPolicy(heartbeat_timeout_seconds=3600)


@pytest.fixture
def dispatcher(store, scheduler, push, policy):
    d = Dispatcher(store, scheduler=scheduler, push_service=push, policy=policy)
    yield d
    d.shutdown()


@pytest.fixture
def make_provider(scheduler):
    """
    Factory for online providers with a heartbeat at the scheduler's current time.
    """
    def _make(provider_id, lat, lng, services=("mechanic",), **overrides):
        provider = Provider.new(
            provider_id,
            lat,
            lng,
            services=services,
            is_online=True,
            last_heartbeat_at=scheduler.now(),
        )
        return replace(provider, **overrides) if overrides else provider
    return _make


@pytest.fixture
def request_data():
    def _data(service_type="mechanic", lat=ORIGIN[0], lng=ORIGIN[1], **extra):
        data = {
            "service_type": service_type,
            "origin": {"lat": lat, "lng": lng, "address": "Praca da Se, 1"},
        }
        if service_type == "tow" and "destination" not in extra:
            data["destination"] = {"lat": -23.56, "lng": -46.65, "address": "Oficina Central"}
        data.update(extra)
        return data
    return _data
