from datetime import timedelta

import pytest

from dispatch.state_machines.provider_state import (
    ProviderStateException,
    expire_stale_providers,
    go_offline,
    is_stale,
    record_heartbeat,
)
from providers.policy import SearchPolicy, default_search_policy


def test_heartbeat_brings_provider_online_and_moves_it(make_provider, scheduler):
    provider = go_offline(make_provider("prv-1", -23.55, -46.63))
    later = scheduler.now() + timedelta(minutes=5)

    updated = record_heartbeat(provider, later, (-23.56, -46.64))

    assert updated.is_online
    assert updated.last_heartbeat_at == later
    assert updated.location == (-23.56, -46.64)
    assert record_heartbeat(updated, later).location == (-23.56, -46.64)


def test_blocked_provider_cannot_heartbeat(make_provider, scheduler):
    with pytest.raises(ProviderStateException):
        record_heartbeat(make_provider("prv-1", 0, 0, is_blocked=True), scheduler.now())


def test_invalid_location_is_rejected(make_provider, scheduler):
    with pytest.raises(ProviderStateException):
        record_heartbeat(make_provider("prv-1", 0, 0), scheduler.now(), (95.0, 0.0))


def test_expire_stale_providers(store, make_provider, scheduler, feed):
    store.save_provider(make_provider("prv-fresh", -23.55, -46.63))
    store.save_provider(make_provider("prv-stale", -23.55, -46.63))
    store.save_provider(go_offline(make_provider("prv-offline", -23.55, -46.63)))

    scheduler.advance(20)
    store.save_provider(record_heartbeat(store.get_provider("prv-fresh"), scheduler.now()))

    changes = []
    feed.subscribe(changes.append)
    expired = expire_stale_providers(store, scheduler.now())

    assert expired == ["prv-stale"]
    assert not store.get_provider("prv-stale").is_online
    assert store.get_provider("prv-fresh").is_online
    assert [change.provider_id for change in changes] == ["prv-stale"]
    assert changes[0].is_removal


def test_is_stale_uses_policy_window(make_provider, scheduler):
    provider = make_provider("prv-1", 0, 0)
    relaxed = SearchPolicy(heartbeat_timeout_seconds=60)
    later = scheduler.now() + timedelta(seconds=30)

    assert is_stale(provider, later, default_search_policy())
    assert not is_stale(provider, later, relaxed)


@pytest.mark.parametrize("overrides", [
    {"radius_ladder_km": []},
    {"radius_ladder_km": [3, 3, 5]},
    {"radius_ladder_km": [0, 5]},
    {"expansion_interval_seconds": 0},
    {"cooldown_retry_seconds": -1},
    {"heartbeat_timeout_seconds": 0},
])
def test_policy_validation(overrides):
    with pytest.raises(ValueError):
        SearchPolicy(**overrides).validate()
