from datetime import datetime, timedelta, timezone

from dispatch.decline_tracker import DeclineTracker

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def test_decline_excludes_until_cleared_for_retry():
    tracker = DeclineTracker(cooldown_seconds=10)
    tracker.record_decline("req-1", "prv-a", T0)

    assert tracker.is_excluded("req-1", "prv-a")
    assert not tracker.is_excluded("req-1", "prv-b")
    assert not tracker.is_excluded("req-2", "prv-a")

    # time alone never releases the pair
    assert tracker.remaining_cooldown("req-1", T0 + timedelta(seconds=60)) == 0.0
    assert tracker.is_excluded("req-1", "prv-a")

    assert tracker.clear_for_retry("req-1", "prv-a")
    assert not tracker.is_excluded("req-1", "prv-a")
    assert not tracker.clear_for_retry("req-1", "prv-a")


def test_redecline_resets_clock():
    tracker = DeclineTracker(cooldown_seconds=10)
    tracker.record_decline("req-1", "prv-a", T0)
    tracker.record_decline("req-1", "prv-a", T0 + timedelta(seconds=4))

    assert tracker.remaining_cooldown("req-1", T0 + timedelta(seconds=4)) == 10.0
    assert len(tracker.outstanding("req-1")) == 1


def test_single_retry_clock_follows_oldest_decline():
    tracker = DeclineTracker(cooldown_seconds=10)
    tracker.record_decline("req-1", "prv-late", T0 + timedelta(seconds=5))
    tracker.record_decline("req-1", "prv-early", T0)

    assert tracker.oldest_decline("req-1").provider_id == "prv-early"
    assert tracker.retry_due_at("req-1") == T0 + timedelta(seconds=10)
    assert tracker.remaining_cooldown("req-1", T0 + timedelta(seconds=7)) == 3.0
    assert [r.provider_id for r in tracker.outstanding("req-1")] == ["prv-early", "prv-late"]


def test_seed_keeps_known_clocks():
    tracker = DeclineTracker()
    tracker.record_decline("req-1", "prv-a", T0)

    added = tracker.seed("req-1", ["prv-a", "prv-b"], T0 + timedelta(seconds=30))

    assert [record.provider_id for record in added] == ["prv-b"]
    assert tracker.oldest_decline("req-1").declined_at == T0
    assert tracker.excluded_ids("req-1") == frozenset({"prv-a", "prv-b"})


def test_clear_request_drops_everything():
    tracker = DeclineTracker()
    tracker.record_decline("req-1", "prv-a", T0)
    tracker.clear_request("req-1")

    assert tracker.excluded_ids("req-1") == frozenset()
    assert tracker.oldest_decline("req-1") is None
    assert tracker.remaining_cooldown("req-1", T0) == 0.0
