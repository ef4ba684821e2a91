import threading

import pytest

from dispatch.dispatcher import Dispatcher
from dispatch.search_session import SearchState
from dispatch.state_machines.request_state import RequestStateException
from providers.models import FinancialStatus
from service_requests.models import Party, RequestStatus
from service_requests.validation import RequestValidationError
from store.memory import InMemoryDispatchStore

ORIGIN = (-23.55, -46.63)
KM = 1 / 111.195


@pytest.fixture
def two_providers(store, make_provider):
    store.save_provider(make_provider("prv-a", ORIGIN[0] + 1 * KM, ORIGIN[1]))
    store.save_provider(make_provider("prv-b", ORIGIN[0] + 2 * KM, ORIGIN[1]))


def test_submit_persists_searching_and_offers(dispatcher, store, push, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())

    stored = store.get_request(request.id)
    assert stored.status == RequestStatus.SEARCHING
    assert stored.provider_id is None
    assert dispatcher.session_for(request.id).state == SearchState.PROVIDER_FOUND

    offer = push.offers_to("prv-a")[0]
    assert offer.request_id == request.id
    assert offer.distance_km == pytest.approx(1.0, abs=0.01)
    assert offer.radius_km == 3
    assert len(push.offers_to("prv-b")) == 1


def test_invalid_submission_writes_nothing(dispatcher, store, request_data):
    with pytest.raises(RequestValidationError):
        dispatcher.submit_request("client-1", request_data(service_type="tow", destination=None))
    assert store.list_requests() == []


def test_exactly_one_provider_wins(dispatcher, store, push, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())

    assert dispatcher.resolve_provider_acceptance(request.id, "prv-a") is True
    assert dispatcher.resolve_provider_acceptance(request.id, "prv-b") is False

    stored = store.get_request(request.id)
    assert stored.status == RequestStatus.NEGOTIATING
    assert stored.provider_id == "prv-a"
    assert dispatcher.session_for(request.id) is None

    assert (["prv-b"], request.id, "taken") in push.revoked
    accepted = push.of_type("request_accepted")
    assert accepted[0][0] == "client-1"
    assert accepted[0][1].provider_id == "prv-a"


def test_concurrent_acceptances_assign_once(dispatcher, store, request_data, make_provider):
    for index in range(8):
        store.save_provider(make_provider(f"prv-{index}", ORIGIN[0] + (index + 1) * 0.2 * KM, ORIGIN[1]))
    request = dispatcher.submit_request("client-1", request_data())

    results = {}
    barrier = threading.Barrier(8)

    def accept(provider_id):
        barrier.wait()
        results[provider_id] = dispatcher.resolve_provider_acceptance(request.id, provider_id)

    threads = [threading.Thread(target=accept, args=(f"prv-{index}",)) for index in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    winners = [provider_id for provider_id, won in results.items() if won]
    assert len(winners) == 1
    assert store.get_request(request.id).provider_id == winners[0]


def test_decline_is_persisted_and_excluded(dispatcher, store, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())

    dispatcher.decline_request(request.id, "prv-a")

    stored = store.get_request(request.id)
    assert stored.declined_provider_ids == frozenset({"prv-a"})
    assert [record.provider_id for record in store.declines_for(request.id)] == ["prv-a"]
    assert [c.provider_id for c in dispatcher.session_for(request.id).candidates] == ["prv-b"]
    assert dispatcher.resolve_provider_acceptance(request.id, "prv-a") is False


def test_cooldown_clear_removes_stored_decline(dispatcher, store, scheduler, request_data, make_provider):
    store.save_provider(make_provider("prv-a", ORIGIN[0] + 1 * KM, ORIGIN[1]))
    request = dispatcher.submit_request("client-1", request_data())

    dispatcher.decline_request(request.id, "prv-a")
    scheduler.advance(10)

    assert store.get_request(request.id).declined_provider_ids == frozenset()
    assert dispatcher.session_for(request.id).state == SearchState.PROVIDER_FOUND
    assert dispatcher.resolve_provider_acceptance(request.id, "prv-a") is True


def test_provider_cancel_restarts_search_without_them(dispatcher, store, push, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())
    dispatcher.resolve_provider_acceptance(request.id, "prv-a")

    dispatcher.provider_cancel(request.id, "prv-a")

    stored = store.get_request(request.id)
    assert stored.status == RequestStatus.SEARCHING
    assert stored.provider_id is None
    assert "prv-a" in stored.declined_provider_ids
    session = dispatcher.session_for(request.id)
    assert [c.provider_id for c in session.candidates] == ["prv-b"]

    canceled = push.of_type("request_canceled")
    assert canceled[-1][0] == "client-1"
    assert canceled[-1][1].canceled_by == "provider"


def test_client_cancel_tears_down_and_notifies_provider(dispatcher, store, push, feed, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())
    dispatcher.resolve_provider_acceptance(request.id, "prv-a")

    dispatcher.client_cancel(request.id, "client-1", "found help")

    stored = store.get_request(request.id)
    assert stored.status == RequestStatus.CANCELED
    assert stored.canceled_by == Party.CLIENT
    assert feed.subscriber_count == 0
    canceled = push.of_type("request_canceled")
    assert canceled[-1][0] == "prv-a"
    assert canceled[-1][1].reason == "found help"


def test_client_cancel_while_searching_revokes_offers(dispatcher, push, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())
    dispatcher.client_cancel(request.id, "client-1")

    assert (["prv-a", "prv-b"], request.id, "canceled") in push.revoked
    assert dispatcher.session_for(request.id) is None


def test_client_cancel_by_someone_else_is_rejected(dispatcher, request_data, two_providers):
    request = dispatcher.submit_request("client-1", request_data())
    with pytest.raises(RequestStateException):
        dispatcher.client_cancel(request.id, "intruder")


def test_timeout_keeps_request_searching(dispatcher, store, scheduler, request_data):
    request = dispatcher.submit_request("client-1", request_data())
    scheduler.advance(36)

    assert dispatcher.session_for(request.id).state == SearchState.TIMEOUT
    assert store.get_request(request.id).status == RequestStatus.SEARCHING

    session = dispatcher.start_search(request.id)
    assert session.state == SearchState.EXPANDING_RADIUS


def test_provider_queue_honours_radar_range(dispatcher, store, make_provider, request_data):
    store.save_provider(make_provider("prv-q", ORIGIN[0], ORIGIN[1], radar_range_km=10))
    near = dispatcher.submit_request("client-1", request_data(lat=ORIGIN[0] + 8 * KM))
    dispatcher.submit_request("client-2", request_data(lat=ORIGIN[0] + 12 * KM))
    dispatcher.submit_request("client-3", request_data(service_type="locksmith"))

    queue = dispatcher.pending_requests_for_provider("prv-q")

    assert queue.reason is None
    assert [request.id for request, _ in queue.requests] == [near.id]
    assert queue.requests[0][1] == pytest.approx(8.0, abs=0.01)


def test_provider_queue_empty_with_reason(dispatcher, store, make_provider):
    store.save_provider(make_provider("prv-off", ORIGIN[0], ORIGIN[1], is_online=False))
    store.save_provider(make_provider("prv-blocked", ORIGIN[0], ORIGIN[1], is_blocked=True))
    store.save_provider(make_provider(
        "prv-owing", ORIGIN[0], ORIGIN[1], financial_status=FinancialStatus.AWAITING_APPROVAL,
    ))
    store.save_provider(make_provider("prv-lost", None, None))

    assert dispatcher.pending_requests_for_provider("prv-off").reason == "offline"
    assert dispatcher.pending_requests_for_provider("prv-unknown").reason == "offline"
    assert dispatcher.pending_requests_for_provider("prv-blocked").reason == "blocked"
    assert dispatcher.pending_requests_for_provider("prv-owing").reason == "blocked"
    assert dispatcher.pending_requests_for_provider("prv-lost").reason == "no_location"


def test_busy_provider_is_not_offered_a_second_request(dispatcher, push, request_data, make_provider, store):
    store.save_provider(make_provider("prv-a", ORIGIN[0] + 1 * KM, ORIGIN[1]))
    first = dispatcher.submit_request("client-1", request_data())
    dispatcher.resolve_provider_acceptance(first.id, "prv-a")

    second = dispatcher.submit_request("client-2", request_data())

    assert dispatcher.session_for(second.id).candidates == []
    assert [offer.request_id for offer in push.offers_to("prv-a")] == [first.id]


def test_provider_who_takes_one_request_leaves_the_other_open_searches(
    dispatcher, push, request_data, make_provider, store
):
    store.save_provider(make_provider("prv-a", ORIGIN[0] + 1 * KM, ORIGIN[1]))
    first = dispatcher.submit_request("client-1", request_data())
    second = dispatcher.submit_request("client-2", request_data())
    assert [offer.request_id for offer in push.offers_to("prv-a")] == [first.id, second.id]

    assert dispatcher.resolve_provider_acceptance(first.id, "prv-a") is True

    session = dispatcher.session_for(second.id)
    assert session.candidates == []
    assert session.state == SearchState.EXPANDING_RADIUS
    assert (["prv-a"], second.id, "search_moved_on") in push.revoked

    assert dispatcher.resolve_provider_acceptance(second.id, "prv-a") is False
    stored = store.get_request(second.id)
    assert stored.status == RequestStatus.SEARCHING
    assert stored.provider_id is None


def test_interleaved_declines_are_both_persisted(scheduler, feed, push, policy, request_data):
    class InterleavingStore(InMemoryDispatchStore):
        """Lets a second decline land between the first decline's read and its write."""
        interleave = None

        def get_request(self, request_id):
            snapshot = super().get_request(request_id)
            pending, self.interleave = self.interleave, None
            if pending is not None:
                pending()
            return snapshot

    store = InterleavingStore(feed=feed)
    dispatcher = Dispatcher(store, scheduler=scheduler, push_service=push, policy=policy)
    request = dispatcher.submit_request("client-1", request_data())

    store.interleave = lambda: dispatcher.decline_request(request.id, "prv-b")
    dispatcher.decline_request(request.id, "prv-a")

    assert store.get_request(request.id).declined_provider_ids == {"prv-a", "prv-b"}
    assert sorted(record.provider_id for record in store.declines_for(request.id)) == ["prv-a", "prv-b"]
    dispatcher.shutdown()


def test_shutdown_cancels_live_searches(dispatcher, scheduler, feed, request_data):
    dispatcher.submit_request("client-1", request_data())
    dispatcher.submit_request("client-2", request_data())

    dispatcher.shutdown()

    assert feed.subscriber_count == 0
    assert scheduler.pending_count == 0
