from dataclasses import replace
from datetime import timedelta
from decimal import Decimal

import pytest

from dispatch.lifecycle import RequestLifecycle
from dispatch.state_machines.request_state import RequestStateException, StaleRequestError
from fees.models import CustomFee
from service_requests.models import Party, PaymentMethod, PaymentStatus, RequestStatus
from service_requests.validation import RequestValidationError

ORIGIN = (-23.55, -46.63)
KM = 1 / 111.195


@pytest.fixture
def lifecycle(store, scheduler):
    return RequestLifecycle(store, clock=scheduler.now)


@pytest.fixture
def assigned(dispatcher, store, make_provider, request_data):
    """
    A request accepted by prv-1, ready to negotiate.
    """
    def _assigned(**extra):
        store.save_provider(make_provider("prv-1", ORIGIN[0] + 1 * KM, ORIGIN[1]))
        request = dispatcher.submit_request("client-1", request_data(**extra))
        assert dispatcher.resolve_provider_acceptance(request.id, "prv-1")
        return request.id
    return _assigned


def _to_in_service(lifecycle, request_id, value="150.00"):
    lifecycle.propose_value(request_id, Party.PROVIDER, "prv-1", value)
    lifecycle.accept_value(request_id, Party.CLIENT, "client-1")
    lifecycle.confirm_value(request_id, "client-1")
    return lifecycle.mark_paid(request_id)


def test_negotiation_round_trip(lifecycle, assigned):
    request_id = assigned()

    proposed = lifecycle.propose_value(request_id, Party.PROVIDER, "prv-1", "180.00")
    assert proposed.proposed_value == Decimal("180.00")
    assert proposed.last_proposal_by == Party.PROVIDER

    countered = lifecycle.propose_value(request_id, Party.CLIENT, "client-1", 150)
    assert countered.proposed_value == Decimal("150")

    accepted = lifecycle.accept_value(request_id, Party.PROVIDER, "prv-1")
    assert accepted.value_accepted
    assert accepted.agreed_value == Decimal("150")

    confirmed = lifecycle.confirm_value(request_id, "client-1")
    assert confirmed.status == RequestStatus.AWAITING_PAYMENT
    assert confirmed.payment_status == PaymentStatus.PENDING

    reopened = lifecycle.reopen_negotiation(request_id, Party.CLIENT, "client-1")
    assert reopened.status == RequestStatus.NEGOTIATING
    assert reopened.agreed_value is None


def test_wrong_actor_is_rejected(lifecycle, assigned):
    request_id = assigned()
    with pytest.raises(RequestStateException):
        lifecycle.propose_value(request_id, Party.PROVIDER, "prv-other", "10")
    with pytest.raises(RequestStateException):
        lifecycle.propose_value(request_id, Party.CLIENT, "prv-1", "10")


def test_invalid_value_is_a_validation_error(lifecycle, assigned):
    request_id = assigned()
    with pytest.raises(RequestValidationError):
        lifecycle.propose_value(request_id, Party.PROVIDER, "prv-1", "-3")


def test_client_confirmation_finishes_and_settles(lifecycle, assigned, store):
    request_id = assigned()
    _to_in_service(lifecycle, request_id)

    pending = lifecycle.provider_finish(request_id, "prv-1")
    assert pending.status == RequestStatus.PENDING_CLIENT_CONFIRMATION

    finished = lifecycle.client_confirm_finish(request_id, "client-1")

    assert finished.status == RequestStatus.FINISHED
    record = store.get_fee_record(request_id)
    assert record.application_fee_cents == 2250
    assert record.provider_receives_cents == 12750


def test_dispute_then_finish_again(lifecycle, assigned):
    request_id = assigned()
    _to_in_service(lifecycle, request_id)
    lifecycle.provider_finish(request_id, "prv-1")

    disputed = lifecycle.dispute_finish(request_id, "client-1")
    assert disputed.status == RequestStatus.IN_SERVICE
    assert disputed.provider_finish_requested_at is None

    assert lifecycle.provider_finish(request_id, "prv-1").status == RequestStatus.PENDING_CLIENT_CONFIRMATION


def test_settlement_failure_does_not_undo_finish(lifecycle, assigned, store):
    request_id = assigned()
    store.set_custom_fee("prv-1", CustomFee(enabled=True, percentage=Decimal("0"), fixed_fee=Decimal("999")))
    _to_in_service(lifecycle, request_id, value="20.00")
    lifecycle.provider_finish(request_id, "prv-1")

    finished = lifecycle.client_confirm_finish(request_id, "client-1")

    assert finished.status == RequestStatus.FINISHED
    assert store.get_fee_record(request_id) is None


def test_direct_payment_accrues_on_confirmation(lifecycle, assigned, store):
    request_id = assigned(payment_method=PaymentMethod.DIRECT.value)
    _to_in_service(lifecycle, request_id)
    lifecycle.provider_finish(request_id, "prv-1")
    lifecycle.client_confirm_finish(request_id, "client-1")

    assert store.get_provider("prv-1").pending_fee_balance == Decimal("22.50")


def test_stale_write_is_rejected(lifecycle, assigned, store, scheduler):
    request_id = assigned()
    _to_in_service(lifecycle, request_id)
    lifecycle.provider_finish(request_id, "prv-1")

    class RacingStore:
        """Reads a snapshot, then lets the client confirm before the write lands."""
        def __init__(self, inner):
            self.inner = inner

        def get_request(self, rid):
            snapshot = self.inner.get_request(rid)
            self.inner.save_request(replace(snapshot, status=RequestStatus.FINISHED))
            return snapshot

        def __getattr__(self, name):
            return getattr(self.inner, name)

    racing = RequestLifecycle(RacingStore(store), clock=lambda: scheduler.now() + timedelta(minutes=1))
    with pytest.raises(StaleRequestError):
        racing.dispute_finish(request_id, "client-1")
    assert store.get_request(request_id).status == RequestStatus.FINISHED


def test_unknown_request(lifecycle):
    with pytest.raises(RequestStateException):
        lifecycle.mark_paid("does-not-exist")
