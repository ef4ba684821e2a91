from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from itertools import product

import pytest

from dispatch.state_machines.request_state import (
    AUTO_FINISH_REASON,
    RequestStateException,
    VALID_TRANSITIONS,
    accept_value,
    assign_provider,
    auto_finish,
    cancel_by_client,
    client_confirm_finish,
    confirm_value,
    dispute_finish,
    is_expired_pending_confirmation,
    is_valid_transition,
    mark_paid,
    propose_value,
    provider_finish,
    release_by_provider,
    reopen_negotiation,
    submit,
)
from service_requests.models import (
    CANONICAL_STATUSES,
    Location,
    Party,
    PaymentStatus,
    RequestStatus,
    ServiceRequest,
    ServiceType,
)

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

ALLOWED = {
    (RequestStatus.IDLE, RequestStatus.SEARCHING),
    (RequestStatus.SEARCHING, RequestStatus.NEGOTIATING),
    (RequestStatus.SEARCHING, RequestStatus.CANCELED),
    (RequestStatus.NEGOTIATING, RequestStatus.AWAITING_PAYMENT),
    (RequestStatus.NEGOTIATING, RequestStatus.SEARCHING),
    (RequestStatus.NEGOTIATING, RequestStatus.CANCELED),
    (RequestStatus.AWAITING_PAYMENT, RequestStatus.IN_SERVICE),
    (RequestStatus.AWAITING_PAYMENT, RequestStatus.NEGOTIATING),
    (RequestStatus.AWAITING_PAYMENT, RequestStatus.CANCELED),
    (RequestStatus.IN_SERVICE, RequestStatus.PENDING_CLIENT_CONFIRMATION),
    (RequestStatus.IN_SERVICE, RequestStatus.CANCELED),
    (RequestStatus.PENDING_CLIENT_CONFIRMATION, RequestStatus.FINISHED),
    (RequestStatus.PENDING_CLIENT_CONFIRMATION, RequestStatus.IN_SERVICE),
}


@pytest.fixture
def searching():
    request = ServiceRequest.new(
        "client-1",
        ServiceType.MECHANIC,
        Location(-23.55, -46.63, "Praca da Se, 1"),
        now=NOW,
    )
    return submit(request, NOW)


def _negotiated(request):
    request = assign_provider(request, "prv-1", NOW)
    request = propose_value(request, Decimal("150.00"), Party.PROVIDER, NOW)
    return accept_value(request, Party.CLIENT, NOW)


@pytest.mark.parametrize("from_status, to_status", list(product(CANONICAL_STATUSES, repeat=2)))
def test_transition_table_all_pairs(from_status, to_status):
    """
    Every one of the 64 canonical pairs is either in the table or rejected.
    """
    assert is_valid_transition(from_status, to_status) == ((from_status, to_status) in ALLOWED)


def test_terminal_states_have_no_exits():
    assert VALID_TRANSITIONS[RequestStatus.FINISHED] == frozenset()
    assert VALID_TRANSITIONS[RequestStatus.CANCELED] == frozenset()


def test_legacy_aliases_follow_their_canonical_status():
    assert is_valid_transition(RequestStatus.ACCEPTED, RequestStatus.AWAITING_PAYMENT)
    assert is_valid_transition(RequestStatus.CONFIRMED, RequestStatus.PENDING_CLIENT_CONFIRMATION)
    assert not is_valid_transition(RequestStatus.CONFIRMED, RequestStatus.SEARCHING)


def test_happy_path_to_finished(searching):
    assert searching.status == RequestStatus.SEARCHING

    negotiating = _negotiated(searching)
    assert negotiating.status == RequestStatus.NEGOTIATING
    assert negotiating.provider_id == "prv-1"
    assert negotiating.agreed_value == Decimal("150.00")

    awaiting = confirm_value(negotiating, NOW)
    assert awaiting.status == RequestStatus.AWAITING_PAYMENT
    assert awaiting.payment_status == PaymentStatus.PENDING

    in_service = mark_paid(awaiting, NOW)
    assert in_service.status == RequestStatus.IN_SERVICE
    assert in_service.payment_status == PaymentStatus.PAID

    pending = provider_finish(in_service, "prv-1", NOW)
    assert pending.status == RequestStatus.PENDING_CLIENT_CONFIRMATION
    assert pending.provider_finish_requested_at == NOW

    finished = client_confirm_finish(pending, "client-1", NOW)
    assert finished.status == RequestStatus.FINISHED
    assert finished.provider_id == "prv-1"


def test_assign_requires_unassigned_and_not_declined(searching):
    assigned = assign_provider(searching, "prv-1", NOW)
    with pytest.raises(RequestStateException):
        assign_provider(replace(assigned, status=RequestStatus.SEARCHING), "prv-2", NOW)

    declined = release_by_provider(searching, "prv-9", NOW)
    with pytest.raises(RequestStateException):
        assign_provider(declined, "prv-9", NOW)


def test_new_proposal_withdraws_acceptance(searching):
    negotiating = _negotiated(searching)
    countered = propose_value(negotiating, Decimal("120.00"), Party.CLIENT, NOW)

    assert countered.value_accepted is False
    assert countered.agreed_value is None
    assert countered.last_proposal_by == Party.CLIENT
    with pytest.raises(RequestStateException):
        confirm_value(countered, NOW)


def test_proposer_cannot_accept_own_proposal(searching):
    request = propose_value(assign_provider(searching, "prv-1", NOW), Decimal("80"), Party.PROVIDER, NOW)
    with pytest.raises(RequestStateException):
        accept_value(request, Party.PROVIDER, NOW)


@pytest.mark.parametrize("value", [Decimal("0"), Decimal("-1"), None])
def test_proposal_must_be_positive(searching, value):
    with pytest.raises(RequestStateException):
        propose_value(assign_provider(searching, "prv-1", NOW), value, Party.CLIENT, NOW)


def test_mark_paid_only_from_awaiting_payment(searching):
    with pytest.raises(RequestStateException):
        mark_paid(_negotiated(searching), NOW)


def test_reopen_negotiation_clears_agreement(searching):
    awaiting = confirm_value(_negotiated(searching), NOW)
    reopened = reopen_negotiation(awaiting, NOW)

    assert reopened.status == RequestStatus.NEGOTIATING
    assert reopened.proposed_value == Decimal("150.00")
    assert reopened.agreed_value is None
    assert reopened.payment_status is None


def test_dispute_returns_to_in_service(searching):
    pending = provider_finish(mark_paid(confirm_value(_negotiated(searching), NOW), NOW), "prv-1", NOW)
    disputed = dispute_finish(pending, "client-1", NOW)

    assert disputed.status == RequestStatus.IN_SERVICE
    assert disputed.provider_finish_requested_at is None


def test_only_owner_and_assignee_may_act(searching):
    in_service = mark_paid(confirm_value(_negotiated(searching), NOW), NOW)
    with pytest.raises(RequestStateException):
        provider_finish(in_service, "prv-2", NOW)

    pending = provider_finish(in_service, "prv-1", NOW)
    with pytest.raises(RequestStateException):
        client_confirm_finish(pending, "someone-else", NOW)


def test_cancel_by_client_follows_table(searching):
    canceled = cancel_by_client(_negotiated(searching), "client-1", NOW, reason="changed my mind")

    assert canceled.status == RequestStatus.CANCELED
    assert canceled.provider_id is None
    assert canceled.canceled_by == Party.CLIENT
    assert canceled.cancellation_reason == "changed my mind"
    assert canceled.canceled_at == NOW

    with pytest.raises(RequestStateException):
        cancel_by_client(canceled, "client-1", NOW)

    pending = provider_finish(mark_paid(confirm_value(_negotiated(searching), NOW), NOW), "prv-1", NOW)
    with pytest.raises(RequestStateException):
        cancel_by_client(pending, "client-1", NOW)


def test_release_by_provider_returns_to_searching(searching):
    awaiting = confirm_value(_negotiated(searching), NOW)
    released = release_by_provider(awaiting, "prv-1", NOW)

    assert released.status == RequestStatus.SEARCHING
    assert released.provider_id is None
    assert released.proposed_value is None
    assert released.agreed_value is None
    assert released.value_accepted is False
    assert "prv-1" in released.declined_provider_ids


def test_release_not_allowed_once_in_service(searching):
    in_service = mark_paid(confirm_value(_negotiated(searching), NOW), NOW)
    with pytest.raises(RequestStateException):
        release_by_provider(in_service, "prv-1", NOW)


def test_auto_finish_after_fifteen_minutes(searching):
    pending = provider_finish(mark_paid(confirm_value(_negotiated(searching), NOW), NOW), "prv-1", NOW)

    assert not is_expired_pending_confirmation(pending, NOW + timedelta(minutes=14, seconds=59))
    with pytest.raises(RequestStateException):
        auto_finish(pending, NOW + timedelta(minutes=14))

    later = NOW + timedelta(minutes=15)
    finished = auto_finish(pending, later)
    assert finished.status == RequestStatus.FINISHED
    assert finished.auto_finished_at == later
    assert finished.auto_finish_reason == AUTO_FINISH_REASON == "client_timeout"
