from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, FrozenSet, Optional

from service_requests.models import (
    Party,
    PaymentStatus,
    RequestStatus,
    ServiceRequest,
)

AUTO_FINISH_TIMEOUT_MINUTES = 15
AUTO_FINISH_REASON = "client_timeout"


class RequestStateException(Exception):
    """Raised when an invalid state transition is attempted."""
    pass


class StaleRequestError(RequestStateException):
    """Raised when the stored request changed between read and conditional write."""

    def __init__(self, request_id: str, expected_status: RequestStatus):
        super().__init__(f"Request {request_id} is no longer {expected_status.value}")
        self.request_id = request_id
        self.expected_status = expected_status


# Canonical statuses only. Legacy aliases are mapped through RequestStatus.canonical() first.
VALID_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.IDLE: frozenset({RequestStatus.SEARCHING}),
    RequestStatus.SEARCHING: frozenset({RequestStatus.NEGOTIATING, RequestStatus.CANCELED}),
    RequestStatus.NEGOTIATING: frozenset({
        RequestStatus.AWAITING_PAYMENT, RequestStatus.SEARCHING, RequestStatus.CANCELED,
    }),
    RequestStatus.AWAITING_PAYMENT: frozenset({
        RequestStatus.IN_SERVICE, RequestStatus.NEGOTIATING, RequestStatus.CANCELED,
    }),
    RequestStatus.IN_SERVICE: frozenset({
        RequestStatus.PENDING_CLIENT_CONFIRMATION, RequestStatus.CANCELED,
    }),
    RequestStatus.PENDING_CLIENT_CONFIRMATION: frozenset({
        RequestStatus.FINISHED, RequestStatus.IN_SERVICE,
    }),
    RequestStatus.FINISHED: frozenset(),
    RequestStatus.CANCELED: frozenset(),
}


def valid_transitions(status: RequestStatus) -> FrozenSet[RequestStatus]:
    return VALID_TRANSITIONS[status.canonical()]


def is_valid_transition(from_status: RequestStatus, to_status: RequestStatus) -> bool:
    return to_status.canonical() in valid_transitions(from_status)


def _transition(request: ServiceRequest, target: RequestStatus, now: datetime, **changes) -> ServiceRequest:
    if not is_valid_transition(request.status, target):
        raise RequestStateException(
            f"Cannot transition request {request.id} from {request.status.value} to {target.value}"
        )
    return replace(request, status=target.canonical(), updated_at=now, **changes)


def _require_status(request: ServiceRequest, status: RequestStatus, action: str) -> None:
    if request.canonical_status != status:
        raise RequestStateException(
            f"Cannot {action} request {request.id} while {request.status.value}"
        )


def _require_provider(request: ServiceRequest, provider_id: str) -> None:
    if request.provider_id != provider_id:
        raise RequestStateException(f"Provider {provider_id} is not assigned to request {request.id}")


def _require_client(request: ServiceRequest, client_id: str) -> None:
    if request.client_id != client_id:
        raise RequestStateException(f"Client {client_id} does not own request {request.id}")


def submit(request: ServiceRequest, now: datetime) -> ServiceRequest:
    """
    idle -> searching. Called once the request is validated and about to be persisted.
    """
    return _transition(request, RequestStatus.SEARCHING, now)


def assign_provider(request: ServiceRequest, provider_id: str, now: datetime) -> ServiceRequest:
    """
    searching -> negotiating. Only an unassigned request can be taken.
    Stores apply this with update_request_if(..., require_unassigned=True).
    """
    if request.provider_id is not None:
        raise RequestStateException(f"Request {request.id} is already assigned to {request.provider_id}")
    if provider_id in request.declined_provider_ids:
        raise RequestStateException(f"Provider {provider_id} declined request {request.id}")
    return _transition(request, RequestStatus.NEGOTIATING, now, provider_id=provider_id)


def propose_value(request: ServiceRequest, value: Decimal, by: Party, now: datetime) -> ServiceRequest:
    """
    Either party proposes a price. A new proposal withdraws any earlier acceptance.
    """
    _require_status(request, RequestStatus.NEGOTIATING, "propose a value for")
    if value is None or value <= 0:
        raise RequestStateException(f"Proposed value must be positive, got {value}")
    return replace(
        request,
        proposed_value=value,
        last_proposal_by=by,
        value_accepted=False,
        agreed_value=None,
        updated_at=now,
    )


def accept_value(request: ServiceRequest, by: Party, now: datetime) -> ServiceRequest:
    """
    The counter-party accepts the current proposal.
    """
    _require_status(request, RequestStatus.NEGOTIATING, "accept a value for")
    if request.proposed_value is None:
        raise RequestStateException(f"Request {request.id} has no proposal to accept")
    if request.last_proposal_by == by:
        raise RequestStateException(f"{by.value} cannot accept their own proposal")
    return replace(request, value_accepted=True, agreed_value=request.proposed_value, updated_at=now)


def confirm_value(request: ServiceRequest, now: datetime) -> ServiceRequest:
    if not request.value_accepted:
        raise RequestStateException(f"Request {request.id} has no accepted value")
    if request.agreed_value is None or request.agreed_value <= 0:
        raise RequestStateException(f"Request {request.id} has no positive agreed value")
    return _transition(request, RequestStatus.AWAITING_PAYMENT, now, payment_status=PaymentStatus.PENDING)


def reopen_negotiation(request: ServiceRequest, now: datetime) -> ServiceRequest:
    """
    awaiting_payment -> negotiating. The last proposal stays on the table but must be accepted again.
    """
    _require_status(request, RequestStatus.AWAITING_PAYMENT, "reopen negotiation for")
    return _transition(
        request, RequestStatus.NEGOTIATING, now,
        value_accepted=False, agreed_value=None, payment_status=None,
    )


def mark_paid(request: ServiceRequest, now: datetime) -> ServiceRequest:
    _require_status(request, RequestStatus.AWAITING_PAYMENT, "mark paid")
    return _transition(request, RequestStatus.IN_SERVICE, now, payment_status=PaymentStatus.PAID)


def provider_finish(request: ServiceRequest, provider_id: str, now: datetime) -> ServiceRequest:
    """
    The provider marks the job done; the client has the auto-finish window to confirm or dispute.
    """
    _require_status(request, RequestStatus.IN_SERVICE, "finish")
    _require_provider(request, provider_id)
    return _transition(
        request, RequestStatus.PENDING_CLIENT_CONFIRMATION, now, provider_finish_requested_at=now
    )


def client_confirm_finish(request: ServiceRequest, client_id: str, now: datetime) -> ServiceRequest:
    _require_status(request, RequestStatus.PENDING_CLIENT_CONFIRMATION, "confirm completion of")
    _require_client(request, client_id)
    return _transition(request, RequestStatus.FINISHED, now)


def dispute_finish(request: ServiceRequest, client_id: str, now: datetime) -> ServiceRequest:
    _require_status(request, RequestStatus.PENDING_CLIENT_CONFIRMATION, "dispute completion of")
    _require_client(request, client_id)
    return _transition(request, RequestStatus.IN_SERVICE, now, provider_finish_requested_at=None)


def cancel_by_client(
    request: ServiceRequest, client_id: str, now: datetime, reason: Optional[str] = None
) -> ServiceRequest:
    """
    Allowed wherever the transition table allows `canceled`. The assignment is dropped;
    callers that need to notify the provider read it from the request they passed in.
    """
    _require_client(request, client_id)
    return _transition(
        request,
        RequestStatus.CANCELED,
        now,
        provider_id=None,
        canceled_by=Party.CLIENT,
        cancellation_reason=reason,
        canceled_at=now,
    )


def release_by_provider(request: ServiceRequest, provider_id: str, now: datetime) -> ServiceRequest:
    """
    The provider walks away. The request goes back to searching with the provider
    recorded as a decline so the next search skips them.

    From awaiting_payment this is two table steps (-> negotiating -> searching).
    An unassigned searching request only records the decline.
    """
    status = request.canonical_status
    declined = request.declined_provider_ids | {provider_id}

    if status == RequestStatus.SEARCHING:
        if request.provider_id is not None:
            raise RequestStateException(f"Searching request {request.id} must not have a provider")
        return replace(request, declined_provider_ids=declined, updated_at=now)

    if status not in (RequestStatus.NEGOTIATING, RequestStatus.AWAITING_PAYMENT):
        raise RequestStateException(f"Provider cannot release request {request.id} while {request.status.value}")
    _require_provider(request, provider_id)

    if status == RequestStatus.AWAITING_PAYMENT:
        request = reopen_negotiation(request, now)

    return _transition(
        request,
        RequestStatus.SEARCHING,
        now,
        provider_id=None,
        proposed_value=None,
        agreed_value=None,
        last_proposal_by=None,
        value_accepted=False,
        payment_status=None,
        declined_provider_ids=declined,
    )


def is_expired_pending_confirmation(
    request: ServiceRequest, now: datetime, timeout_minutes: float = AUTO_FINISH_TIMEOUT_MINUTES
) -> bool:
    if request.canonical_status != RequestStatus.PENDING_CLIENT_CONFIRMATION:
        return False
    if request.provider_finish_requested_at is None:
        return False
    return now - request.provider_finish_requested_at >= timedelta(minutes=timeout_minutes)


def auto_finish(
    request: ServiceRequest, now: datetime, timeout_minutes: float = AUTO_FINISH_TIMEOUT_MINUTES
) -> ServiceRequest:
    """
    Force-finish a request whose client never confirmed.
    """
    _require_status(request, RequestStatus.PENDING_CLIENT_CONFIRMATION, "auto-finish")
    if not is_expired_pending_confirmation(request, now, timeout_minutes):
        raise RequestStateException(
            f"Request {request.id} is still inside its {timeout_minutes}-minute confirmation window"
        )
    return _transition(
        request,
        RequestStatus.FINISHED,
        now,
        auto_finished_at=now,
        auto_finish_reason=AUTO_FINISH_REASON,
    )
