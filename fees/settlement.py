"""
Purpose: Record the platform fee of a finished request, exactly once.
What it does:
- Checks the request is settleable (finished, assigned, positive agreed value)
- Resolves the fee split (fees.resolver)
- Inserts one FeeRecord per request; a second call returns the stored record
- Direct payments (cash / transfer to the provider) add the fee to the provider's
  pending balance so the candidate filter can block heavy debtors

Gateway payments are settled by the gateway itself, so their record is created already paid.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum

from service_requests.models import PaymentMethod, RequestStatus

from .models import FeeSource
from .resolver import FeeInvariantError, resolve_fee

logger = logging.getLogger(__name__)

__all__ = [
    "FeeInvariantError",
    "FeeRecord",
    "FeeStatus",
    "FeeType",
    "SettlementError",
    "SettlementResult",
    "settle_request",
]


class SettlementError(Exception):
    """Raised when a request cannot be settled (wrong status, no provider, no value)."""
    pass


class FeeType(str, Enum):
    GATEWAY = "gateway"
    MANUAL = "manual"


class FeeStatus(str, Enum):
    PAID = "paid"
    OWED = "owed"


@dataclass(frozen=True)
class FeeRecord:
    request_id: str
    provider_id: str
    service_value: Decimal
    total_cents: int
    application_fee_cents: int
    provider_receives_cents: int
    percentage: Decimal
    fixed_fee: Decimal
    source: FeeSource
    fee_type: FeeType
    status: FeeStatus
    created_at: datetime

    @property
    def application_fee(self) -> Decimal:
        return Decimal(self.application_fee_cents) / 100


@dataclass(frozen=True)
class SettlementResult:
    record: FeeRecord
    created: bool


def settle_request(store, request_id: str, now: datetime) -> SettlementResult:
    request = store.get_request(request_id)
    if request is None:
        raise SettlementError(f"Request {request_id} does not exist")

    if request.canonical_status != RequestStatus.FINISHED:
        raise SettlementError(f"Request {request_id} is {request.status.value}, not finished")
    if request.provider_id is None:
        raise SettlementError(f"Request {request_id} has no provider to settle with")
    if request.agreed_value is None or request.agreed_value <= 0:
        raise SettlementError(f"Request {request_id} has no positive agreed value")

    existing = store.get_fee_record(request_id)
    if existing is not None:
        return SettlementResult(existing, created=False)

    try:
        breakdown = resolve_fee(
            request.provider_id,
            request.agreed_value,
            store.fee_settings(),
            store.custom_fee_for(request.provider_id),
            now,
        )
    except FeeInvariantError:
        logger.error("Fee invariant violated for request %s; flagged for manual review", request_id)
        raise

    is_direct = request.payment_method == PaymentMethod.DIRECT
    record = FeeRecord(
        request_id=request.id,
        provider_id=request.provider_id,
        service_value=request.agreed_value,
        total_cents=breakdown.total_cents,
        application_fee_cents=breakdown.application_fee_cents,
        provider_receives_cents=breakdown.provider_receives_cents,
        percentage=breakdown.percentage,
        fixed_fee=breakdown.fixed_fee,
        source=breakdown.source,
        fee_type=FeeType.MANUAL if is_direct else FeeType.GATEWAY,
        status=FeeStatus.OWED if is_direct else FeeStatus.PAID,
        created_at=now,
    )

    if not store.insert_fee_record(record):
        # another settlement won the insert
        return SettlementResult(store.get_fee_record(request_id), created=False)

    if is_direct and record.application_fee_cents > 0:
        store.add_pending_balance(record.provider_id, record.application_fee)

    logger.info(
        "Settled request %s: fee %s (%s, %s) for provider %s",
        request_id, record.application_fee, record.source.value, record.fee_type.value, record.provider_id,
    )
    return SettlementResult(record, created=True)
