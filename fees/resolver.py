"""
Purpose: Decide which fee rate applies to a provider and split a service value.
What it does:
Priority (strict, never blended):
1. Active promotion in scope for the provider
2. Individual custom fee, when enabled for the provider
3. Global rate

All money math is in integer cents with half-up rounding so results match the
payment gateway to the cent.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from .models import CustomFee, EffectiveFee, FeeBreakdown, FeeSettings, FeeSource

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


class FeeInvariantError(Exception):
    """
    The computed split does not add up (or went negative). Never retried:
    the request needs manual review.
    """
    pass


def _round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def effective_fee(
    provider_id: str,
    settings: FeeSettings,
    custom_fee: Optional[CustomFee],
    now: datetime,
) -> EffectiveFee:
    promotion = settings.promotion
    if promotion is not None and promotion.applies_to(provider_id, now):
        logger.info("Using promotion rate %s%% for provider %s", promotion.percentage, provider_id)
        return EffectiveFee(
            percentage=promotion.percentage,
            fixed_fee=ZERO,
            source=FeeSource.PROMOTION,
            promotion_end=promotion.end,
        )

    if custom_fee is not None and custom_fee.enabled:
        percentage = custom_fee.percentage if custom_fee.percentage is not None else ZERO
        fixed_fee = custom_fee.fixed_fee if custom_fee.fixed_fee is not None else ZERO
        logger.info("Using individual rate %s%% + %s for provider %s", percentage, fixed_fee, provider_id)
        return EffectiveFee(percentage=percentage, fixed_fee=fixed_fee, source=FeeSource.INDIVIDUAL)

    logger.info("Using global rate %s%% for provider %s", settings.global_percentage, provider_id)
    return EffectiveFee(percentage=settings.global_percentage, fixed_fee=ZERO, source=FeeSource.GLOBAL)


def calculate_fee_amounts(service_value: Decimal, fee: EffectiveFee) -> FeeBreakdown:
    service_value = Decimal(str(service_value))

    total = _round_cents(service_value * 100)
    percentage_fee = _round_cents(Decimal(total) * fee.percentage / 100)
    fixed_fee = _round_cents(fee.fixed_fee * 100)
    application_fee = percentage_fee + fixed_fee
    provider_receives = total - application_fee

    if application_fee < 0 or provider_receives < 0 or application_fee + provider_receives != total:
        raise FeeInvariantError(
            f"Fee split does not hold for value {service_value}: "
            f"application={application_fee} net={provider_receives} total={total}"
        )

    logger.debug(
        "Fee split total=%d pct=%d fixed=%d application=%d net=%d source=%s",
        total, percentage_fee, fixed_fee, application_fee, provider_receives, fee.source.value,
    )
    return FeeBreakdown(
        total_cents=total,
        percentage_fee_cents=percentage_fee,
        fixed_fee_cents=fixed_fee,
        application_fee_cents=application_fee,
        provider_receives_cents=provider_receives,
        percentage=fee.percentage,
        fixed_fee=fee.fixed_fee,
        source=fee.source,
    )


def resolve_fee(
    provider_id: str,
    service_value: Decimal,
    settings: FeeSettings,
    custom_fee: Optional[CustomFee],
    now: datetime,
) -> FeeBreakdown:
    return calculate_fee_amounts(service_value, effective_fee(provider_id, settings, custom_fee, now))
