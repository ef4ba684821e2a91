"""
Purpose: Data models for platform fee configuration and results.
What it does:
- Promotion: time-boxed campaign rate (global or one provider)
- CustomFee: per-provider negotiated rate (percentage + optional fixed part)
- FeeSettings: global default rate plus the optional promotion
- EffectiveFee: the single rate that applies to one provider right now
- FeeBreakdown: the settled split, in integer cents

Rule: No priority logic here (see fees.resolver).
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Mapping, Optional

DEFAULT_GLOBAL_PERCENTAGE = Decimal("15")


class FeeSource(str, Enum):
    PROMOTION = "promotion"
    INDIVIDUAL = "individual"
    GLOBAL = "global"


class PromotionScope(str, Enum):
    GLOBAL = "global"
    SPECIFIC_PROVIDER = "specific_provider"


def _to_decimal(value: Any, default: Optional[Decimal] = None) -> Optional[Decimal]:
    if value is None or isinstance(value, bool):
        return default
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return default


def _to_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class Promotion:
    enabled: bool
    percentage: Decimal
    start: Optional[datetime]
    end: Optional[datetime]
    scope: PromotionScope = PromotionScope.GLOBAL
    specific_provider_id: Optional[str] = None

    def applies_to(self, provider_id: str, now: datetime) -> bool:
        """
        Active (enabled, both dates set, now inside the window, inclusive) and in scope.
        """
        if not self.enabled:
            return False
        if self.start is None or self.end is None:
            return False
        if now < self.start or now > self.end:
            return False
        if self.scope == PromotionScope.GLOBAL:
            return True
        return self.specific_provider_id == provider_id

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Promotion:
        return cls(
            enabled=bool(data.get("enabled", False)),
            percentage=_to_decimal(data.get("promotional_commission"), Decimal("0")),
            start=_to_datetime(data.get("start_date")),
            end=_to_datetime(data.get("end_date")),
            scope=PromotionScope(data.get("scope", PromotionScope.GLOBAL.value)),
            specific_provider_id=data.get("specific_provider_id"),
        )


@dataclass(frozen=True)
class CustomFee:
    enabled: bool = False
    percentage: Optional[Decimal] = None
    fixed_fee: Optional[Decimal] = None


@dataclass(frozen=True)
class FeeSettings:
    global_percentage: Decimal = DEFAULT_GLOBAL_PERCENTAGE
    promotion: Optional[Promotion] = None

    @classmethod
    def from_app_settings(cls, commission: Any = None, promotion: Any = None) -> FeeSettings:
        """
        Build settings from stored key/value rows. The commission value is accepted
        either bare (15) or wrapped ({"value": 15}); anything unusable falls back to 15.
        """
        if isinstance(commission, Mapping):
            commission = commission.get("value")
        percentage = _to_decimal(commission)
        if not percentage:
            percentage = DEFAULT_GLOBAL_PERCENTAGE

        parsed_promotion = Promotion.from_dict(promotion) if isinstance(promotion, Mapping) else None
        return cls(global_percentage=percentage, promotion=parsed_promotion)


@dataclass(frozen=True)
class EffectiveFee:
    percentage: Decimal
    fixed_fee: Decimal
    source: FeeSource
    promotion_end: Optional[datetime] = None


@dataclass(frozen=True)
class FeeBreakdown:
    total_cents: int
    percentage_fee_cents: int
    fixed_fee_cents: int
    application_fee_cents: int
    provider_receives_cents: int
    percentage: Decimal
    fixed_fee: Decimal
    source: FeeSource

    @property
    def application_fee(self) -> Decimal:
        return Decimal(self.application_fee_cents) / 100

    @property
    def provider_receives(self) -> Decimal:
        return Decimal(self.provider_receives_cents) / 100
