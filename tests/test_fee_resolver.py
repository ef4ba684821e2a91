from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from fees.models import (
    CustomFee,
    EffectiveFee,
    FeeSettings,
    FeeSource,
    Promotion,
    PromotionScope,
)
from fees.resolver import FeeInvariantError, calculate_fee_amounts, effective_fee, resolve_fee

NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def _promotion(scope=PromotionScope.GLOBAL, provider_id=None, enabled=True, start=None, end=None):
    return Promotion(
        enabled=enabled,
        percentage=Decimal("5"),
        start=start or NOW - timedelta(days=1),
        end=end or NOW + timedelta(days=1),
        scope=scope,
        specific_provider_id=provider_id,
    )


def test_global_rate_split_150_at_15_percent():
    breakdown = resolve_fee("prv-1", Decimal("150.00"), FeeSettings(), None, NOW)

    assert breakdown.source == FeeSource.GLOBAL
    assert breakdown.total_cents == 15000
    assert breakdown.application_fee_cents == 2250
    assert breakdown.provider_receives_cents == 12750
    assert breakdown.application_fee == Decimal("22.50")
    assert breakdown.provider_receives == Decimal("127.50")


def test_promotion_beats_individual_and_global():
    settings = FeeSettings(global_percentage=Decimal("15"), promotion=_promotion())
    custom = CustomFee(enabled=True, percentage=Decimal("10"), fixed_fee=Decimal("2"))

    fee = effective_fee("prv-1", settings, custom, NOW)

    assert fee.source == FeeSource.PROMOTION
    assert fee.percentage == Decimal("5")
    assert fee.fixed_fee == Decimal("0")
    assert fee.promotion_end == NOW + timedelta(days=1)


def test_individual_beats_global_when_no_promotion_applies():
    expired = _promotion(start=NOW - timedelta(days=10), end=NOW - timedelta(days=5))
    settings = FeeSettings(promotion=expired)
    custom = CustomFee(enabled=True, percentage=Decimal("10"), fixed_fee=Decimal("2"))

    breakdown = resolve_fee("prv-1", Decimal("100.00"), settings, custom, NOW)

    assert breakdown.source == FeeSource.INDIVIDUAL
    assert breakdown.percentage_fee_cents == 1000
    assert breakdown.fixed_fee_cents == 200
    assert breakdown.application_fee_cents == 1200
    assert breakdown.provider_receives_cents == 8800


def test_disabled_custom_fee_falls_back_to_global():
    custom = CustomFee(enabled=False, percentage=Decimal("1"))
    assert effective_fee("prv-1", FeeSettings(), custom, NOW).source == FeeSource.GLOBAL


def test_specific_provider_promotion_only_applies_to_that_provider():
    settings = FeeSettings(promotion=_promotion(PromotionScope.SPECIFIC_PROVIDER, "prv-lucky"))

    assert effective_fee("prv-lucky", settings, None, NOW).source == FeeSource.PROMOTION
    assert effective_fee("prv-other", settings, None, NOW).source == FeeSource.GLOBAL


def test_promotion_window_is_inclusive():
    promotion = _promotion(start=NOW, end=NOW + timedelta(hours=1))

    assert promotion.applies_to("prv-1", NOW)
    assert promotion.applies_to("prv-1", NOW + timedelta(hours=1))
    assert not promotion.applies_to("prv-1", NOW + timedelta(hours=1, seconds=1))
    assert not _promotion(enabled=False).applies_to("prv-1", NOW)


def test_half_up_rounding_to_cents():
    # 15% of 0.10 = 1.5 cents -> 2
    breakdown = calculate_fee_amounts(
        Decimal("0.10"), EffectiveFee(Decimal("15"), Decimal("0"), FeeSource.GLOBAL)
    )
    assert breakdown.application_fee_cents == 2
    assert breakdown.provider_receives_cents == 8


@pytest.mark.parametrize("value", ["0.01", "1.99", "33.33", "150.00", "999.99", "12345.67"])
@pytest.mark.parametrize("percentage", ["0", "7.5", "15", "33.3", "100"])
def test_split_always_adds_up(value, percentage):
    breakdown = calculate_fee_amounts(
        Decimal(value), EffectiveFee(Decimal(percentage), Decimal("0"), FeeSource.GLOBAL)
    )
    assert breakdown.application_fee_cents + breakdown.provider_receives_cents == breakdown.total_cents
    assert breakdown.application_fee_cents >= 0
    assert breakdown.provider_receives_cents >= 0


def test_fixed_fee_larger_than_value_violates_invariant():
    fee = EffectiveFee(Decimal("10"), Decimal("50"), FeeSource.INDIVIDUAL)
    with pytest.raises(FeeInvariantError):
        calculate_fee_amounts(Decimal("20.00"), fee)


@pytest.mark.parametrize("commission, expected", [
    (None, Decimal("15")),
    (12, Decimal("12")),
    ({"value": "9.5"}, Decimal("9.5")),
    ("garbage", Decimal("15")),
    (0, Decimal("15")),
])
def test_fee_settings_from_app_settings(commission, expected):
    assert FeeSettings.from_app_settings(commission).global_percentage == expected


def test_promotion_from_stored_setting():
    settings = FeeSettings.from_app_settings(
        15,
        {
            "enabled": True,
            "promotional_commission": 3,
            "start_date": "2025-03-01T00:00:00Z",
            "end_date": "2025-03-31T23:59:59Z",
            "scope": "specific_provider",
            "specific_provider_id": "prv-7",
        },
    )

    assert settings.promotion.scope == PromotionScope.SPECIFIC_PROVIDER
    assert effective_fee("prv-7", settings, None, NOW).percentage == Decimal("3")
