"""
Fees domain package.

Public API:
- Configuration: FeeSettings, Promotion, CustomFee
- Resolution: effective_fee, calculate_fee_amounts, resolve_fee
- Settlement: settle_request, FeeRecord
"""
from .models import CustomFee, EffectiveFee, FeeBreakdown, FeeSettings, FeeSource, Promotion, PromotionScope
from .resolver import FeeInvariantError, calculate_fee_amounts, effective_fee, resolve_fee
from .settlement import FeeRecord, FeeStatus, FeeType, SettlementError, SettlementResult, settle_request

__all__ = ["CustomFee",
           "EffectiveFee",
             "FeeBreakdown",
             "FeeSettings",
             "FeeSource",
             "Promotion",
             "PromotionScope",
             "FeeInvariantError",
             "calculate_fee_amounts",
             "effective_fee",
             "resolve_fee",
             "FeeRecord",
             "FeeStatus",
             "FeeType",
             "SettlementError",
             "SettlementResult",
               "settle_request"
               ]
