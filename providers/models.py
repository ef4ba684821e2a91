"""
Purpose: Core data models for the providers domain.
What it does:
Defines the structure of a field Provider (location, radar range, services, presence,
blocking and fee-balance flags) without relying on Django ORM constraints.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Iterable, Optional, Tuple

from service_requests.models import ServiceType

LatLng = Tuple[float, float]

DEFAULT_RADAR_RANGE_KM = 15.0


class FinancialStatus(str, Enum):
    """
    Where a provider stands with fees collected outside the payment gateway.
    """
    CLEAR = "clear"
    OWING = "owing"
    AWAITING_APPROVAL = "awaiting_approval"


@dataclass(frozen=True)
class Provider:
    """
    A purely stateless representation of a Provider at a specific point in time.
    """
    id: str
    location: Optional[LatLng]
    services_offered: FrozenSet[ServiceType]
    is_online: bool = False
    last_heartbeat_at: Optional[datetime] = None

    # Self-declared maximum distance for incoming requests.
    radar_range_km: float = DEFAULT_RADAR_RANGE_KM

    # Admin / anti-fraud block.
    is_blocked: bool = False

    # Fees owed from direct payments.
    pending_fee_balance: Decimal = Decimal("0")
    financial_status: FinancialStatus = FinancialStatus.CLEAR

    def offers(self, service_type: ServiceType) -> bool:
        return service_type in self.services_offered

    def is_financially_blocked(self, max_pending_balance: Decimal) -> bool:
        if self.financial_status == FinancialStatus.AWAITING_APPROVAL:
            return True
        return self.financial_status == FinancialStatus.OWING and self.pending_fee_balance > max_pending_balance

    @classmethod
    def new(
        cls,
        provider_id: str,
        lat: Optional[float],
        lng: Optional[float],
        services: Iterable[str | ServiceType] = (ServiceType.TOW,),
        is_online: bool = True,
        last_heartbeat_at: Optional[datetime] = None,
        radar_range_km: float = DEFAULT_RADAR_RANGE_KM,
        is_blocked: bool = False,
    ) -> Provider:
        location = (lat, lng) if lat is not None and lng is not None else None
        return cls(
            id=provider_id,
            location=location,
            services_offered=frozenset(ServiceType(service) for service in services),
            is_online=is_online,
            last_heartbeat_at=last_heartbeat_at or datetime.now(timezone.utc),
            radar_range_km=radar_range_km,
            is_blocked=is_blocked,
        )
