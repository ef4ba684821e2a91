"""
Purpose: Domain models for the Service Requests capability.
What it does:
- Defines core data structures:
- ServiceRequest (id, client, service type, origin/destination, negotiation fields,
  assigned provider, declines, finish/cancel metadata, timestamps, status)
- Location (lat, lng, address)

Defines enums/constants:
- RequestStatus = IDLE | SEARCHING | NEGOTIATING | AWAITING_PAYMENT | IN_SERVICE
                  | PENDING_CLIENT_CONFIRMATION | FINISHED | CANCELED
                  (+ legacy ACCEPTED / CONFIRMED)
- ServiceType = TOW | TIRE_SERVICE | MECHANIC | LOCKSMITH
- SERVICE_CONFIG (which service types need a destination)

Rule: No dispatch logic, no persistence. Models only.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple
import uuid

LatLng = Tuple[float, float]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RequestStatus(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    ACCEPTED = "accepted"  # legacy alias of NEGOTIATING
    NEGOTIATING = "negotiating"
    AWAITING_PAYMENT = "awaiting_payment"
    CONFIRMED = "confirmed"  # legacy alias of IN_SERVICE
    IN_SERVICE = "in_service"
    PENDING_CLIENT_CONFIRMATION = "pending_client_confirmation"
    FINISHED = "finished"
    CANCELED = "canceled"

    def canonical(self) -> RequestStatus:
        """
        Legacy statuses only survive in old rows; every business rule sees the
        status they stand for.
        """
        return _LEGACY_ALIASES.get(self, self)

    @property
    def is_terminal(self) -> bool:
        return self.canonical() in (RequestStatus.FINISHED, RequestStatus.CANCELED)


_LEGACY_ALIASES = {
    RequestStatus.ACCEPTED: RequestStatus.NEGOTIATING,
    RequestStatus.CONFIRMED: RequestStatus.IN_SERVICE,
}

def statuses_matching(status: RequestStatus) -> FrozenSet[RequestStatus]:
    """
    Every stored value that means `status`, legacy aliases included.
    Stores filter on this set when guarding a conditional update.
    """
    canonical = status.canonical()
    return frozenset(candidate for candidate in RequestStatus if candidate.canonical() == canonical)


#the eight statuses the lifecycle is defined over (legacy aliases excluded)
CANONICAL_STATUSES: Tuple[RequestStatus, ...] = (
    RequestStatus.IDLE,
    RequestStatus.SEARCHING,
    RequestStatus.NEGOTIATING,
    RequestStatus.AWAITING_PAYMENT,
    RequestStatus.IN_SERVICE,
    RequestStatus.PENDING_CLIENT_CONFIRMATION,
    RequestStatus.FINISHED,
    RequestStatus.CANCELED,
)

#statuses in which a provider is holding the request
ASSIGNED_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.NEGOTIATING,
    RequestStatus.AWAITING_PAYMENT,
    RequestStatus.IN_SERVICE,
    RequestStatus.PENDING_CLIENT_CONFIRMATION,
})

#statuses that keep a provider out of new searches.
#pending_client_confirmation is absent: the work is done and the
#provider may take the next request while the client confirms.
BUSY_STATUSES: FrozenSet[RequestStatus] = frozenset({
    RequestStatus.ACCEPTED,
    RequestStatus.NEGOTIATING,
    RequestStatus.AWAITING_PAYMENT,
    RequestStatus.CONFIRMED,
    RequestStatus.IN_SERVICE,
})


class ServiceType(str, Enum):
    TOW = "tow"
    TIRE_SERVICE = "tire_service"
    MECHANIC = "mechanic"
    LOCKSMITH = "locksmith"


@dataclass(frozen=True)
class ServiceConfig:
    label: str
    requires_destination: bool
    estimated_time: str


SERVICE_CONFIG: Dict[ServiceType, ServiceConfig] = {
    ServiceType.TOW: ServiceConfig("Tow truck", True, "30-45 min"),
    ServiceType.TIRE_SERVICE: ServiceConfig("Mobile tire service", False, "20-30 min"),
    ServiceType.MECHANIC: ServiceConfig("Mobile mechanic", False, "30-60 min"),
    ServiceType.LOCKSMITH: ServiceConfig("Auto locksmith", False, "15-25 min"),
}

VEHICLE_TYPES: FrozenSet[str] = frozenset({
    "passenger_car", "utility_car", "pickup", "van", "motorcycle",
    "light_truck", "medium_truck", "truck", "semi_trailer", "tractor_unit",
    "bus", "minibus", "other",
})


def requires_destination(service_type: ServiceType) -> bool:
    return SERVICE_CONFIG[service_type].requires_destination


class Party(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"


class PaymentMethod(str, Enum):
    GATEWAY = "gateway"  # paid through the payment gateway, fee settled there
    DIRECT = "direct"    # paid straight to the provider, fee owed to the platform


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"


@dataclass(frozen=True)
class Location:
    lat: float
    lng: float
    address: str

    @property
    def coordinates(self) -> LatLng:
        return (self.lat, self.lng)


@dataclass(frozen=True)
class ServiceRequest:
    """
    A single roadside request at a specific point in time.
    Transitions never mutate an instance; they return a new one via dataclasses.replace.
    """
    id: str
    client_id: str
    service_type: ServiceType
    origin: Location
    destination: Optional[Location] = None
    vehicle_type: Optional[str] = None

    status: RequestStatus = RequestStatus.IDLE

    #negotiation tracking
    proposed_value: Optional[Decimal] = None
    agreed_value: Optional[Decimal] = None
    last_proposal_by: Optional[Party] = None
    value_accepted: bool = False

    provider_id: Optional[str] = None
    declined_provider_ids: FrozenSet[str] = frozenset()

    payment_method: PaymentMethod = PaymentMethod.GATEWAY
    payment_status: Optional[PaymentStatus] = None

    provider_finish_requested_at: Optional[datetime] = None
    auto_finished_at: Optional[datetime] = None
    auto_finish_reason: Optional[str] = None

    canceled_by: Optional[Party] = None
    cancellation_reason: Optional[str] = None
    canceled_at: Optional[datetime] = None

    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def canonical_status(self) -> RequestStatus:
        return self.status.canonical()

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @staticmethod # Factory method to create a fresh request before it is submitted
    def new(
        client_id: str,
        service_type: ServiceType,
        origin: Location,
        destination: Optional[Location] = None,
        vehicle_type: Optional[str] = None,
        payment_method: PaymentMethod = PaymentMethod.GATEWAY,
        now: Optional[datetime] = None,
    ) -> ServiceRequest:
        now = now or utc_now()
        #only destination-requiring services keep a destination
        if not requires_destination(service_type):
            destination = None
        return ServiceRequest(
            id=str(uuid.uuid4()),
            client_id=client_id,
            service_type=service_type,
            origin=origin,
            destination=destination,
            vehicle_type=vehicle_type,
            payment_method=payment_method,
            created_at=now,
            updated_at=now,
        )


def changed_fields(before: ServiceRequest, after: ServiceRequest) -> Dict[str, object]:
    """
    Field name -> new value for every field that differs.
    Stores use this to turn a pure transition into a conditional update.
    """
    changes: Dict[str, object] = {}
    for model_field in fields(ServiceRequest):
        old_value = getattr(before, model_field.name)
        new_value = getattr(after, model_field.name)
        if old_value != new_value:
            changes[model_field.name] = new_value
    return changes
