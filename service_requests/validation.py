"""
Purpose: Input validation for new service requests (rule gates before persistence).
What it does:
- Accepts raw client input (dicts from the API layer or tests)
- Rejects malformed coordinates, unknown service/vehicle types and missing destinations
- Returns a normalized CreateRequestInput ready for ServiceRequest.new

Every rejection raises RequestValidationError with a typed `reason` so callers can
surface it without parsing messages. Nothing here touches a store.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from geo.distance import is_valid_coordinate

from .models import (
    Location,
    PaymentMethod,
    ServiceType,
    VEHICLE_TYPES,
    requires_destination,
)

MAX_ADDRESS_LENGTH = 500
# fits the DecimalField(max_digits=10, decimal_places=2) money columns
MAX_MONEY = Decimal("99999999.99")


class RequestValidationError(ValueError):
    """Raised when request input is rejected before any persistence."""

    INVALID_SERVICE_TYPE = "invalid_service_type"
    INVALID_ORIGIN = "invalid_origin"
    MISSING_DESTINATION = "missing_destination"
    INVALID_DESTINATION = "invalid_destination"
    INVALID_VEHICLE_TYPE = "invalid_vehicle_type"
    INVALID_PAYMENT_METHOD = "invalid_payment_method"
    INVALID_VALUE = "invalid_value"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or reason)


@dataclass(frozen=True)
class CreateRequestInput:
    service_type: ServiceType
    origin: Location
    destination: Optional[Location] = None
    vehicle_type: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.GATEWAY


def _sanitize_address(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    cleaned = value.replace("<", "").replace(">", "")[:MAX_ADDRESS_LENGTH].strip()
    return cleaned or None


def parse_location(raw: Any, reason: str) -> Location:
    """
    Accepts {"lat": .., "lng": .., "address": ..} or an existing Location.
    """
    if isinstance(raw, Location):
        raw = {"lat": raw.lat, "lng": raw.lng, "address": raw.address}
    if not isinstance(raw, Mapping):
        raise RequestValidationError(reason, "location must be an object with lat, lng and address")

    lat = raw.get("lat")
    lng = raw.get("lng")
    if not is_valid_coordinate(lat, lng):
        raise RequestValidationError(reason, f"coordinates out of range: ({lat}, {lng})")

    address = _sanitize_address(raw.get("address"))
    if address is None:
        raise RequestValidationError(reason, "address is required")

    return Location(lat=float(lat), lng=float(lng), address=address)


def validate_create_request(data: Mapping[str, Any]) -> CreateRequestInput:
    """
    Validate a request submission.

    Expected keys: service_type, origin, destination (tow only), vehicle_type (optional),
    payment_method (optional, defaults to gateway).
    """
    raw_service = data.get("service_type")
    try:
        service_type = ServiceType(raw_service)
    except ValueError:
        raise RequestValidationError(
            RequestValidationError.INVALID_SERVICE_TYPE, f"unknown service type: {raw_service!r}"
        ) from None

    if data.get("origin") is None:
        raise RequestValidationError(RequestValidationError.INVALID_ORIGIN, "origin is required")
    origin = parse_location(data["origin"], RequestValidationError.INVALID_ORIGIN)

    destination = None
    if requires_destination(service_type):
        if data.get("destination") is None:
            raise RequestValidationError(
                RequestValidationError.MISSING_DESTINATION,
                f"{service_type.value} requests need a destination",
            )
        destination = parse_location(data["destination"], RequestValidationError.INVALID_DESTINATION)

    vehicle_type = data.get("vehicle_type") or None
    if vehicle_type is not None and vehicle_type not in VEHICLE_TYPES:
        raise RequestValidationError(
            RequestValidationError.INVALID_VEHICLE_TYPE, f"unknown vehicle type: {vehicle_type!r}"
        )

    raw_method = data.get("payment_method") or PaymentMethod.GATEWAY.value
    try:
        payment_method = PaymentMethod(raw_method)
    except ValueError:
        raise RequestValidationError(
            RequestValidationError.INVALID_PAYMENT_METHOD, f"unknown payment method: {raw_method!r}"
        ) from None

    return CreateRequestInput(
        service_type=service_type,
        origin=origin,
        destination=destination,
        vehicle_type=vehicle_type,
        payment_method=payment_method,
    )


def parse_money(value: Any) -> Decimal:
    """
    Positive monetary amount with at most two decimal places.
    """
    if isinstance(value, bool):
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, "value must be numeric")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, f"not a number: {value!r}") from None

    if not amount.is_finite() or amount <= 0:
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, "value must be positive")
    if amount > MAX_MONEY:
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, f"value must not exceed {MAX_MONEY}")
    try:
        cents = amount.quantize(Decimal("0.01"))
    except InvalidOperation:
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, f"not a money amount: {value!r}") from None
    if amount != cents:
        raise RequestValidationError(RequestValidationError.INVALID_VALUE, "value has more than two decimals")
    return amount
