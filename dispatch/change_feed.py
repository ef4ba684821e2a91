"""
Purpose: Live provider change feed (the real-time side of candidate discovery).
What it does:
- Defines the tagged record that crosses the feed boundary (ProviderChange)
- Parses raw row-change payloads ({"type", "table", "record", "old_record"}) into
  ProviderChange and rejects malformed ones with ChangeFeedError instead of trusting shape
- Fans events out to subscribers (search sessions) with at-least-once semantics

Delivery contract: events are keyed by provider id, may be duplicated and may arrive
out of order across providers. Subscribers must treat them idempotently.
A subscriber that raises is logged and skipped; it never blocks the others.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from geo.distance import is_valid_coordinate
from providers.models import DEFAULT_RADAR_RANGE_KM, FinancialStatus, Provider
from service_requests.models import ServiceType

logger = logging.getLogger(__name__)


class ChangeFeedError(ValueError):
    """Raised when a change payload does not match the provider change schema."""
    pass


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ProviderChange:
    """
    One row change of the providers table.
    `provider` is None for deletes.
    """
    change_type: ChangeType
    provider_id: str
    provider: Optional[Provider] = None

    @property
    def is_removal(self) -> bool:
        return self.change_type == ChangeType.DELETE or self.provider is None or not self.provider.is_online

    @classmethod
    def upsert(cls, provider: Provider, change_type: ChangeType = ChangeType.UPDATE) -> ProviderChange:
        return cls(change_type=change_type, provider_id=provider.id, provider=provider)

    @classmethod
    def delete(cls, provider_id: str) -> ProviderChange:
        return cls(change_type=ChangeType.DELETE, provider_id=provider_id, provider=None)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            raise ChangeFeedError(f"invalid timestamp: {value!r}") from None
    raise ChangeFeedError(f"invalid timestamp: {value!r}")


def provider_from_record(record: Mapping[str, Any]) -> Provider:
    """
    Build a Provider from a providers-table row payload.
    """
    provider_id = record.get("id")
    if not isinstance(provider_id, str) or not provider_id:
        raise ChangeFeedError("record.id must be a non-empty string")

    lat = record.get("lat")
    lng = record.get("lng")
    location = None
    if lat is not None or lng is not None:
        if not is_valid_coordinate(lat, lng):
            raise ChangeFeedError(f"record {provider_id}: coordinates out of range ({lat}, {lng})")
        location = (float(lat), float(lng))

    raw_services = record.get("services_offered", [])
    if not isinstance(raw_services, (list, tuple, set, frozenset)):
        raise ChangeFeedError(f"record {provider_id}: services_offered must be a list")
    try:
        services = frozenset(ServiceType(service) for service in raw_services)
    except ValueError:
        raise ChangeFeedError(f"record {provider_id}: unknown service in {raw_services!r}") from None

    is_online = record.get("is_online", False)
    if not isinstance(is_online, bool):
        raise ChangeFeedError(f"record {provider_id}: is_online must be a boolean")

    is_blocked = record.get("is_blocked", False)
    if not isinstance(is_blocked, bool):
        raise ChangeFeedError(f"record {provider_id}: is_blocked must be a boolean")

    radar_range = record.get("radar_range_km", DEFAULT_RADAR_RANGE_KM)
    if isinstance(radar_range, bool) or not isinstance(radar_range, (int, float)) or radar_range <= 0:
        raise ChangeFeedError(f"record {provider_id}: radar_range_km must be a positive number")

    try:
        pending_balance = Decimal(str(record.get("pending_fee_balance", "0")))
        financial_status = FinancialStatus(record.get("financial_status", FinancialStatus.CLEAR.value))
    except (InvalidOperation, ValueError):
        raise ChangeFeedError(f"record {provider_id}: invalid financial fields") from None

    return Provider(
        id=provider_id,
        location=location,
        services_offered=services,
        is_online=is_online,
        last_heartbeat_at=_parse_timestamp(record.get("last_heartbeat_at")),
        radar_range_km=float(radar_range),
        is_blocked=is_blocked,
        pending_fee_balance=pending_balance,
        financial_status=financial_status,
    )


def parse_provider_change(payload: Mapping[str, Any]) -> ProviderChange:
    """
    Validate a raw change payload and turn it into a ProviderChange.
    """
    if not isinstance(payload, Mapping):
        raise ChangeFeedError("payload must be an object")

    table = payload.get("table", "providers")
    if table != "providers":
        raise ChangeFeedError(f"unexpected table: {table!r}")

    try:
        change_type = ChangeType(str(payload.get("type", "")).upper())
    except ValueError:
        raise ChangeFeedError(f"unknown change type: {payload.get('type')!r}") from None

    if change_type == ChangeType.DELETE:
        old_record = payload.get("old_record") or payload.get("record")
        if not isinstance(old_record, Mapping) or not isinstance(old_record.get("id"), str):
            raise ChangeFeedError("DELETE payload must carry old_record.id")
        return ProviderChange.delete(old_record["id"])

    record = payload.get("record")
    if not isinstance(record, Mapping):
        raise ChangeFeedError(f"{change_type.value} payload must carry a record")
    return ProviderChange.upsert(provider_from_record(record), change_type)


Subscriber = Callable[[ProviderChange], None]


class Subscription:
    def __init__(self, feed: ProviderChangeFeed, key: int):
        self._feed = feed
        self._key = key
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.active = False
            self._feed._remove(self._key)


class ProviderChangeFeed:
    """
    In-process fan-out hub. Stores and the Django signal handlers publish here;
    search sessions subscribe.
    """

    def __init__(self):
        self._subscribers: Dict[int, Subscriber] = {}
        self._next_key = 0
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Subscription:
        with self._lock:
            key = self._next_key
            self._next_key += 1
            self._subscribers[key] = callback
        return Subscription(self, key)

    def _remove(self, key: int) -> None:
        with self._lock:
            self._subscribers.pop(key, None)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscribers)

    def publish(self, change: ProviderChange) -> None:
        with self._lock:
            subscribers = list(self._subscribers.values())
        for callback in subscribers:
            try:
                callback(change)
            except Exception:
                logger.exception("Change feed subscriber failed for provider %s", change.provider_id)

    def publish_raw(self, payload: Mapping[str, Any]) -> Optional[ProviderChange]:
        """
        Parse and publish a raw payload. Malformed payloads are logged and dropped.
        """
        try:
            change = parse_provider_change(payload)
        except ChangeFeedError as exc:
            logger.warning("Rejected malformed provider change: %s", exc)
            return None
        self.publish(change)
        return change
