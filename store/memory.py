"""
Purpose: In-memory persistence boundary (reference implementation + tests + simulations).
What it does:
- Owns the tables the dispatch core needs:
   - requests (by id)
   - providers (by id)
   - decline ledger (append-only)
   - fee ledger (one record per request)
   - fee settings + per-provider custom fees

Provides operations:
   - request CRUD + update_request_if(...) (the atomic conditional update)
   - provider CRUD, publishing every change to the provider change feed
   - busy_provider_ids() / find_candidates(...)
   - expired_pending_confirmations(cutoff)
   - fee ledger + pending balance accrual

Rule: The store owns atomicity, never business rules. Every read returns an immutable snapshot.
backend.dispatching.store.DjangoDispatchStore exposes the same surface over the ORM.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import AbstractSet, Dict, FrozenSet, List, Optional

from dispatch.candidate_filter import Candidate, build_base_candidates
from dispatch.change_feed import ChangeType, ProviderChange, ProviderChangeFeed
from dispatch.decline_tracker import DeclineRecord
from fees.models import CustomFee, FeeSettings
from fees.settlement import FeeRecord
from geo.distance import LatLng, bounding_box
from providers.models import FinancialStatus, Provider
from providers.policy import SearchPolicy
from service_requests.models import (
    BUSY_STATUSES,
    RequestStatus,
    ServiceRequest,
    ServiceType,
    statuses_matching,
)

logger = logging.getLogger(__name__)


class InMemoryDispatchStore:
    def __init__(self, feed: Optional[ProviderChangeFeed] = None, fee_settings: Optional[FeeSettings] = None):
        self.feed = feed
        self._requests: Dict[str, ServiceRequest] = {}
        self._providers: Dict[str, Provider] = {}
        self._decline_ledger: List[DeclineRecord] = []
        self._fee_records: Dict[str, FeeRecord] = {}
        self._custom_fees: Dict[str, CustomFee] = {}
        self._fee_settings = fee_settings or FeeSettings()
        self._lock = threading.RLock()

    # --- Requests ---

    def insert_request(self, request: ServiceRequest) -> ServiceRequest:
        with self._lock:
            if request.id in self._requests:
                raise ValueError(f"Request {request.id} already exists")
            self._requests[request.id] = request
        return request

    def get_request(self, request_id: str) -> Optional[ServiceRequest]:
        with self._lock:
            return self._requests.get(request_id)

    def save_request(self, request: ServiceRequest) -> ServiceRequest:
        """
        Unconditional write. Lifecycle code goes through update_request_if instead.
        """
        with self._lock:
            self._requests[request.id] = request
        return request

    def update_request_if(
        self,
        request_id: str,
        expected_status: RequestStatus,
        require_unassigned: bool = False,
        **changes,
    ) -> Optional[ServiceRequest]:
        """
        Apply `changes` only while the stored row still has `expected_status`
        (and no provider, when require_unassigned). Returns the updated request,
        or None when the guard failed (someone else changed the row first).
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status not in statuses_matching(expected_status):
                return None
            if require_unassigned and current.provider_id is not None:
                return None
            updated = replace(current, **changes)
            self._requests[request_id] = updated
            return updated

    def add_declined_provider(
        self, request_id: str, provider_id: str, expected_status: RequestStatus, updated_at: datetime
    ) -> Optional[ServiceRequest]:
        """
        Add one id to the request's declined set in place, so concurrent declines never
        overwrite each other. None when the status guard fails.
        """
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status not in statuses_matching(expected_status):
                return None
            updated = replace(
                current,
                declined_provider_ids=current.declined_provider_ids | {provider_id},
                updated_at=updated_at,
            )
            self._requests[request_id] = updated
            return updated

    def remove_declined_provider(
        self, request_id: str, provider_id: str, expected_status: RequestStatus, updated_at: datetime
    ) -> Optional[ServiceRequest]:
        with self._lock:
            current = self._requests.get(request_id)
            if current is None or current.status not in statuses_matching(expected_status):
                return None
            if provider_id not in current.declined_provider_ids:
                return current
            updated = replace(
                current,
                declined_provider_ids=current.declined_provider_ids - {provider_id},
                updated_at=updated_at,
            )
            self._requests[request_id] = updated
            return updated

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[ServiceRequest]:
        with self._lock:
            requests = list(self._requests.values())
        if status is not None:
            accepted = statuses_matching(status)
            requests = [request for request in requests if request.status in accepted]
        return sorted(requests, key=lambda request: request.created_at)

    def expired_pending_confirmations(self, cutoff: datetime) -> List[ServiceRequest]:
        return [
            request
            for request in self.list_requests(RequestStatus.PENDING_CLIENT_CONFIRMATION)
            if request.provider_finish_requested_at is not None
            and request.provider_finish_requested_at <= cutoff
        ]

    # --- Providers ---

    def save_provider(self, provider: Provider) -> Provider:
        with self._lock:
            change_type = ChangeType.UPDATE if provider.id in self._providers else ChangeType.INSERT
            self._providers[provider.id] = provider
        self._publish(ProviderChange.upsert(provider, change_type))
        return provider

    def delete_provider(self, provider_id: str) -> None:
        with self._lock:
            removed = self._providers.pop(provider_id, None)
        if removed is not None:
            self._publish(ProviderChange.delete(provider_id))

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._lock:
            return self._providers.get(provider_id)

    def list_providers(self) -> List[Provider]:
        with self._lock:
            return list(self._providers.values())

    def busy_provider_ids(self) -> FrozenSet[str]:
        with self._lock:
            return frozenset(
                request.provider_id
                for request in self._requests.values()
                if request.provider_id is not None and request.status in BUSY_STATUSES
            )

    def find_candidates(
        self,
        origin: LatLng,
        radius_km: float,
        service_type: ServiceType,
        exclude_ids: AbstractSet[str],
        now: datetime,
        policy: SearchPolicy,
    ) -> List[Candidate]:
        box = bounding_box(origin, radius_km)
        nearby = [
            provider for provider in self.list_providers()
            if provider.location is not None and box.contains(provider.location)
        ]
        return build_base_candidates(
            nearby,
            origin,
            radius_km,
            service_type,
            exclude_ids=exclude_ids,
            busy_ids=self.busy_provider_ids(),
            now=now,
            policy=policy,
        )

    def _publish(self, change: ProviderChange) -> None:
        if self.feed is not None:
            self.feed.publish(change)

    # --- Decline ledger ---

    def append_decline(self, request_id: str, provider_id: str, declined_at: datetime) -> DeclineRecord:
        record = DeclineRecord(request_id, provider_id, declined_at)
        with self._lock:
            self._decline_ledger.append(record)
        return record

    def declines_for(self, request_id: str) -> List[DeclineRecord]:
        with self._lock:
            return [record for record in self._decline_ledger if record.request_id == request_id]

    # --- Fees ---

    def fee_settings(self) -> FeeSettings:
        return self._fee_settings

    def set_fee_settings(self, settings: FeeSettings) -> None:
        self._fee_settings = settings

    def custom_fee_for(self, provider_id: str) -> Optional[CustomFee]:
        with self._lock:
            return self._custom_fees.get(provider_id)

    def set_custom_fee(self, provider_id: str, custom_fee: CustomFee) -> None:
        with self._lock:
            self._custom_fees[provider_id] = custom_fee

    def get_fee_record(self, request_id: str) -> Optional[FeeRecord]:
        with self._lock:
            return self._fee_records.get(request_id)

    def insert_fee_record(self, record: FeeRecord) -> bool:
        with self._lock:
            if record.request_id in self._fee_records:
                return False
            self._fee_records[record.request_id] = record
            return True

    def fee_records(self) -> List[FeeRecord]:
        with self._lock:
            return list(self._fee_records.values())

    def add_pending_balance(self, provider_id: str, amount: Decimal) -> Optional[Provider]:
        with self._lock:
            provider = self._providers.get(provider_id)
            if provider is None:
                logger.warning("Cannot accrue fee %s: provider %s not found", amount, provider_id)
                return None
            financial_status = provider.financial_status
            if financial_status == FinancialStatus.CLEAR:
                financial_status = FinancialStatus.OWING
            updated = replace(
                provider,
                pending_fee_balance=provider.pending_fee_balance + amount,
                financial_status=financial_status,
            )
        return self.save_provider(updated)
