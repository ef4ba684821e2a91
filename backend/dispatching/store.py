"""
Purpose: Persistence boundary over the Django ORM.
What it does:
Same duck-typed surface as store.memory.InMemoryDispatchStore, backed by the
dispatching models. The assignment primitive is a single
UPDATE ... WHERE status IN (...) [AND provider_id IS NULL] issued through QuerySet.update().

Provider changes reach the live search sessions through the post_save / post_delete
signals (see signals.py), not from here.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import AbstractSet, Dict, FrozenSet, List, Optional

from django.db import IntegrityError, transaction

from dispatch.candidate_filter import Candidate, build_base_candidates
from dispatch.decline_tracker import DeclineRecord
from fees.models import CustomFee, FeeSettings, FeeSource
from fees.settlement import FeeRecord, FeeStatus, FeeType
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

from .models import AppSetting, DeclineEntry, FeeLedgerEntry, ProviderProfile, ServiceRequestRecord

logger = logging.getLogger(__name__)


def _status_values(status: RequestStatus) -> List[str]:
    return [member.value for member in statuses_matching(status)]


def request_columns(changes: Dict[str, object]) -> Dict[str, object]:
    """
    Map ServiceRequest field changes onto ServiceRequestRecord columns.
    """
    columns: Dict[str, object] = {}
    for name, value in changes.items():
        if name in ("origin", "destination"):
            columns[f"{name}_lat"] = value.lat if value is not None else None
            columns[f"{name}_lng"] = value.lng if value is not None else None
            columns[f"{name}_address"] = value.address if value is not None else None
        elif name == "declined_provider_ids":
            columns[name] = sorted(value)
        elif isinstance(value, Enum):
            columns[name] = value.value
        else:
            columns[name] = value
    return columns


def _fee_record_from_row(row: FeeLedgerEntry) -> FeeRecord:
    return FeeRecord(
        request_id=row.request_id,
        provider_id=row.provider_id,
        service_value=row.service_value,
        total_cents=row.total_cents,
        application_fee_cents=row.application_fee_cents,
        provider_receives_cents=row.provider_receives_cents,
        percentage=row.percentage,
        fixed_fee=row.fixed_fee,
        source=FeeSource(row.source),
        fee_type=FeeType(row.fee_type),
        status=FeeStatus(row.status),
        created_at=row.created_at,
    )


class DjangoDispatchStore:
    def __init__(self, feed=None):
        # kept for parity with the in-memory store; signals publish to this feed
        self.feed = feed

    # --- Requests ---

    def insert_request(self, request: ServiceRequest) -> ServiceRequest:
        fields = {name: getattr(request, name) for name in request.__dataclass_fields__}
        ServiceRequestRecord.objects.create(**request_columns(fields))
        return request

    def get_request(self, request_id: str) -> Optional[ServiceRequest]:
        row = ServiceRequestRecord.objects.filter(pk=request_id).first()
        return row.to_domain() if row is not None else None

    def save_request(self, request: ServiceRequest) -> ServiceRequest:
        fields = {name: getattr(request, name) for name in request.__dataclass_fields__}
        columns = request_columns(fields)
        columns.pop("id")
        ServiceRequestRecord.objects.update_or_create(pk=request.id, defaults=columns)
        return request

    def update_request_if(
        self,
        request_id: str,
        expected_status: RequestStatus,
        require_unassigned: bool = False,
        **changes,
    ) -> Optional[ServiceRequest]:
        queryset = ServiceRequestRecord.objects.filter(pk=request_id, status__in=_status_values(expected_status))
        if require_unassigned:
            queryset = queryset.filter(provider_id__isnull=True)

        if queryset.update(**request_columns(changes)) == 0:
            return None
        return self.get_request(request_id)

    def add_declined_provider(
        self, request_id: str, provider_id: str, expected_status: RequestStatus, updated_at: datetime
    ) -> Optional[ServiceRequest]:
        """
        Row-locked read-modify-write of declined_provider_ids, so declines handled by
        different workers never drop each other.
        """
        with transaction.atomic():
            row = (
                ServiceRequestRecord.objects.select_for_update()
                .filter(pk=request_id, status__in=_status_values(expected_status))
                .first()
            )
            if row is None:
                return None
            if provider_id not in row.declined_provider_ids:
                row.declined_provider_ids = sorted(set(row.declined_provider_ids) | {provider_id})
            row.updated_at = updated_at
            row.save(update_fields=["declined_provider_ids", "updated_at"])
        return row.to_domain()

    def remove_declined_provider(
        self, request_id: str, provider_id: str, expected_status: RequestStatus, updated_at: datetime
    ) -> Optional[ServiceRequest]:
        with transaction.atomic():
            row = (
                ServiceRequestRecord.objects.select_for_update()
                .filter(pk=request_id, status__in=_status_values(expected_status))
                .first()
            )
            if row is None:
                return None
            if provider_id in row.declined_provider_ids:
                row.declined_provider_ids = [pid for pid in row.declined_provider_ids if pid != provider_id]
                row.updated_at = updated_at
                row.save(update_fields=["declined_provider_ids", "updated_at"])
        return row.to_domain()

    def list_requests(self, status: Optional[RequestStatus] = None) -> List[ServiceRequest]:
        queryset = ServiceRequestRecord.objects.all()
        if status is not None:
            queryset = queryset.filter(status__in=_status_values(status))
        return [row.to_domain() for row in queryset.order_by("created_at")]

    def expired_pending_confirmations(self, cutoff: datetime) -> List[ServiceRequest]:
        queryset = ServiceRequestRecord.objects.filter(
            status__in=_status_values(RequestStatus.PENDING_CLIENT_CONFIRMATION),
            provider_finish_requested_at__isnull=False,
            provider_finish_requested_at__lte=cutoff,
        )
        return [row.to_domain() for row in queryset]

    def set_payment_poll_url(self, request_id: str, poll_url: Optional[str]) -> None:
        ServiceRequestRecord.objects.filter(pk=request_id).update(payment_poll_url=poll_url)

    # --- Providers ---

    def save_provider(self, provider: Provider) -> Provider:
        ProviderProfile.objects.update_or_create(
            provider_id=provider.id, defaults=ProviderProfile.columns_from_domain(provider)
        )
        return provider

    def delete_provider(self, provider_id: str) -> None:
        profile = ProviderProfile.objects.filter(pk=provider_id).first()
        if profile is not None:
            # instance delete so post_delete fires
            profile.delete()

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        profile = ProviderProfile.objects.filter(pk=provider_id).first()
        return profile.to_domain() if profile is not None else None

    def list_providers(self) -> List[Provider]:
        return [profile.to_domain() for profile in ProviderProfile.objects.all()]

    def busy_provider_ids(self) -> FrozenSet[str]:
        busy_values = [status.value for status in BUSY_STATUSES]
        rows = ServiceRequestRecord.objects.filter(status__in=busy_values, provider_id__isnull=False)
        return frozenset(rows.values_list("provider_id", flat=True))

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
        queryset = ProviderProfile.objects.filter(
            is_online=True,
            is_blocked=False,
            lat__gte=box.min_lat,
            lat__lte=box.max_lat,
            lng__gte=box.min_lng,
            lng__lte=box.max_lng,
        ).exclude(provider_id__in=list(exclude_ids))

        return build_base_candidates(
            (profile.to_domain() for profile in queryset),
            origin,
            radius_km,
            service_type,
            exclude_ids=exclude_ids,
            busy_ids=self.busy_provider_ids(),
            now=now,
            policy=policy,
        )

    # --- Decline ledger ---

    def append_decline(self, request_id: str, provider_id: str, declined_at: datetime) -> DeclineRecord:
        DeclineEntry.objects.create(request_id=request_id, provider_id=provider_id, declined_at=declined_at)
        return DeclineRecord(request_id, provider_id, declined_at)

    def declines_for(self, request_id: str) -> List[DeclineRecord]:
        return [
            DeclineRecord(row.request_id, row.provider_id, row.declined_at)
            for row in DeclineEntry.objects.filter(request_id=request_id)
        ]

    # --- Fees ---

    def fee_settings(self) -> FeeSettings:
        values = dict(
            AppSetting.objects.filter(
                key__in=[AppSetting.COMMISSION_KEY, AppSetting.PROMOTION_KEY]
            ).values_list("key", "value")
        )
        return FeeSettings.from_app_settings(
            values.get(AppSetting.COMMISSION_KEY), values.get(AppSetting.PROMOTION_KEY)
        )

    def custom_fee_for(self, provider_id: str) -> Optional[CustomFee]:
        profile = ProviderProfile.objects.filter(pk=provider_id).first()
        return profile.custom_fee() if profile is not None else None

    def get_fee_record(self, request_id: str) -> Optional[FeeRecord]:
        row = FeeLedgerEntry.objects.filter(request_id=request_id).first()
        return _fee_record_from_row(row) if row is not None else None

    def insert_fee_record(self, record: FeeRecord) -> bool:
        try:
            with transaction.atomic():
                FeeLedgerEntry.objects.create(
                    request_id=record.request_id,
                    provider_id=record.provider_id,
                    service_value=record.service_value,
                    total_cents=record.total_cents,
                    application_fee_cents=record.application_fee_cents,
                    provider_receives_cents=record.provider_receives_cents,
                    percentage=record.percentage,
                    fixed_fee=record.fixed_fee,
                    source=record.source.value,
                    fee_type=record.fee_type.value,
                    status=record.status.value,
                    created_at=record.created_at,
                )
        except IntegrityError:
            return False
        return True

    def add_pending_balance(self, provider_id: str, amount: Decimal) -> Optional[Provider]:
        with transaction.atomic():
            profile = ProviderProfile.objects.select_for_update().filter(pk=provider_id).first()
            if profile is None:
                logger.warning("Cannot accrue fee %s: provider %s not found", amount, provider_id)
                return None
            profile.pending_fee_balance = profile.pending_fee_balance + amount
            if profile.financial_status == FinancialStatus.CLEAR.value:
                profile.financial_status = FinancialStatus.OWING.value
            profile.save(update_fields=["pending_fee_balance", "financial_status"])
        return profile.to_domain()
