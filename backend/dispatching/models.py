from decimal import Decimal

from django.db import models

from fees.models import CustomFee
from providers.models import FinancialStatus, Provider
from service_requests.models import (
    Location,
    Party,
    PaymentMethod,
    PaymentStatus,
    RequestStatus,
    ServiceRequest,
    ServiceType,
)


def _choices(enum_cls):
    return [(member.value, member.name.replace("_", " ").title()) for member in enum_cls]


class ProviderProfile(models.Model):
    """
    A field provider as dispatch sees it.
    Saving a profile publishes a change to the live search sessions (see signals.py).
    """
    provider_id = models.CharField(max_length=64, primary_key=True)

    # Last known position; null until the first located heartbeat
    lat = models.FloatField(blank=True, null=True)
    lng = models.FloatField(blank=True, null=True)

    # Self-declared maximum distance for incoming requests
    radar_range_km = models.FloatField(default=15.0)

    # e.g. ["tow", "mechanic"]
    services_offered = models.JSONField(default=list)

    is_online = models.BooleanField(default=False)
    last_heartbeat_at = models.DateTimeField(blank=True, null=True)
    is_blocked = models.BooleanField(default=False, help_text="Admin / anti-fraud block")

    # Fees owed from direct payments
    pending_fee_balance = models.DecimalField(max_digits=10, decimal_places=2, default=Decimal("0"))
    financial_status = models.CharField(
        max_length=20, choices=_choices(FinancialStatus), default=FinancialStatus.CLEAR.value
    )

    # Individual commission, used only when enabled and no promotion applies
    custom_fee_enabled = models.BooleanField(default=False)
    custom_fee_percentage = models.DecimalField(max_digits=5, decimal_places=2, blank=True, null=True)
    custom_fee_fixed = models.DecimalField(max_digits=10, decimal_places=2, blank=True, null=True)

    class Meta:
        indexes = [models.Index(fields=["is_online", "lat", "lng"])]

    def __str__(self):
        return f"Provider {self.provider_id} ({'online' if self.is_online else 'offline'})"

    def to_domain(self) -> Provider:
        location = (self.lat, self.lng) if self.lat is not None and self.lng is not None else None
        return Provider(
            id=self.provider_id,
            location=location,
            services_offered=frozenset(ServiceType(service) for service in self.services_offered),
            is_online=self.is_online,
            last_heartbeat_at=self.last_heartbeat_at,
            radar_range_km=self.radar_range_km,
            is_blocked=self.is_blocked,
            pending_fee_balance=Decimal(self.pending_fee_balance),
            financial_status=FinancialStatus(self.financial_status),
        )

    def custom_fee(self) -> CustomFee:
        return CustomFee(
            enabled=self.custom_fee_enabled,
            percentage=self.custom_fee_percentage,
            fixed_fee=self.custom_fee_fixed,
        )

    @staticmethod
    def columns_from_domain(provider: Provider) -> dict:
        lat, lng = provider.location if provider.location is not None else (None, None)
        return {
            "lat": lat,
            "lng": lng,
            "radar_range_km": provider.radar_range_km,
            "services_offered": sorted(service.value for service in provider.services_offered),
            "is_online": provider.is_online,
            "last_heartbeat_at": provider.last_heartbeat_at,
            "is_blocked": provider.is_blocked,
            "pending_fee_balance": provider.pending_fee_balance,
            "financial_status": provider.financial_status.value,
        }


class ServiceRequestRecord(models.Model):
    """
    Central model of the dispatch workflow.
    Tracks lifecycle: Searching -> Negotiating -> Awaiting payment -> In service
    -> Pending client confirmation -> Finished (or Canceled).
    """
    id = models.CharField(max_length=36, primary_key=True)
    client_id = models.CharField(max_length=64, db_index=True)
    service_type = models.CharField(max_length=20, choices=_choices(ServiceType))

    origin_lat = models.FloatField()
    origin_lng = models.FloatField()
    origin_address = models.TextField()

    # Only tow requests carry a destination
    destination_lat = models.FloatField(blank=True, null=True)
    destination_lng = models.FloatField(blank=True, null=True)
    destination_address = models.TextField(blank=True, null=True)

    vehicle_type = models.CharField(max_length=30, blank=True, null=True)

    status = models.CharField(
        max_length=32, choices=_choices(RequestStatus), default=RequestStatus.IDLE.value, db_index=True
    )

    # Negotiation
    proposed_value = models.DecimalField(max_digits=10, decimal_places=2, blank=True, null=True)
    agreed_value = models.DecimalField(max_digits=10, decimal_places=2, blank=True, null=True)
    last_proposal_by = models.CharField(max_length=10, choices=_choices(Party), blank=True, null=True)
    value_accepted = models.BooleanField(default=False)

    # Assigned only through the conditional update in DjangoDispatchStore
    provider_id = models.CharField(max_length=64, blank=True, null=True, db_index=True)
    declined_provider_ids = models.JSONField(default=list)

    payment_method = models.CharField(
        max_length=10, choices=_choices(PaymentMethod), default=PaymentMethod.GATEWAY.value
    )
    payment_status = models.CharField(max_length=10, choices=_choices(PaymentStatus), blank=True, null=True)
    # Paynow poll URL of the latest payment attempt
    payment_poll_url = models.URLField(max_length=500, blank=True, null=True)

    provider_finish_requested_at = models.DateTimeField(blank=True, null=True)
    auto_finished_at = models.DateTimeField(blank=True, null=True)
    auto_finish_reason = models.CharField(max_length=50, blank=True, null=True)

    canceled_by = models.CharField(max_length=10, choices=_choices(Party), blank=True, null=True)
    cancellation_reason = models.TextField(blank=True, null=True)
    canceled_at = models.DateTimeField(blank=True, null=True)

    # Set by the domain layer, not auto_now: transitions carry their own clock
    created_at = models.DateTimeField()
    updated_at = models.DateTimeField()

    class Meta:
        ordering = ["created_at"]

    def __str__(self):
        return f"Request #{self.id} - {self.status}"

    def to_domain(self) -> ServiceRequest:
        destination = None
        if self.destination_lat is not None and self.destination_lng is not None:
            destination = Location(self.destination_lat, self.destination_lng, self.destination_address or "")
        return ServiceRequest(
            id=self.id,
            client_id=self.client_id,
            service_type=ServiceType(self.service_type),
            origin=Location(self.origin_lat, self.origin_lng, self.origin_address),
            destination=destination,
            vehicle_type=self.vehicle_type,
            status=RequestStatus(self.status),
            proposed_value=self.proposed_value,
            agreed_value=self.agreed_value,
            last_proposal_by=Party(self.last_proposal_by) if self.last_proposal_by else None,
            value_accepted=self.value_accepted,
            provider_id=self.provider_id,
            declined_provider_ids=frozenset(self.declined_provider_ids),
            payment_method=PaymentMethod(self.payment_method),
            payment_status=PaymentStatus(self.payment_status) if self.payment_status else None,
            provider_finish_requested_at=self.provider_finish_requested_at,
            auto_finished_at=self.auto_finished_at,
            auto_finish_reason=self.auto_finish_reason,
            canceled_by=Party(self.canceled_by) if self.canceled_by else None,
            cancellation_reason=self.cancellation_reason,
            canceled_at=self.canceled_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class DeclineEntry(models.Model):
    """
    Append-only ledger of declines (and provider releases).
    """
    request_id = models.CharField(max_length=36, db_index=True)
    provider_id = models.CharField(max_length=64)
    declined_at = models.DateTimeField()

    class Meta:
        ordering = ["declined_at", "id"]


class FeeLedgerEntry(models.Model):
    """
    One settled platform fee per request. The unique request_id is what makes
    settlement exactly-once under concurrency.
    """
    class FeeType(models.TextChoices):
        GATEWAY = "gateway", "Gateway"
        MANUAL = "manual", "Manual"

    class Status(models.TextChoices):
        PAID = "paid", "Paid"
        OWED = "owed", "Owed"

    request_id = models.CharField(max_length=36, unique=True)
    provider_id = models.CharField(max_length=64, db_index=True)
    service_value = models.DecimalField(max_digits=10, decimal_places=2)
    total_cents = models.BigIntegerField()
    application_fee_cents = models.BigIntegerField()
    provider_receives_cents = models.BigIntegerField()
    percentage = models.DecimalField(max_digits=5, decimal_places=2)
    fixed_fee = models.DecimalField(max_digits=10, decimal_places=2)
    source = models.CharField(max_length=20)
    fee_type = models.CharField(max_length=10, choices=FeeType.choices)
    status = models.CharField(max_length=10, choices=Status.choices)
    created_at = models.DateTimeField()

    def __str__(self):
        return f"Fee {self.application_fee_cents}c for request {self.request_id}"


class AppSetting(models.Model):
    """
    Key/value application settings.
    Known keys: app_commission_percentage, provider_fee_promotion.
    """
    COMMISSION_KEY = "app_commission_percentage"
    PROMOTION_KEY = "provider_fee_promotion"

    key = models.CharField(max_length=100, unique=True)
    value = models.JSONField(default=dict)

    def __str__(self):
        return self.key
