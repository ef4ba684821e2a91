from django.contrib import admin

from .models import AppSetting, DeclineEntry, FeeLedgerEntry, ProviderProfile, ServiceRequestRecord


@admin.register(ProviderProfile)
class ProviderProfileAdmin(admin.ModelAdmin):
    list_display = ("provider_id", "is_online", "is_blocked", "financial_status", "pending_fee_balance", "last_heartbeat_at")
    list_filter = ("is_online", "is_blocked", "financial_status")
    search_fields = ("provider_id",)


@admin.register(ServiceRequestRecord)
class ServiceRequestAdmin(admin.ModelAdmin):
    list_display = ("id", "client_id", "service_type", "status", "provider_id", "agreed_value", "created_at")
    list_filter = ("status", "service_type", "payment_method")
    search_fields = ("id", "client_id", "provider_id")


@admin.register(FeeLedgerEntry)
class FeeLedgerEntryAdmin(admin.ModelAdmin):
    list_display = ("request_id", "provider_id", "application_fee_cents", "source", "fee_type", "status")
    list_filter = ("fee_type", "status", "source")


admin.site.register(DeclineEntry)
admin.site.register(AppSetting)
