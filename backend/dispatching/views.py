from rest_framework import viewsets, permissions, status
from rest_framework.decorators import action
from rest_framework.response import Response
from rest_framework.views import APIView, exception_handler

from dispatch.auto_finish import run_auto_finish_sweep
from dispatch.state_machines.provider_state import (
    ProviderStateException,
    expire_stale_providers,
    go_offline,
    record_heartbeat,
)
from dispatch.state_machines.request_state import RequestStateException, StaleRequestError
from fees.resolver import FeeInvariantError
from fees.settlement import SettlementError
from service_requests.models import Party, PaymentMethod, RequestStatus
from service_requests.validation import RequestValidationError

from .models import DeclineEntry, FeeLedgerEntry, ProviderProfile, ServiceRequestRecord
from .serializers import (
    ClientActionSerializer,
    CreateRequestSerializer,
    DeclineEntrySerializer,
    FeeLedgerEntrySerializer,
    HeartbeatSerializer,
    NegotiationSerializer,
    PaymentSerializer,
    ProviderActionSerializer,
    ProviderProfileSerializer,
    ServiceRequestSerializer,
)
from .services import get_dispatcher, get_lifecycle, get_push_service, get_scheduler, get_store


def dispatch_exception_handler(exc, context):
    """
    Domain errors -> HTTP. Everything else falls through to DRF's default handler.
    """
    if isinstance(exc, RequestValidationError):
        return Response({"error": exc.reason, "detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
    if isinstance(exc, StaleRequestError):
        return Response({"error": "stale_request", "detail": str(exc)}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, (RequestStateException, ProviderStateException)):
        return Response({"error": "invalid_transition", "detail": str(exc)}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, SettlementError):
        return Response({"error": "not_settleable", "detail": str(exc)}, status=status.HTTP_409_CONFLICT)
    if isinstance(exc, FeeInvariantError):
        return Response(
            {"error": "manual_review", "detail": str(exc)}, status=status.HTTP_500_INTERNAL_SERVER_ERROR
        )
    return exception_handler(exc, context)


def _validated(serializer_class, data):
    serializer = serializer_class(data=data)
    serializer.is_valid(raise_exception=True)
    return serializer.validated_data


def _request_payload(request_id, **extra):
    record = ServiceRequestRecord.objects.get(pk=request_id)
    return {**ServiceRequestSerializer(record).data, **extra}


class ServiceRequestViewSet(viewsets.ReadOnlyModelViewSet):
    """
    Requests and their lifecycle actions.
    Authentication is handled upstream; actor ids travel in the body.
    """
    serializer_class = ServiceRequestSerializer
    permission_classes = [permissions.AllowAny]

    def get_queryset(self):
        """
        Optional filters: ?client_id=, ?provider_id=, ?status=
        """
        queryset = ServiceRequestRecord.objects.all()
        for param in ("client_id", "provider_id", "status"):
            value = self.request.query_params.get(param)
            if value:
                queryset = queryset.filter(**{param: value})
        return queryset

    def create(self, request):
        data = _validated(CreateRequestSerializer, request.data)
        created = get_dispatcher().submit_request(data["client_id"], request.data)
        return Response(_request_payload(created.id), status=status.HTTP_201_CREATED)

    # --- Search ---

    @action(detail=True, methods=['get'])
    def search(self, request, pk=None):
        """
        Live view of the request's search session.
        """
        session = get_dispatcher().session_for(pk)
        if session is None:
            return Response({"active": False})
        return Response({
            "active": session.is_active,
            "state": session.state.value,
            "radius_km": session.radius_km,
            "cooldown_remaining": session.cooldown_remaining,
            "candidates": [
                {"provider_id": c.provider_id, "distance_km": round(c.distance_km, 2)}
                for c in session.candidates
            ],
        })

    @action(detail=True, methods=['post'])
    def accept(self, request, pk=None):
        """
        Provider accepts the offer. Exactly one provider wins.
        """
        data = _validated(ProviderActionSerializer, request.data)
        if not get_dispatcher().resolve_provider_acceptance(pk, data["provider_id"]):
            return Response({"assigned": False, "error": "lost_race"}, status=status.HTTP_409_CONFLICT)
        return Response(_request_payload(pk, assigned=True))

    @action(detail=True, methods=['post'])
    def decline(self, request, pk=None):
        data = _validated(ProviderActionSerializer, request.data)
        get_dispatcher().decline_request(pk, data["provider_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'])
    def release(self, request, pk=None):
        """
        The assigned provider gives the request back; the search restarts without them.
        """
        data = _validated(ProviderActionSerializer, request.data)
        get_dispatcher().provider_cancel(pk, data["provider_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        data = _validated(ClientActionSerializer, request.data)
        get_dispatcher().client_cancel(pk, data["client_id"], data.get("reason") or None)
        return Response(_request_payload(pk))

    @action(detail=True, methods=['get'])
    def declines(self, request, pk=None):
        return Response(DeclineEntrySerializer(DeclineEntry.objects.filter(request_id=pk), many=True).data)

    # --- Negotiation ---

    @action(detail=True, methods=['post'])
    def propose(self, request, pk=None):
        data = _validated(NegotiationSerializer, request.data)
        if "value" not in data:
            return Response({"error": "invalid_value", "detail": "value is required"}, status=status.HTTP_400_BAD_REQUEST)
        get_lifecycle().propose_value(pk, Party(data["party"]), data["actor_id"], data["value"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'], url_path='accept-value')
    def accept_value(self, request, pk=None):
        data = _validated(NegotiationSerializer, request.data)
        get_lifecycle().accept_value(pk, Party(data["party"]), data["actor_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'], url_path='confirm-value')
    def confirm_value(self, request, pk=None):
        data = _validated(ClientActionSerializer, request.data)
        get_lifecycle().confirm_value(pk, data["client_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'])
    def reopen(self, request, pk=None):
        data = _validated(NegotiationSerializer, request.data)
        get_lifecycle().reopen_negotiation(pk, Party(data["party"]), data["actor_id"])
        return Response(_request_payload(pk))

    # --- Payment ---

    @action(detail=True, methods=['post'])
    def pay(self, request, pk=None):
        """
        Initiate Paynow payment for the agreed value.
        """
        data = _validated(PaymentSerializer, request.data)
        service_request = get_store().get_request(pk)
        if service_request is None:
            return Response({"error": "not_found"}, status=status.HTTP_404_NOT_FOUND)
        if service_request.canonical_status != RequestStatus.AWAITING_PAYMENT:
            return Response({"error": "Not awaiting payment"}, status=status.HTTP_400_BAD_REQUEST)
        if service_request.payment_method != PaymentMethod.GATEWAY:
            return Response({"error": "Request is paid directly to the provider"}, status=status.HTTP_400_BAD_REQUEST)

        from .paynow_service import PaynowService
        service = PaynowService()
        result = service.initiate_payment(service_request, data["email"])

        if result['success']:
            get_store().set_payment_poll_url(pk, result['poll_url'])
            return Response(result)
        else:
            return Response(result, status=status.HTTP_502_BAD_GATEWAY)

    @action(detail=True, methods=['post'], url_path='payment-status')
    def payment_status(self, request, pk=None):
        """
        Poll Paynow; a confirmed payment moves the request to in_service.
        """
        record = ServiceRequestRecord.objects.filter(pk=pk).first()
        if record is None or not record.payment_poll_url:
            return Response({"error": "No payment in progress"}, status=status.HTTP_400_BAD_REQUEST)

        from .paynow_service import PaynowService
        result = PaynowService().check_status(record.payment_poll_url)
        if result['paid'] and record.status == RequestStatus.AWAITING_PAYMENT.value:
            get_lifecycle().mark_paid(pk)
        return Response(_request_payload(pk, payment=result))

    @action(detail=True, methods=['post'], url_path='confirm-direct-payment')
    def confirm_direct_payment(self, request, pk=None):
        """
        The provider confirms they were paid directly; the platform fee becomes owed at settlement.
        """
        data = _validated(ProviderActionSerializer, request.data)
        service_request = get_store().get_request(pk)
        if service_request is None:
            return Response({"error": "not_found"}, status=status.HTTP_404_NOT_FOUND)
        if service_request.payment_method != PaymentMethod.DIRECT:
            return Response({"error": "Request is paid through the gateway"}, status=status.HTTP_400_BAD_REQUEST)
        if service_request.provider_id != data["provider_id"]:
            return Response({"error": "Not authorized"}, status=status.HTTP_403_FORBIDDEN)
        get_lifecycle().mark_paid(pk)
        return Response(_request_payload(pk))

    # --- Completion ---

    @action(detail=True, methods=['post'])
    def finish(self, request, pk=None):
        data = _validated(ProviderActionSerializer, request.data)
        get_lifecycle().provider_finish(pk, data["provider_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'], url_path='confirm-finish')
    def confirm_finish(self, request, pk=None):
        data = _validated(ClientActionSerializer, request.data)
        get_lifecycle().client_confirm_finish(pk, data["client_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'])
    def dispute(self, request, pk=None):
        data = _validated(ClientActionSerializer, request.data)
        get_lifecycle().dispute_finish(pk, data["client_id"])
        return Response(_request_payload(pk))

    @action(detail=True, methods=['post'])
    def settle(self, request, pk=None):
        result = get_lifecycle().settle(pk)
        entry = FeeLedgerEntry.objects.get(request_id=pk)
        return Response(
            {"created": result.created, "fee": FeeLedgerEntrySerializer(entry).data},
            status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK,
        )


class ProviderViewSet(viewsets.ModelViewSet):
    """
    Standard ViewSet for provider profiles, plus presence actions.
    Every save is published to the live searches through the model signals.
    """
    queryset = ProviderProfile.objects.all()
    serializer_class = ProviderProfileSerializer
    permission_classes = [permissions.AllowAny]

    @action(detail=True, methods=['post'])
    def heartbeat(self, request, pk=None):
        data = _validated(HeartbeatSerializer, request.data)
        profile = self.get_object()
        location = (data["lat"], data["lng"]) if "lat" in data else None
        provider = record_heartbeat(profile.to_domain(), get_scheduler().now(), location)
        get_store().save_provider(provider)
        profile.refresh_from_db()
        return Response(ProviderProfileSerializer(profile).data)

    @action(detail=True, methods=['post'])
    def offline(self, request, pk=None):
        profile = self.get_object()
        get_store().save_provider(go_offline(profile.to_domain()))
        profile.refresh_from_db()
        return Response(ProviderProfileSerializer(profile).data)

    @action(detail=True, methods=['get'])
    def queue(self, request, pk=None):
        """
        Requests this provider can pick up right now, oldest first.
        """
        self.get_object()
        result = get_dispatcher().pending_requests_for_provider(pk)
        return Response({
            "reason": result.reason,
            "requests": [
                {**_request_payload(item.id), "distance_km": round(distance, 2)}
                for item, distance in result.requests
            ],
        })

    @action(detail=False, methods=['post'], url_path='expire-stale')
    def expire_stale(self, request):
        expired = expire_stale_providers(get_store(), get_scheduler().now(), get_dispatcher().policy)
        return Response({"expired": expired})


class AutoFinishSweepView(APIView):
    """
    Externally triggered auto-finish guard (cron / scheduler). Idempotent.
    """
    permission_classes = [permissions.AllowAny]

    def post(self, request):
        report = run_auto_finish_sweep(
            get_store(),
            get_scheduler().now(),
            get_dispatcher().policy.auto_finish_timeout_minutes,
            get_push_service(),
        )
        return Response(report.to_dict())
