from rest_framework import serializers

from service_requests.models import Party

from .models import DeclineEntry, FeeLedgerEntry, ProviderProfile, ServiceRequestRecord


class ServiceRequestSerializer(serializers.ModelSerializer):
    class Meta:
        model = ServiceRequestRecord
        exclude = ['payment_poll_url']
        read_only_fields = [field.name for field in ServiceRequestRecord._meta.fields if field.name != 'payment_poll_url']


class CreateRequestSerializer(serializers.Serializer):
    """
    Only the envelope is checked here; the request body itself goes through
    service_requests.validation so the API and the domain reject the same things.
    """
    client_id = serializers.CharField(max_length=64)
    service_type = serializers.CharField()
    origin = serializers.DictField()
    destination = serializers.DictField(required=False, allow_null=True)
    vehicle_type = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    payment_method = serializers.CharField(required=False)


class ProviderProfileSerializer(serializers.ModelSerializer):
    class Meta:
        model = ProviderProfile
        fields = '__all__'
        read_only_fields = ['pending_fee_balance', 'financial_status', 'last_heartbeat_at']


class HeartbeatSerializer(serializers.Serializer):
    lat = serializers.FloatField(required=False)
    lng = serializers.FloatField(required=False)

    def validate(self, attrs):
        if ('lat' in attrs) != ('lng' in attrs):
            raise serializers.ValidationError("lat and lng must be sent together")
        return attrs


class ProviderActionSerializer(serializers.Serializer):
    provider_id = serializers.CharField(max_length=64)


class ClientActionSerializer(serializers.Serializer):
    client_id = serializers.CharField(max_length=64)
    reason = serializers.CharField(required=False, allow_blank=True, allow_null=True)


class NegotiationSerializer(serializers.Serializer):
    party = serializers.ChoiceField(choices=[party.value for party in Party])
    actor_id = serializers.CharField(max_length=64)
    value = serializers.CharField(required=False)


class PaymentSerializer(serializers.Serializer):
    email = serializers.EmailField()


class DeclineEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = DeclineEntry
        fields = '__all__'


class FeeLedgerEntrySerializer(serializers.ModelSerializer):
    class Meta:
        model = FeeLedgerEntry
        fields = '__all__'
