from rest_framework import serializers
from django.utils import timezone

from .models import Customer, Location, Notification, Payment, PaymentMethod, Storage


class LocationSerializer(serializers.ModelSerializer):
    customer_count = serializers.IntegerField(read_only=True)
    storage_count = serializers.IntegerField(read_only=True)

    class Meta:
        model = Location
        fields = ["id", "name", "address", "contact_number", "capacity", "customer_count", "storage_count"]


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = ["id", "name", "phone", "email", "address", "location", "is_phone_verified", "created_at"]
        read_only_fields = ["is_phone_verified", "created_at"]


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = ["id", "amount", "status", "method", "payment_date", "transaction_id"]


class NotificationSerializer(serializers.ModelSerializer):
    class Meta:
        model = Notification
        fields = ["id", "type", "message", "status", "sent_at", "storage", "metadata", "created_at"]


class StorageSerializer(serializers.ModelSerializer):
    customer = CustomerSerializer(read_only=True)
    location_name = serializers.CharField(source="location.name", read_only=True)
    operator_name = serializers.SerializerMethodField()
    payments = PaymentSerializer(many=True, read_only=True)

    class Meta:
        model = Storage
        fields = [
            "id",
            "reference",
            "customer",
            "location",
            "location_name",
            "operator_name",
            "number_of_pots",
            "registration_date",
            "expiry_date",
            "status",
            "version",
            "delivered_at",
            "receiver_name",
            "receiver_relation",
            "delivery_notes",
            "payments",
        ]
        read_only_fields = fields

    def get_operator_name(self, obj):
        if obj.operator is None:
            return None
        return obj.operator.get_full_name() or obj.operator.get_username()


class DuesSnapshotSerializer(serializers.Serializer):
    has_pending_dues = serializers.BooleanField()
    total_due = serializers.DecimalField(max_digits=12, decimal_places=2)
    total_paid = serializers.DecimalField(max_digits=12, decimal_places=2)
    expected_payment = serializers.DecimalField(max_digits=12, decimal_places=2)
    months_covered = serializers.IntegerField()
    overdue_payments = serializers.ListField(child=serializers.DictField())


class PaymentMethodInputMixin:
    """Accept payment methods in any case ('cash', 'Cash', 'CASH')."""

    def to_internal_value(self, data):
        if hasattr(data, "copy") and isinstance(data.get("payment_method"), str):
            data = data.copy()
            data["payment_method"] = data["payment_method"].strip().upper()
        return super().to_internal_value(data)


class StorageRegistrationSerializer(PaymentMethodInputMixin, serializers.Serializer):
    customer_id = serializers.PrimaryKeyRelatedField(
        queryset=Customer.objects.all(), source="customer", required=False, allow_null=True
    )
    name = serializers.CharField(required=False, allow_blank=True)
    phone = serializers.CharField(required=False, allow_blank=True)
    email = serializers.EmailField(required=False, allow_blank=True, allow_null=True)
    address = serializers.CharField(required=False, allow_blank=True)
    location_id = serializers.PrimaryKeyRelatedField(queryset=Location.objects.all(), source="location")
    number_of_pots = serializers.IntegerField(min_value=1)
    registration_date = serializers.DateField(required=False)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    payment_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    transaction_id = serializers.CharField(required=False, allow_blank=True, allow_null=True)

    def validate(self, attrs):
        if attrs.get("customer") is None and not (attrs.get("name") and attrs.get("phone")):
            raise serializers.ValidationError("name and phone are required for a new customer")
        attrs.setdefault("registration_date", timezone.localdate())
        return attrs


class RenewalSerializer(PaymentMethodInputMixin, serializers.Serializer):
    renewal_months = serializers.IntegerField(min_value=1)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    payment_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    transaction_id = serializers.CharField(required=False, allow_blank=True, allow_null=True, max_length=100)


class DeliverySerializer(serializers.Serializer):
    receiver_name = serializers.CharField(max_length=255)
    receiver_relation = serializers.CharField(max_length=100)
    otp_code = serializers.CharField(max_length=10)
    notes = serializers.CharField(required=False, allow_blank=True, default="")
    signature = serializers.CharField(required=False, allow_blank=True, default="")
