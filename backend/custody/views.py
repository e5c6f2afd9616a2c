import io

from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ParseError, PermissionDenied
from rest_framework.response import Response
from rest_framework.views import APIView

from django.db import transaction
from django.db.models import Count, Q
from django.http import HttpResponse
from django.utils.dateparse import parse_date

import qrcode

from . import otp
from .dues import compute_dues
from .exceptions import (
    AlreadyDeliveredError,
    AuthorizationError,
    CustodyError,
    InsufficientPaymentError,
    NotFoundError,
    OtpVerificationError,
    PendingDuesError,
    StateConflictError,
    UpstreamError,
    ValidationError,
)
from .models import Customer, Location, Notification, NotificationType, OtpPurpose, Storage
from .serializers import (
    CustomerSerializer,
    DeliverySerializer,
    DuesSnapshotSerializer,
    LocationSerializer,
    NotificationSerializer,
    PaymentSerializer,
    RenewalSerializer,
    StorageRegistrationSerializer,
    StorageSerializer,
)
from .services import (
    build_summary,
    deliver_storage,
    get_storage,
    list_storages,
    register_storage,
    renew_storage,
)
from .throttles import OtpRateThrottle, OtpVerifyRateThrottle, QrRateThrottle, ReportsRateThrottle
from users.permissions import HasLocationAccess, IsAdminUserRole, IsOperatorOrAdminRole

ERROR_STATUS = [
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (StateConflictError, status.HTTP_409_CONFLICT),
    (InsufficientPaymentError, status.HTTP_400_BAD_REQUEST),
    (PendingDuesError, status.HTTP_400_BAD_REQUEST),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (UpstreamError, status.HTTP_502_BAD_GATEWAY),
]


def _error_response(exc: CustodyError, overrides=None):
    for error_class, http_status in list(overrides or []) + ERROR_STATUS:
        if isinstance(exc, error_class):
            return Response(exc.as_dict(), status=http_status)
    return Response(exc.as_dict(), status=status.HTTP_400_BAD_REQUEST)


def _invalid_input_response(serializer):
    return Response(
        {"detail": "Missing required fields", "code": ValidationError.code, "errors": serializer.errors},
        status=status.HTTP_400_BAD_REQUEST,
    )


def _parse_date_range(request):
    start_param = request.query_params.get("from")
    end_param = request.query_params.get("to")
    try:
        start_date = parse_date(start_param) if start_param else None
    except ValueError:
        start_date = None
    try:
        end_date = parse_date(end_param) if end_param else None
    except ValueError:
        end_date = None
    if start_param and not start_date:
        return None, None, Response({"detail": "Invalid from date"}, status=status.HTTP_400_BAD_REQUEST)
    if end_param and not end_date:
        return None, None, Response({"detail": "Invalid to date"}, status=status.HTTP_400_BAD_REQUEST)
    return start_date, end_date, None


class LocationViewSet(viewsets.ModelViewSet):
    serializer_class = LocationSerializer

    def get_queryset(self):
        return Location.objects.annotate(
            customer_count=Count("customers", distinct=True),
            storage_count=Count("storages", distinct=True),
        ).order_by("name")

    def get_permissions(self):
        if self.action in {"create", "update", "partial_update", "destroy"}:
            permission_classes = [IsAdminUserRole]
        else:
            permission_classes = [IsOperatorOrAdminRole]
        return [perm() for perm in permission_classes]


class CustomerViewSet(viewsets.ModelViewSet):
    serializer_class = CustomerSerializer
    permission_classes = [IsOperatorOrAdminRole, HasLocationAccess]
    http_method_names = ["get", "post", "patch", "head", "options"]

    def get_queryset(self):
        qs = Customer.objects.select_related("location").order_by("name")
        user = self.request.user
        if not user.is_admin_role:
            qs = qs.filter(location_id=user.assigned_location_id)
        query = self.request.query_params.get("q")
        if query:
            qs = qs.filter(Q(name__icontains=query.strip()) | Q(phone__icontains=query.strip()))
        return qs

    def get_target_phone(self):
        try:
            return Customer.objects.filter(pk=self.kwargs.get("pk")).values_list("phone", flat=True).first()
        except (TypeError, ValueError):
            return None

    def _check_location(self, serializer):
        location = serializer.validated_data.get("location")
        if location is not None and not self.request.user.can_access_location(location.id):
            raise PermissionDenied("You can only manage customers for your assigned location")

    def perform_create(self, serializer):
        self._check_location(serializer)
        serializer.save(operator=self.request.user)

    def perform_update(self, serializer):
        self._check_location(serializer)
        serializer.save()

    @action(detail=True, methods=["post"], url_path="send-otp", throttle_classes=[OtpRateThrottle])
    def send_otp(self, request, pk=None):
        customer = self.get_object()
        code = otp.send_code(customer.phone, OtpPurpose.CUSTOMER_VERIFICATION)
        return Response({"detail": "OTP sent", "expires_at": code.expires_at}, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=["post"], url_path="verify-phone", throttle_classes=[OtpVerifyRateThrottle])
    def verify_phone(self, request, pk=None):
        customer = self.get_object()
        code = request.data.get("otp_code")
        if not code:
            return Response({"detail": "otp_code is required"}, status=status.HTTP_400_BAD_REQUEST)
        if not otp.verify_code(customer.phone, code, OtpPurpose.CUSTOMER_VERIFICATION):
            return _error_response(OtpVerificationError())
        customer.is_phone_verified = True
        customer.save(update_fields=["is_phone_verified", "updated_at"])
        return Response(self.get_serializer(customer).data)


class StorageViewSet(viewsets.GenericViewSet):
    serializer_class = StorageSerializer
    permission_classes = [IsOperatorOrAdminRole]

    def _load(self, pk):
        return get_storage(pk, operator=self.request.user)

    def get_target_phone(self):
        try:
            return (
                Storage.objects.filter(pk=self.kwargs.get("pk"))
                .values_list("customer__phone", flat=True)
                .first()
            )
        except (TypeError, ValueError):
            return None

    def list(self, request):
        try:
            storages = list_storages(
                operator=request.user,
                status=request.query_params.get("status"),
                location_id=request.query_params.get("location"),
                sort=request.query_params.get("sort") or "expiry_date",
            )
        except CustodyError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(storages, many=True).data)

    def retrieve(self, request, pk=None):
        try:
            storage = self._load(pk)
        except CustodyError as exc:
            return _error_response(exc)
        storage.refresh_status_by_date()
        return Response(self.get_serializer(storage).data)

    def create(self, request):
        serializer = StorageRegistrationSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid_input_response(serializer)
        data = serializer.validated_data
        try:
            result = register_storage(
                location=data["location"],
                number_of_pots=data["number_of_pots"],
                registration_date=data["registration_date"],
                payment_amount=data["payment_amount"],
                payment_method=data["payment_method"],
                transaction_id=data.get("transaction_id"),
                customer=data.get("customer"),
                customer_data={key: data.get(key) for key in ("name", "phone", "email", "address")},
                operator=request.user,
            )
        except CustodyError as exc:
            return _error_response(exc)
        return Response(
            {
                "storage": self.get_serializer(result.storage).data,
                "payment": PaymentSerializer(result.payment).data,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="dues")
    def dues(self, request, pk=None):
        try:
            storage = self._load(pk)
        except CustodyError as exc:
            return _error_response(exc)
        storage.refresh_status_by_date()
        snapshot = compute_dues(storage)
        data = dict(DuesSnapshotSerializer(snapshot).data)
        data["payments"] = PaymentSerializer(
            storage.payments.order_by("-payment_date", "-id"), many=True
        ).data
        data["storage_details"] = {
            "number_of_pots": storage.number_of_pots,
            "registration_date": storage.registration_date,
            "expiry_date": storage.expiry_date,
            "status": storage.status,
            "months_covered": snapshot.months_covered,
        }
        return Response(data)

    @action(detail=True, methods=["post"], url_path="renew")
    def renew(self, request, pk=None):
        serializer = RenewalSerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid_input_response(serializer)
        data = serializer.validated_data
        try:
            storage = self._load(pk)
            result = renew_storage(
                storage,
                renewal_months=data["renewal_months"],
                payment_amount=data["payment_amount"],
                payment_method=data["payment_method"],
                transaction_id=data.get("transaction_id") or None,
                operator=request.user,
            )
        except CustodyError as exc:
            return _error_response(exc)

        storage_data = dict(self.get_serializer(result.storage).data)
        storage_data["previous_expiry_date"] = result.previous_expiry_date
        storage_data["renewal_months"] = result.renewal_months
        return Response(
            {
                "success": True,
                "storage": storage_data,
                "payment": PaymentSerializer(result.payment).data,
            }
        )

    @action(detail=True, methods=["post"], url_path="send-otp", throttle_classes=[OtpRateThrottle])
    def send_otp(self, request, pk=None):
        try:
            storage = self._load(pk)
            if storage.is_delivered:
                raise AlreadyDeliveredError()
        except CustodyError as exc:
            return _error_response(exc, overrides=[(AlreadyDeliveredError, status.HTTP_400_BAD_REQUEST)])
        code = otp.send_code(storage.customer.phone, OtpPurpose.DELIVERY_VERIFICATION)
        return Response({"detail": "OTP sent", "expires_at": code.expires_at}, status=status.HTTP_202_ACCEPTED)

    @action(detail=True, methods=["post"], url_path="deliver", throttle_classes=[OtpVerifyRateThrottle])
    def deliver(self, request, pk=None):
        serializer = DeliverySerializer(data=request.data)
        if not serializer.is_valid():
            return _invalid_input_response(serializer)
        data = serializer.validated_data
        overrides = [(AlreadyDeliveredError, status.HTTP_400_BAD_REQUEST)]
        try:
            storage = self._load(pk)
            if storage.is_delivered:
                raise AlreadyDeliveredError()
            # checked again under lock; failing early keeps the code unspent
            dues = compute_dues(storage)
            if dues.has_pending_dues:
                raise PendingDuesError(dues.total_due)
            # a failed delivery rolls back the code's consumption with it
            with transaction.atomic():
                verified = otp.verify_code(
                    storage.customer.phone, data["otp_code"], OtpPurpose.DELIVERY_VERIFICATION
                )
                if verified:
                    result = deliver_storage(
                        storage,
                        receiver_name=data["receiver_name"],
                        receiver_relation=data["receiver_relation"],
                        notes=data.get("notes", ""),
                        signature=data.get("signature", ""),
                        operator=request.user,
                    )
            if not verified:
                raise OtpVerificationError()
        except CustodyError as exc:
            return _error_response(exc, overrides=overrides)

        delivered = result.storage
        return Response(
            {
                "success": True,
                "delivery": {
                    "storage_id": delivered.id,
                    "customer_name": delivered.customer.name,
                    "number_of_pots": delivered.number_of_pots,
                    "delivery_date": result.delivered_at,
                    "receiver_name": delivered.receiver_name,
                    "receiver_relation": delivered.receiver_relation,
                    "delivery_notes": delivered.delivery_notes,
                    "operator_name": request.user.get_full_name() or request.user.get_username(),
                    "location_name": delivered.location.name,
                    "digital_signature": delivered.digital_signature or None,
                },
                "notification": {
                    "id": result.notification.id,
                    "message": result.notification.message,
                },
            }
        )

    @action(detail=True, methods=["get"], url_path="qr", throttle_classes=[QrRateThrottle])
    def qr(self, request, pk=None):
        try:
            storage = self._load(pk)
        except CustodyError as exc:
            return _error_response(exc)

        img = qrcode.make(str(storage.reference))
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")


class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = NotificationSerializer
    permission_classes = [IsOperatorOrAdminRole]

    def get_queryset(self):
        qs = Notification.objects.select_related("storage")
        user = self.request.user
        if not user.is_admin_role:
            qs = qs.filter(storage__location_id=user.assigned_location_id)
        storage_id = self.request.query_params.get("storage")
        if storage_id:
            if not storage_id.isdigit():
                raise ParseError("Invalid storage filter")
            qs = qs.filter(storage_id=int(storage_id))
        notification_type = self.request.query_params.get("type")
        if notification_type:
            if notification_type not in NotificationType.values:
                raise ParseError("Invalid type filter")
            qs = qs.filter(type=notification_type)
        return qs


class SummaryReportView(APIView):
    permission_classes = [IsOperatorOrAdminRole]
    throttle_classes = [ReportsRateThrottle]

    def get(self, request):
        start_date, end_date, error_response = _parse_date_range(request)
        if error_response:
            return error_response

        data = build_summary(operator=request.user, start_date=start_date, end_date=end_date)
        return Response(data)
