from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from . import sms
from .conf import get_setting
from .dates import add_months, days_between
from .dues import compute_dues, expected_payment_for, renewal_minimum
from .exceptions import (
    AlreadyDeliveredError,
    AuthorizationError,
    InsufficientPaymentError,
    NotFoundError,
    PendingDuesError,
    ValidationError,
)
from .lifecycle import OPEN_STATUSES, StorageStatus, can_transition, expiring_window
from .models import (
    Customer,
    Location,
    Notification,
    NotificationType,
    Payment,
    PaymentMethod,
    PaymentStatus,
    Storage,
)

logger = logging.getLogger(__name__)

SORT_ORDERS = {
    "expiry_date": ("expiry_date", "id"),
    "registration_date": ("-registration_date", "-id"),
    "customer_name": ("customer__name", "id"),
}


@dataclass
class RegistrationResult:
    storage: Storage
    payment: Payment
    notification: Notification


@dataclass
class RenewalResult:
    storage: Storage
    payment: Payment
    notification: Notification
    previous_expiry_date: date
    renewal_months: int


@dataclass
class DeliveryResult:
    storage: Storage
    notification: Notification
    delivered_at: datetime


def parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError("Payment amount must be numeric")
    if not amount.is_finite() or amount < 0:
        raise ValidationError("Payment amount must be a non-negative number")
    return amount


def parse_payment_method(value) -> str:
    method = str(value or "").strip().upper()
    if method not in PaymentMethod.values:
        raise ValidationError(f"Payment method must be one of {', '.join(PaymentMethod.values)}")
    return method


def check_location_access(operator, location_id) -> None:
    if operator is not None and not operator.can_access_location(location_id):
        raise AuthorizationError()


def get_storage(storage_id, operator=None) -> Storage:
    try:
        storage = (
            Storage.objects.select_related("customer", "location", "operator")
            .filter(pk=storage_id)
            .first()
        )
    except (TypeError, ValueError):
        storage = None
    if storage is None:
        raise NotFoundError()
    check_location_access(operator, storage.location_id)
    return storage


def _lock_storage(storage_id) -> Storage:
    storage = (
        Storage.objects.select_for_update()
        .select_related("customer", "location")
        .filter(pk=storage_id)
        .first()
    )
    if storage is None:
        raise NotFoundError()
    return storage


def refresh_statuses(today: date | None = None) -> int:
    """Bring every open storage up to date; returns the number of rows changed."""
    today = today or timezone.localdate()
    now = timezone.now()
    expiring = Storage.objects.filter(
        status=StorageStatus.ACTIVE,
        expiry_date__gt=today,
        expiry_date__lte=today + expiring_window(),
    ).update(status=StorageStatus.EXPIRING, updated_at=now)
    expired = Storage.objects.filter(
        status__in=[StorageStatus.ACTIVE, StorageStatus.EXPIRING],
        expiry_date__lte=today,
    ).update(status=StorageStatus.EXPIRED, updated_at=now)
    return expiring + expired


def list_storages(operator=None, status=None, location_id=None, sort="expiry_date", today=None):
    if sort not in SORT_ORDERS:
        raise ValidationError(f"Invalid sort, use one of {', '.join(SORT_ORDERS)}")
    if location_id in ("", "ALL"):
        location_id = None
    if location_id is not None:
        try:
            location_id = int(location_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid location filter")

    refresh_statuses(today)

    qs = Storage.objects.select_related("customer", "location", "operator").prefetch_related("payments")
    if status and status != "ALL":
        if status not in StorageStatus.values:
            raise ValidationError("Invalid status filter")
        qs = qs.filter(status=status)

    if operator is not None and not operator.is_admin_role:
        qs = qs.filter(location_id=operator.assigned_location_id)
    elif location_id is not None:
        qs = qs.filter(location_id=location_id)

    return qs.order_by(*SORT_ORDERS[sort])


def _dispatch(notification: Notification, template_name: str, params: dict, phone: str) -> None:
    transaction.on_commit(
        lambda: notification.mark_dispatched(sms.send(template_name, params, phone))
    )


def register_storage(
    *,
    location: Location,
    number_of_pots: int,
    registration_date: date,
    payment_amount,
    payment_method: str,
    transaction_id: str | None = None,
    customer: Customer | None = None,
    customer_data: dict | None = None,
    operator=None,
) -> RegistrationResult:
    check_location_access(operator, location.id)

    if not isinstance(number_of_pots, int) or number_of_pots < 1:
        raise ValidationError("Number of pots must be a positive integer")
    amount = parse_amount(payment_amount)
    method = parse_payment_method(payment_method)
    required = expected_payment_for(1)
    if amount < required:
        raise InsufficientPaymentError(required, f"Registration requires a payment of at least {required}")

    if customer is None:
        customer_data = customer_data or {}
        if not (customer_data.get("name") and customer_data.get("phone")):
            raise ValidationError("Customer name and phone are required")
    else:
        check_location_access(operator, customer.location_id)

    with transaction.atomic():
        if customer is None:
            customer = Customer.objects.create(
                name=customer_data["name"],
                phone=customer_data["phone"],
                email=customer_data.get("email") or None,
                address=customer_data.get("address") or "",
                location=location,
                operator=operator,
            )

        storage = Storage.objects.create(
            customer=customer,
            location=location,
            operator=operator,
            number_of_pots=number_of_pots,
            registration_date=registration_date,
            expiry_date=add_months(registration_date, 1),
            status=StorageStatus.ACTIVE,
        )
        payment = Payment.objects.create(
            storage=storage,
            amount=amount,
            status=PaymentStatus.COMPLETED,
            payment_date=timezone.now(),
            method=method,
            transaction_id=transaction_id or None,
            operator=operator,
        )
        notification = Notification.objects.create(
            type=NotificationType.REGISTRATION,
            message=f"New ash pot entry registered for {customer.name} with {number_of_pots} pots",
            storage=storage,
            operator=operator,
        )
        _dispatch(
            notification,
            "registration",
            {"expiry_date": storage.expiry_date.isoformat()},
            customer.phone,
        )

    logger.info("Registered storage %s for customer %s", storage.pk, customer.pk)
    return RegistrationResult(storage=storage, payment=payment, notification=notification)


def renew_storage(
    storage: Storage,
    renewal_months,
    payment_amount,
    payment_method: str,
    transaction_id: str | None = None,
    operator=None,
) -> RenewalResult:
    if isinstance(renewal_months, bool) or not isinstance(renewal_months, int) or renewal_months < 1:
        raise ValidationError("Renewal months must be a whole number of at least 1")
    amount = parse_amount(payment_amount)
    method = parse_payment_method(payment_method)

    with transaction.atomic():
        locked = _lock_storage(storage.pk)
        check_location_access(operator, locked.location_id)
        if not can_transition(locked.status, StorageStatus.ACTIVE):
            raise AlreadyDeliveredError("Storage has already been delivered and cannot be renewed")

        required = renewal_minimum(renewal_months)
        if amount < required:
            raise InsufficientPaymentError(
                required,
                f"Payment amount must be at least {required} for {renewal_months} month(s)",
            )
        if transaction_id and locked.payments.filter(transaction_id=transaction_id).exists():
            raise ValidationError("This transaction has already been recorded")

        previous_expiry = locked.expiry_date
        locked.expiry_date = add_months(previous_expiry, renewal_months)
        locked.status = StorageStatus.ACTIVE
        locked.save_with_version(update_fields=["expiry_date", "status"])

        payment = Payment.objects.create(
            storage=locked,
            amount=amount,
            status=PaymentStatus.COMPLETED,
            payment_date=timezone.now(),
            method=method,
            transaction_id=transaction_id or None,
            operator=operator,
        )
        notification = Notification.objects.create(
            type=NotificationType.RENEWAL_CONFIRMATION,
            message=(
                f"Storage renewed for {locked.customer.name} for {renewal_months} month(s). "
                f"New expiry date: {locked.expiry_date.isoformat()}"
            ),
            storage=locked,
            operator=operator,
            metadata={
                "renewal_months": renewal_months,
                "previous_expiry_date": previous_expiry.isoformat(),
                "new_expiry_date": locked.expiry_date.isoformat(),
            },
        )
        _dispatch(
            notification,
            "payment_success",
            {
                "location_name": locked.location.name,
                "months": renewal_months,
                "expiry_date": locked.expiry_date.isoformat(),
            },
            locked.customer.phone,
        )

    logger.info(
        "Renewed storage %s by %s month(s), expiry %s -> %s",
        locked.pk,
        renewal_months,
        previous_expiry,
        locked.expiry_date,
    )
    return RenewalResult(
        storage=locked,
        payment=payment,
        notification=notification,
        previous_expiry_date=previous_expiry,
        renewal_months=renewal_months,
    )


def deliver_storage(
    storage: Storage,
    receiver_name: str,
    receiver_relation: str,
    notes: str = "",
    signature: str = "",
    operator=None,
) -> DeliveryResult:
    receiver_name = (receiver_name or "").strip()
    receiver_relation = (receiver_relation or "").strip()
    notes = (notes or "").strip()
    if not (receiver_name and receiver_relation):
        raise ValidationError("Receiver name and relation are required")

    with transaction.atomic():
        locked = _lock_storage(storage.pk)
        check_location_access(operator, locked.location_id)
        if locked.is_delivered:
            raise AlreadyDeliveredError()

        dues = compute_dues(locked)
        if dues.has_pending_dues:
            raise PendingDuesError(dues.total_due)

        delivered_at = timezone.now()
        locked.status = StorageStatus.DELIVERED
        locked.delivered_at = delivered_at
        locked.receiver_name = receiver_name
        locked.receiver_relation = receiver_relation
        locked.delivery_notes = notes
        locked.digital_signature = signature or ""
        locked.save_with_version(
            update_fields=[
                "status",
                "delivered_at",
                "receiver_name",
                "receiver_relation",
                "delivery_notes",
                "digital_signature",
            ]
        )

        message = (
            f"Ash pots delivered to {receiver_name} ({receiver_relation}) "
            f"on behalf of {locked.customer.name}."
        )
        if notes:
            message = f"{message} Notes: {notes}"
        notification = Notification.objects.create(
            type=NotificationType.DELIVERY_CONFIRMATION,
            message=message,
            storage=locked,
            operator=operator,
            metadata={
                "receiver_name": receiver_name,
                "receiver_relation": receiver_relation,
                "notes": notes,
                "delivered_at": delivered_at.isoformat(),
            },
        )
        _dispatch(
            notification,
            "delivery_confirmation",
            {"receiver_name": receiver_name},
            locked.customer.phone,
        )

    logger.info("Delivered storage %s to %s (%s)", locked.pk, receiver_name, receiver_relation)
    return DeliveryResult(storage=locked, notification=notification, delivered_at=delivered_at)


def send_reminders(today: date | None = None, final_warning_after_days: int | None = None, dry_run: bool = False) -> dict:
    """Append renewal reminders and final warnings that have not been issued yet."""
    today = today or timezone.localdate()
    if final_warning_after_days is None:
        final_warning_after_days = int(get_setting("FINAL_WARNING_AFTER_DAYS"))
    refresh_statuses(today)
    counts = {"renewal_reminders": 0, "final_warnings": 0}

    expiring = (
        Storage.objects.select_related("customer", "location")
        .filter(status=StorageStatus.EXPIRING)
        .exclude(
            pk__in=Notification.objects.filter(
                type=NotificationType.RENEWAL_REMINDER, metadata__reminder_date=today.isoformat()
            ).values("storage_id")
        )
    )
    for storage in expiring:
        days_left = days_between(today, storage.expiry_date)
        counts["renewal_reminders"] += 1
        if dry_run:
            continue
        with transaction.atomic():
            notification = Notification.objects.create(
                type=NotificationType.RENEWAL_REMINDER,
                message=f"Storage for {storage.customer.name} expires in {days_left} day(s) on {storage.expiry_date.isoformat()}",
                storage=storage,
                metadata={"days_left": days_left, "reminder_date": today.isoformat()},
            )
            _dispatch(
                notification,
                "renewal_reminder",
                {"location_name": storage.location.name, "days_left": days_left},
                storage.customer.phone,
            )

    overdue = (
        Storage.objects.select_related("customer", "location")
        .filter(status=StorageStatus.EXPIRED)
        .exclude(
            pk__in=Notification.objects.filter(type=NotificationType.FINAL_WARNING).values("storage_id")
        )
    )
    for storage in overdue:
        if days_between(storage.expiry_date, today) <= final_warning_after_days:
            continue
        counts["final_warnings"] += 1
        if dry_run:
            continue
        with transaction.atomic():
            notification = Notification.objects.create(
                type=NotificationType.FINAL_WARNING,
                message=f"Final warning sent to {storage.customer.name}, expired on {storage.expiry_date.isoformat()}",
                storage=storage,
            )
            _dispatch(notification, "final_warning", {}, storage.customer.phone)

    logger.info("Reminder run for %s: %s", today, counts)
    return counts


def build_summary(operator=None, start_date=None, end_date=None, today=None) -> dict:
    today = today or timezone.localdate()
    refresh_statuses(today)

    storages = Storage.objects.all()
    payments = Payment.objects.filter(status=PaymentStatus.COMPLETED)
    if operator is not None and not operator.is_admin_role:
        storages = storages.filter(location_id=operator.assigned_location_id)
        payments = payments.filter(storage__location_id=operator.assigned_location_id)
    if start_date:
        storages = storages.filter(registration_date__gte=start_date)
        payments = payments.filter(payment_date__date__gte=start_date)
    if end_date:
        storages = storages.filter(registration_date__lte=end_date)
        payments = payments.filter(payment_date__date__lte=end_date)

    data = {status.lower(): storages.filter(status=status).count() for status in StorageStatus.values}
    data.update(
        {
            "total_storages": storages.count(),
            "pots_in_custody": storages.filter(status__in=OPEN_STATUSES).aggregate(
                total=Sum("number_of_pots")
            )["total"]
            or 0,
            "todays_entries": storages.filter(registration_date=today).count(),
            "revenue": payments.aggregate(total=Sum("amount"))["total"] or 0,
            "revenue_today": payments.filter(payment_date__date=today).aggregate(total=Sum("amount"))["total"]
            or 0,
        }
    )
    return data
