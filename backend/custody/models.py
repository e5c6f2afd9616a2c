import uuid

from django.conf import settings as django_settings
from django.db import models
from django.utils import timezone

from .exceptions import StateConflictError
from .lifecycle import StorageStatus, evaluate_status


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Location(TimeStampedModel):
    name = models.CharField(max_length=255, unique=True)
    address = models.TextField()
    contact_number = models.CharField(max_length=20, blank=True)
    capacity = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:
        return self.name


class Customer(TimeStampedModel):
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=20)
    email = models.EmailField(blank=True, null=True)
    address = models.TextField(blank=True)
    is_phone_verified = models.BooleanField(default=False)

    location = models.ForeignKey(Location, on_delete=models.PROTECT, related_name="customers")
    operator = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="customers",
        null=True,
        blank=True,
    )

    def __str__(self) -> str:
        return f"{self.name} ({self.phone})"


class Storage(TimeStampedModel):
    reference = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="storages")
    location = models.ForeignKey(Location, on_delete=models.PROTECT, related_name="storages")
    operator = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="storages",
        null=True,
        blank=True,
    )

    number_of_pots = models.PositiveIntegerField()
    registration_date = models.DateField()
    expiry_date = models.DateField()

    status = models.CharField(
        max_length=20,
        choices=StorageStatus.choices,
        default=StorageStatus.ACTIVE,
    )
    version = models.PositiveIntegerField(default=1)

    delivered_at = models.DateTimeField(blank=True, null=True)
    receiver_name = models.CharField(max_length=255, blank=True)
    receiver_relation = models.CharField(max_length=100, blank=True)
    delivery_notes = models.TextField(blank=True)
    digital_signature = models.TextField(blank=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(expiry_date__gte=models.F("registration_date")),
                name="storage_expiry_not_before_registration",
            ),
            models.CheckConstraint(
                condition=models.Q(number_of_pots__gte=1),
                name="storage_number_of_pots_positive",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.customer.name} - {self.number_of_pots} pot(s) until {self.expiry_date}"

    @property
    def is_delivered(self) -> bool:
        return self.status == StorageStatus.DELIVERED

    def refresh_status_by_date(self, today=None) -> bool:
        """Re-evaluate the status against ``today``; returns True when it changed."""
        today = today or timezone.localdate()
        new_status = evaluate_status(self.status, self.expiry_date, today)
        if new_status == self.status:
            return False
        self.status = new_status
        self.save(update_fields=["status", "updated_at"])
        return True

    def save_with_version(self, update_fields) -> None:
        """Compare-and-set on ``version`` so a concurrent writer is detected."""
        fields = {name: getattr(self, name) for name in update_fields}
        fields["version"] = self.version + 1
        fields["updated_at"] = timezone.now()
        updated = type(self).objects.filter(pk=self.pk, version=self.version).update(**fields)
        if not updated:
            raise StateConflictError("Storage record was modified by another request. Please retry.")
        self.version = fields["version"]
        self.updated_at = fields["updated_at"]


class PaymentStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    COMPLETED = "COMPLETED", "Completed"
    FAILED = "FAILED", "Failed"


class PaymentMethod(models.TextChoices):
    UPI = "UPI", "UPI"
    CASH = "CASH", "Cash"
    QR = "QR", "QR"


class Payment(TimeStampedModel):
    storage = models.ForeignKey(Storage, on_delete=models.CASCADE, related_name="payments")
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
    )
    method = models.CharField(max_length=10, choices=PaymentMethod.choices)
    payment_date = models.DateTimeField(blank=True, null=True)
    transaction_id = models.CharField(max_length=100, blank=True, null=True)
    operator = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="payments",
        null=True,
        blank=True,
    )

    class Meta:
        ordering = ["created_at", "id"]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gte=0), name="payment_amount_non_negative"),
            models.UniqueConstraint(
                fields=["storage", "transaction_id"],
                condition=models.Q(transaction_id__isnull=False),
                name="unique_transaction_per_storage_when_present",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.amount} {self.method} ({self.status})"


class NotificationType(models.TextChoices):
    REGISTRATION = "REGISTRATION", "Registration"
    RENEWAL_CONFIRMATION = "RENEWAL_CONFIRMATION", "Renewal Confirmation"
    DELIVERY_CONFIRMATION = "DELIVERY_CONFIRMATION", "Delivery Confirmation"
    RENEWAL_REMINDER = "RENEWAL_REMINDER", "Renewal Reminder"
    FINAL_WARNING = "FINAL_WARNING", "Final Warning"


class NotificationStatus(models.TextChoices):
    PENDING = "PENDING", "Pending"
    SENT = "SENT", "Sent"
    FAILED = "FAILED", "Failed"


class Notification(TimeStampedModel):
    type = models.CharField(max_length=30, choices=NotificationType.choices)
    message = models.TextField()
    status = models.CharField(
        max_length=20,
        choices=NotificationStatus.choices,
        default=NotificationStatus.PENDING,
    )
    sent_at = models.DateTimeField(blank=True, null=True)
    storage = models.ForeignKey(Storage, on_delete=models.CASCADE, related_name="notifications")
    operator = models.ForeignKey(
        django_settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="notifications",
        null=True,
        blank=True,
    )
    metadata = models.JSONField(default=dict, blank=True)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.type} ({self.created_at})"

    def mark_dispatched(self, delivered: bool) -> None:
        self.status = NotificationStatus.SENT if delivered else NotificationStatus.FAILED
        if delivered:
            self.sent_at = timezone.now()
        self.save(update_fields=["status", "sent_at", "updated_at"])


class OtpPurpose(models.TextChoices):
    CUSTOMER_VERIFICATION = "CUSTOMER_VERIFICATION", "Customer Verification"
    DELIVERY_VERIFICATION = "DELIVERY_VERIFICATION", "Delivery Verification"


class OneTimeCode(TimeStampedModel):
    phone = models.CharField(max_length=20, db_index=True)
    purpose = models.CharField(max_length=30, choices=OtpPurpose.choices)
    code_hash = models.CharField(max_length=64)
    expires_at = models.DateTimeField()
    used_at = models.DateTimeField(blank=True, null=True)
    failed_attempts = models.PositiveSmallIntegerField(default=0)

    class Meta:
        ordering = ["-created_at", "-id"]

    def __str__(self) -> str:
        return f"{self.phone} {self.purpose} ({'used' if self.is_used else 'open'})"

    @property
    def is_used(self) -> bool:
        return self.used_at is not None

    def is_expired(self, now=None) -> bool:
        return (now or timezone.now()) >= self.expires_at

    def mark_used(self) -> None:
        if not self.is_used:
            self.used_at = timezone.now()
            self.save(update_fields=["used_at", "updated_at"])

    def register_failed_attempt(self, max_attempts: int) -> None:
        """Count a wrong guess; the code is spent once ``max_attempts`` is reached."""
        self.failed_attempts += 1
        fields = ["failed_attempts", "updated_at"]
        if self.failed_attempts >= max_attempts and not self.is_used:
            self.used_at = timezone.now()
            fields.append("used_at")
        self.save(update_fields=fields)
