from django.contrib import admin

from .models import Customer, Location, Notification, OneTimeCode, Payment, PaymentStatus, Storage

PAYMENT_FIELDS = ("storage", "amount", "status", "method", "payment_date", "transaction_id", "operator")
LIFECYCLE_FIELDS = ("registration_date", "expiry_date", "status", "number_of_pots", "customer", "location")
DELIVERY_FIELDS = (
    "reference",
    "version",
    "delivered_at",
    "receiver_name",
    "receiver_relation",
    "delivery_notes",
    "digital_signature",
)


@admin.register(Location)
class LocationAdmin(admin.ModelAdmin):
    list_display = ("name", "contact_number", "capacity", "created_at")
    search_fields = ("name", "address")


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("name", "phone", "email", "location", "is_phone_verified", "created_at")
    search_fields = ("name", "phone", "email")
    list_filter = ("location", "is_phone_verified")


class PaymentInline(admin.TabularInline):
    model = Payment
    extra = 0
    readonly_fields = PAYMENT_FIELDS[1:]
    can_delete = False

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Storage)
class StorageAdmin(admin.ModelAdmin):
    list_display = ("customer", "location", "number_of_pots", "status", "registration_date", "expiry_date")
    search_fields = ("customer__name", "customer__phone", "reference")
    list_filter = ("status", "location")
    readonly_fields = DELIVERY_FIELDS
    inlines = [PaymentInline]

    def get_readonly_fields(self, request, obj=None):
        # dates and status only move through renewal, delivery and the status refresh
        if obj is None:
            return self.readonly_fields
        return self.readonly_fields + LIFECYCLE_FIELDS


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ("storage", "amount", "method", "status", "payment_date", "transaction_id")
    list_filter = ("status", "method")
    search_fields = ("transaction_id", "storage__customer__name")

    def get_readonly_fields(self, request, obj=None):
        if obj is None:
            return ()
        return PAYMENT_FIELDS

    def has_change_permission(self, request, obj=None):
        if obj is not None and obj.status == PaymentStatus.COMPLETED:
            return False
        return super().has_change_permission(request, obj)

    def has_delete_permission(self, request, obj=None):
        if obj is not None and obj.status == PaymentStatus.COMPLETED:
            return False
        return super().has_delete_permission(request, obj)


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("type", "storage", "status", "sent_at", "created_at")
    list_filter = ("type", "status", "created_at")
    search_fields = ("message", "storage__customer__name")


@admin.register(OneTimeCode)
class OneTimeCodeAdmin(admin.ModelAdmin):
    list_display = ("phone", "purpose", "expires_at", "used_at", "failed_attempts")
    readonly_fields = ("failed_attempts",)
    list_filter = ("purpose",)
    search_fields = ("phone",)
    exclude = ("code_hash",)
