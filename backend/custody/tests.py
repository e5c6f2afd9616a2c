from datetime import date, timedelta
from decimal import Decimal
from io import StringIO
from unittest import mock

from django.contrib import admin as django_admin
from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.core.management import call_command
from django.test import RequestFactory, SimpleTestCase, TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from users.models import UserRole

from . import otp, sms
from .dates import add_months, days_between, months_covered
from .dues import compute_dues, expected_payment_for
from .exceptions import (
    AlreadyDeliveredError,
    AuthorizationError,
    InsufficientPaymentError,
    PendingDuesError,
    StateConflictError,
    ValidationError,
)
from .lifecycle import StorageStatus, can_transition, evaluate_status
from .models import (
    Customer,
    Location,
    Notification,
    NotificationStatus,
    NotificationType,
    OneTimeCode,
    OtpPurpose,
    Payment,
    PaymentStatus,
    Storage,
)
from .services import (
    deliver_storage,
    refresh_statuses,
    register_storage,
    renew_storage,
    send_reminders,
)


class FailingSmsBackend:
    def send_text(self, phone, message):
        raise ConnectionError("gateway down")


def make_storage(location, customer, registration_date, expiry_date, paid=(), **kwargs):
    storage = Storage.objects.create(
        customer=customer,
        location=location,
        number_of_pots=kwargs.pop("number_of_pots", 2),
        registration_date=registration_date,
        expiry_date=expiry_date,
        **kwargs,
    )
    for amount in paid:
        Payment.objects.create(
            storage=storage,
            amount=Decimal(amount),
            status=PaymentStatus.COMPLETED,
            method="CASH",
            payment_date=timezone.now(),
        )
    return storage


class StorageFixturesMixin:
    def setUp(self):
        cache.clear()
        self.location = Location.objects.create(name="Ghat Road", address="1 Ghat Road")
        self.other_location = Location.objects.create(name="River Side", address="2 River Side")
        self.customer = Customer.objects.create(name="Ravi", phone="9000000001", location=self.location)


class DateMathTests(SimpleTestCase):
    def test_add_months_keeps_day(self):
        self.assertEqual(add_months(date(2024, 2, 1), 2), date(2024, 4, 1))

    def test_add_months_clamps_to_last_day(self):
        self.assertEqual(add_months(date(2024, 1, 31), 1), date(2024, 2, 29))
        self.assertEqual(add_months(date(2023, 1, 31), 1), date(2023, 2, 28))
        self.assertEqual(add_months(date(2024, 3, 31), 1), date(2024, 4, 30))

    def test_add_months_rolls_over_year(self):
        self.assertEqual(add_months(date(2024, 11, 15), 3), date(2025, 2, 15))

    def test_days_between_can_be_negative(self):
        self.assertEqual(days_between(date(2024, 1, 1), date(2024, 2, 1)), 31)
        self.assertEqual(days_between(date(2024, 2, 1), date(2024, 1, 1)), -31)

    def test_months_covered_whole_months(self):
        self.assertEqual(months_covered(date(2024, 1, 1), date(2024, 2, 1)), 1)
        self.assertEqual(months_covered(date(2024, 1, 1), date(2024, 4, 1)), 3)

    def test_months_covered_rounds_partial_months_up(self):
        self.assertEqual(months_covered(date(2024, 1, 1), date(2024, 2, 2)), 2)
        self.assertEqual(months_covered(date(2024, 1, 15), date(2024, 2, 10)), 1)

    def test_months_covered_minimum_one(self):
        self.assertEqual(months_covered(date(2024, 1, 1), date(2024, 1, 1)), 1)

    def test_months_covered_follows_clamped_renewals(self):
        registered = date(2024, 1, 31)
        expiry = add_months(add_months(registered, 1), 1)
        self.assertEqual(expiry, date(2024, 3, 29))
        self.assertEqual(months_covered(registered, expiry), 2)


class LifecycleTests(SimpleTestCase):
    expiry = date(2024, 2, 1)

    def test_active_stays_active_outside_window(self):
        self.assertEqual(
            evaluate_status(StorageStatus.ACTIVE, self.expiry, date(2024, 1, 20)),
            StorageStatus.ACTIVE,
        )

    def test_active_becomes_expiring_seven_days_before(self):
        self.assertEqual(
            evaluate_status(StorageStatus.ACTIVE, self.expiry, date(2024, 1, 25)),
            StorageStatus.EXPIRING,
        )
        self.assertEqual(
            evaluate_status(StorageStatus.ACTIVE, self.expiry, date(2024, 1, 31)),
            StorageStatus.EXPIRING,
        )

    def test_expired_on_expiry_date(self):
        for current in (StorageStatus.ACTIVE, StorageStatus.EXPIRING):
            self.assertEqual(evaluate_status(current, self.expiry, self.expiry), StorageStatus.EXPIRED)

    def test_delivered_is_terminal(self):
        self.assertEqual(
            evaluate_status(StorageStatus.DELIVERED, self.expiry, date(2025, 1, 1)),
            StorageStatus.DELIVERED,
        )
        for target in StorageStatus.values:
            self.assertFalse(can_transition(StorageStatus.DELIVERED, target))

    def test_evaluation_is_idempotent(self):
        today = date(2024, 1, 28)
        first = evaluate_status(StorageStatus.ACTIVE, self.expiry, today)
        second = evaluate_status(first, self.expiry, today)
        self.assertEqual(first, second)

    def test_renewal_transitions_allowed_from_open_states(self):
        for current in (StorageStatus.ACTIVE, StorageStatus.EXPIRING, StorageStatus.EXPIRED):
            self.assertTrue(can_transition(current, StorageStatus.ACTIVE))
            self.assertTrue(can_transition(current, StorageStatus.DELIVERED))
        self.assertFalse(can_transition(StorageStatus.EXPIRED, StorageStatus.EXPIRING))


class DuesTests(StorageFixturesMixin, TestCase):
    def test_one_month_expects_initial_fee(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1))
        dues = compute_dues(storage)
        self.assertEqual(dues.months_covered, 1)
        self.assertEqual(dues.expected_payment, Decimal("500"))
        self.assertTrue(dues.has_pending_dues)
        self.assertEqual(dues.total_due, Decimal("500"))

    def test_three_months_adds_monthly_rate(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 4, 1))
        self.assertEqual(compute_dues(storage).expected_payment, Decimal("1100"))

    def test_fully_paid_storage_has_no_dues(self):
        storage = make_storage(
            self.location, self.customer, date(2024, 1, 1), date(2024, 4, 1), paid=["500", "600"]
        )
        dues = compute_dues(storage)
        self.assertEqual(dues.total_paid, Decimal("1100"))
        self.assertEqual(dues.total_due, Decimal("0"))
        self.assertFalse(dues.has_pending_dues)

    def test_overpayment_clamps_due_to_zero(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["900"])
        dues = compute_dues(storage)
        self.assertEqual(dues.total_due, Decimal("0"))
        self.assertFalse(dues.has_pending_dues)

    def test_only_completed_payments_count(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["200"])
        pending = Payment.objects.create(storage=storage, amount=Decimal("300"), status=PaymentStatus.PENDING, method="UPI")
        Payment.objects.create(storage=storage, amount=Decimal("300"), status=PaymentStatus.FAILED, method="UPI")

        dues = compute_dues(storage)
        self.assertEqual(dues.total_paid, Decimal("200"))
        self.assertEqual(dues.total_due, Decimal("300"))
        self.assertEqual([p["id"] for p in dues.overdue_payments], [pending.id])

    def test_expected_payment_is_monotonic(self):
        values = [expected_payment_for(months) for months in range(1, 25)]
        self.assertEqual(values, sorted(values))

    @override_settings(CUSTODY_SETTINGS={"INITIAL_FEE": 1000, "MONTHLY_RATE": 100})
    def test_pricing_comes_from_settings(self):
        self.assertEqual(expected_payment_for(3), Decimal("1200"))


class StatusRefreshTests(StorageFixturesMixin, TestCase):
    def test_refresh_statuses_moves_records_forward(self):
        today = date(2024, 3, 1)
        active = make_storage(self.location, self.customer, date(2024, 2, 25), date(2024, 3, 25))
        expiring = make_storage(self.location, self.customer, date(2024, 2, 5), date(2024, 3, 5))
        expired = make_storage(
            self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), status=StorageStatus.EXPIRING
        )
        delivered = make_storage(
            self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), status=StorageStatus.DELIVERED
        )

        self.assertEqual(refresh_statuses(today), 2)
        self.assertEqual(refresh_statuses(today), 0)

        for storage, expected in [
            (active, StorageStatus.ACTIVE),
            (expiring, StorageStatus.EXPIRING),
            (expired, StorageStatus.EXPIRED),
            (delivered, StorageStatus.DELIVERED),
        ]:
            storage.refresh_from_db()
            self.assertEqual(storage.status, expected)

    def test_refresh_status_by_date_on_single_record(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1))
        self.assertTrue(storage.refresh_status_by_date(date(2024, 2, 1)))
        self.assertFalse(storage.refresh_status_by_date(date(2024, 2, 1)))
        storage.refresh_from_db()
        self.assertEqual(storage.status, StorageStatus.EXPIRED)


class RegistrationTests(StorageFixturesMixin, TestCase):
    def test_register_creates_storage_payment_and_notification(self):
        result = register_storage(
            location=self.location,
            number_of_pots=3,
            registration_date=date(2024, 1, 31),
            payment_amount="500",
            payment_method="cash",
            customer_data={"name": "Lakshmi", "phone": "9000000002"},
        )
        self.assertEqual(result.storage.expiry_date, date(2024, 2, 29))
        self.assertEqual(result.storage.status, StorageStatus.ACTIVE)
        self.assertEqual(result.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(result.payment.method, "CASH")
        self.assertEqual(result.notification.type, NotificationType.REGISTRATION)
        self.assertFalse(compute_dues(result.storage).has_pending_dues)

    def test_register_requires_initial_fee(self):
        with self.assertRaises(InsufficientPaymentError) as ctx:
            register_storage(
                location=self.location,
                number_of_pots=1,
                registration_date=date(2024, 1, 1),
                payment_amount="100",
                payment_method="UPI",
                customer=self.customer,
            )
        self.assertEqual(ctx.exception.required_amount, Decimal("500"))
        self.assertFalse(Storage.objects.exists())


class RenewalTests(StorageFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.storage = make_storage(
            self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["500"]
        )

    def test_renewal_extends_expiry_and_records_payment(self):
        result = renew_storage(self.storage, 2, "600", "UPI", transaction_id="TXN-1")

        self.storage.refresh_from_db()
        self.assertEqual(result.previous_expiry_date, date(2024, 2, 1))
        self.assertEqual(self.storage.expiry_date, date(2024, 4, 1))
        self.assertEqual(self.storage.status, StorageStatus.ACTIVE)
        self.assertEqual(self.storage.version, 2)
        self.assertEqual(result.payment.amount, Decimal("600"))
        self.assertEqual(result.payment.status, PaymentStatus.COMPLETED)
        self.assertEqual(result.notification.type, NotificationType.RENEWAL_CONFIRMATION)
        self.assertIn("2024-04-01", result.notification.message)
        self.assertFalse(compute_dues(self.storage).has_pending_dues)

    def test_payment_equal_to_minimum_is_accepted(self):
        result = renew_storage(self.storage, 1, "300", "CASH")
        self.assertEqual(result.storage.expiry_date, date(2024, 3, 1))

    def test_payment_below_minimum_is_rejected(self):
        with self.assertRaises(InsufficientPaymentError) as ctx:
            renew_storage(self.storage, 2, "500", "CASH")
        self.assertEqual(ctx.exception.required_amount, Decimal("600"))
        self.assertIn("600", ctx.exception.detail)

        self.storage.refresh_from_db()
        self.assertEqual(self.storage.expiry_date, date(2024, 2, 1))
        self.assertEqual(self.storage.payments.count(), 1)

    def test_expired_storage_becomes_active_again(self):
        self.storage.refresh_status_by_date(date(2024, 3, 1))
        self.assertEqual(self.storage.status, StorageStatus.EXPIRED)

        result = renew_storage(self.storage, 3, "900", "QR")
        self.assertEqual(result.storage.status, StorageStatus.ACTIVE)
        self.assertGreater(result.storage.expiry_date, date(2024, 2, 1))

    def test_invalid_months_rejected(self):
        for months in (0, -1, 1.5, "2"):
            with self.assertRaises(ValidationError):
                renew_storage(self.storage, months, "600", "CASH")

    def test_unknown_payment_method_rejected(self):
        with self.assertRaises(ValidationError):
            renew_storage(self.storage, 1, "300", "CHEQUE")

    def test_duplicate_transaction_id_rejected(self):
        renew_storage(self.storage, 1, "300", "UPI", transaction_id="UPI-42")
        with self.assertRaises(ValidationError):
            renew_storage(self.storage, 1, "300", "UPI", transaction_id="UPI-42")
        self.assertEqual(self.storage.payments.count(), 2)

    def test_delivered_storage_cannot_be_renewed(self):
        self.storage.status = StorageStatus.DELIVERED
        self.storage.save()
        with self.assertRaises(StateConflictError):
            renew_storage(self.storage, 1, "300", "CASH")

    def test_operator_from_other_location_is_rejected(self):
        operator = get_user_model().objects.create_user(
            username="elsewhere", password="pass1234", role=UserRole.OPERATOR, assigned_location=self.other_location
        )
        with self.assertRaises(AuthorizationError):
            renew_storage(self.storage, 1, "300", "CASH", operator=operator)

    def test_stale_version_is_detected(self):
        stale = Storage.objects.get(pk=self.storage.pk)
        renew_storage(self.storage, 1, "300", "CASH")
        stale.status = StorageStatus.EXPIRED
        with self.assertRaises(StateConflictError):
            stale.save_with_version(update_fields=["status"])

    def test_confirmation_sms_marks_notification_sent(self):
        with self.captureOnCommitCallbacks(execute=True):
            result = renew_storage(self.storage, 1, "300", "CASH")
        result.notification.refresh_from_db()
        self.assertEqual(result.notification.status, NotificationStatus.SENT)
        self.assertIsNotNone(result.notification.sent_at)

    @override_settings(CUSTODY_SETTINGS={"SMS_BACKEND": "custody.tests.FailingSmsBackend"})
    def test_sms_failure_does_not_fail_renewal(self):
        with self.assertLogs("custody.sms", level="ERROR"):
            with self.captureOnCommitCallbacks(execute=True):
                result = renew_storage(self.storage, 1, "300", "CASH")
        result.notification.refresh_from_db()
        self.assertEqual(result.notification.status, NotificationStatus.FAILED)
        self.storage.refresh_from_db()
        self.assertEqual(self.storage.expiry_date, date(2024, 3, 1))


class DeliveryTests(StorageFixturesMixin, TestCase):
    def test_pending_dues_block_delivery_until_cleared(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 3, 1), paid=["600"])

        with self.assertRaises(PendingDuesError) as ctx:
            deliver_storage(storage, "Suresh", "Son")
        self.assertEqual(ctx.exception.amount, Decimal("200"))
        storage.refresh_from_db()
        self.assertEqual(storage.status, StorageStatus.ACTIVE)

        renew_storage(storage, 1, "500", "CASH")
        result = deliver_storage(storage, "Suresh", "Son", notes="Collected at noon", signature="data:sig")

        self.assertEqual(result.storage.status, StorageStatus.DELIVERED)
        self.assertEqual(result.storage.receiver_name, "Suresh")
        self.assertEqual(result.notification.type, NotificationType.DELIVERY_CONFIRMATION)
        self.assertIn("Suresh (Son)", result.notification.message)
        self.assertIn("Collected at noon", result.notification.message)

    def test_delivered_is_terminal(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["500"])
        deliver_storage(storage, "Suresh", "Son")

        with self.assertRaises(AlreadyDeliveredError):
            deliver_storage(storage, "Suresh", "Son")
        with self.assertRaises(StateConflictError):
            renew_storage(storage, 1, "300", "CASH")
        storage.refresh_from_db()
        self.assertEqual(storage.status, StorageStatus.DELIVERED)
        self.assertFalse(storage.refresh_status_by_date(date(2030, 1, 1)))

    def test_receiver_details_required(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["500"])
        for name, relation in [("", "Son"), ("Suresh", "  "), (None, None)]:
            with self.assertRaises(ValidationError):
                deliver_storage(storage, name, relation)

    def test_expired_but_paid_storage_can_be_delivered(self):
        storage = make_storage(
            self.location,
            self.customer,
            date(2024, 1, 1),
            date(2024, 2, 1),
            paid=["500"],
            status=StorageStatus.EXPIRED,
        )
        result = deliver_storage(storage, "Meena", "Daughter")
        self.assertEqual(result.storage.status, StorageStatus.DELIVERED)


class OtpTests(TestCase):
    phone = "9000000009"

    @mock.patch("custody.otp.generate_code", return_value="4321")
    def test_code_is_single_use(self, _):
        otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        self.assertTrue(otp.verify_code(self.phone, "4321", OtpPurpose.DELIVERY_VERIFICATION))
        self.assertFalse(otp.verify_code(self.phone, "4321", OtpPurpose.DELIVERY_VERIFICATION))

    @mock.patch("custody.otp.generate_code", return_value="4321")
    def test_code_is_not_stored_in_plain_text(self, _):
        code = otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        self.assertNotEqual(code.code_hash, "4321")
        self.assertEqual(code.code_hash, otp.hash_code("4321"))

    @mock.patch("custody.otp.generate_code", return_value="4321")
    def test_expired_code_rejected(self, _):
        code = otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        OneTimeCode.objects.filter(pk=code.pk).update(expires_at=timezone.now() - timedelta(seconds=1))
        self.assertFalse(otp.verify_code(self.phone, "4321", OtpPurpose.DELIVERY_VERIFICATION))

    @mock.patch("custody.otp.generate_code", return_value="4321")
    def test_code_bound_to_purpose_and_phone(self, _):
        otp.send_code(self.phone, OtpPurpose.CUSTOMER_VERIFICATION)
        self.assertFalse(otp.verify_code(self.phone, "4321", OtpPurpose.DELIVERY_VERIFICATION))
        self.assertFalse(otp.verify_code("9111111111", "4321", OtpPurpose.CUSTOMER_VERIFICATION))
        self.assertTrue(otp.verify_code(self.phone, "4321", OtpPurpose.CUSTOMER_VERIFICATION))

    def test_new_code_invalidates_previous(self):
        with mock.patch("custody.otp.generate_code", return_value="1111"):
            otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        with mock.patch("custody.otp.generate_code", return_value="2222"):
            otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        self.assertFalse(otp.verify_code(self.phone, "1111", OtpPurpose.DELIVERY_VERIFICATION))
        self.assertTrue(otp.verify_code(self.phone, "2222", OtpPurpose.DELIVERY_VERIFICATION))

    def test_ttl_is_five_minutes(self):
        code = otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        window = code.expires_at - code.created_at
        self.assertAlmostEqual(window.total_seconds(), 300, delta=5)

    def test_generated_code_has_four_digits(self):
        for _ in range(20):
            code = otp.generate_code()
            self.assertEqual(len(code), 4)
            self.assertTrue(code.isdigit())


class SmsTests(SimpleTestCase):
    def test_render_template(self):
        self.assertEqual(
            sms.render("delivery_confirmation", {"receiver_name": "Suresh"}),
            'Ashes safely collected by "Suresh".',
        )

    def test_unknown_template_is_logged_not_raised(self):
        with self.assertLogs("custody.sms", level="ERROR"):
            self.assertFalse(sms.send("no_such_template", {}, "9000000001"))

    @override_settings(CUSTODY_SETTINGS={"SMS_BACKEND": "custody.tests.FailingSmsBackend"})
    def test_gateway_failure_returns_false(self):
        with self.assertLogs("custody.sms", level="ERROR"):
            self.assertFalse(sms.send("final_warning", {}, "9000000001"))

    def test_logging_backend_reports_success(self):
        self.assertTrue(sms.send("payment_failure", {}, "9000000001"))


class ReminderTests(StorageFixturesMixin, TestCase):
    def test_reminders_and_final_warnings(self):
        today = date(2024, 6, 1)
        expiring = make_storage(self.location, self.customer, date(2024, 5, 5), date(2024, 6, 5))
        long_expired = make_storage(self.location, self.customer, date(2024, 3, 1), date(2024, 4, 1))
        recently_expired = make_storage(self.location, self.customer, date(2024, 4, 20), date(2024, 5, 20))

        counts = send_reminders(today=today)
        self.assertEqual(counts, {"renewal_reminders": 1, "final_warnings": 1})
        self.assertTrue(expiring.notifications.filter(type=NotificationType.RENEWAL_REMINDER).exists())
        self.assertTrue(long_expired.notifications.filter(type=NotificationType.FINAL_WARNING).exists())
        self.assertFalse(recently_expired.notifications.exists())

        self.assertEqual(send_reminders(today=today), {"renewal_reminders": 0, "final_warnings": 0})

    def test_command_dry_run_writes_nothing(self):
        make_storage(self.location, self.customer, date(2024, 3, 1), date(2024, 4, 1))
        out = StringIO()
        call_command("send_storage_reminders", "--date", "2024-06-01", "--dry-run", stdout=out)
        self.assertIn("final warnings: 1", out.getvalue())
        self.assertFalse(Notification.objects.exists())


class StorageApiTestBase(StorageFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="admin", password="pass1234", role=UserRole.ADMIN)
        self.operator = user_model.objects.create_user(
            username="operator",
            password="pass1234",
            role=UserRole.OPERATOR,
            assigned_location=self.location,
        )
        self.client = APIClient()
        self.client.force_authenticate(self.operator)
        self.today = timezone.localdate()


class StorageListApiTests(StorageApiTestBase):
    def setUp(self):
        super().setUp()
        other_customer = Customer.objects.create(name="Anil", phone="9000000003", location=self.location)
        far_customer = Customer.objects.create(name="Zoya", phone="9000000004", location=self.other_location)
        self.late = make_storage(
            self.location, self.customer, self.today - timedelta(days=5), self.today + timedelta(days=60)
        )
        self.soon = make_storage(
            self.location, other_customer, self.today - timedelta(days=25), self.today + timedelta(days=3)
        )
        self.elsewhere = make_storage(
            self.other_location, far_customer, self.today - timedelta(days=1), self.today + timedelta(days=30)
        )

    def test_operator_sees_own_location_sorted_by_expiry(self):
        response = self.client.get(reverse("storages-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["id"] for row in response.data], [self.soon.id, self.late.id])

    def test_listing_refreshes_statuses(self):
        response = self.client.get(reverse("storages-list"), data={"status": StorageStatus.EXPIRING})
        self.assertEqual([row["id"] for row in response.data], [self.soon.id])

    def test_sort_by_registration_and_customer_name(self):
        self.client.force_authenticate(self.admin)
        response = self.client.get(reverse("storages-list"), data={"sort": "registration_date"})
        self.assertEqual([row["id"] for row in response.data], [self.elsewhere.id, self.late.id, self.soon.id])

        response = self.client.get(reverse("storages-list"), data={"sort": "customer_name"})
        self.assertEqual(
            [row["customer"]["name"] for row in response.data],
            ["Anil", "Ravi", "Zoya"],
        )

    def test_admin_location_filter(self):
        self.client.force_authenticate(self.admin)
        response = self.client.get(reverse("storages-list"), data={"location": self.other_location.id})
        self.assertEqual([row["id"] for row in response.data], [self.elsewhere.id])

    def test_invalid_sort_rejected(self):
        response = self.client.get(reverse("storages-list"), data={"sort": "size"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "validation_error")

    def test_operator_cannot_open_other_location(self):
        response = self.client.get(reverse("storages-detail", kwargs={"pk": self.elsewhere.id}))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_unauthenticated_rejected(self):
        response = APIClient().get(reverse("storages-list"))
        self.assertIn(response.status_code, (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN))


class StorageActionApiTests(StorageApiTestBase):
    def setUp(self):
        super().setUp()
        self.storage = make_storage(
            self.location,
            self.customer,
            self.today - timedelta(days=10),
            add_months(self.today - timedelta(days=10), 1),
            paid=["500"],
        )

    def test_register_storage(self):
        response = self.client.post(
            reverse("storages-list"),
            data={
                "name": "Kavya",
                "phone": "9000000010",
                "location_id": self.location.id,
                "number_of_pots": 2,
                "registration_date": "2024-01-01",
                "payment_method": "upi",
                "payment_amount": "500",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED, response.data)
        self.assertEqual(response.data["storage"]["expiry_date"], "2024-02-01")
        self.assertEqual(response.data["payment"]["method"], "UPI")

    def test_register_for_other_location_forbidden(self):
        response = self.client.post(
            reverse("storages-list"),
            data={
                "customer_id": self.customer.id,
                "location_id": self.other_location.id,
                "number_of_pots": 1,
                "payment_method": "CASH",
                "payment_amount": "500",
            },
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_dues_endpoint(self):
        response = self.client.get(reverse("storages-dues", kwargs={"pk": self.storage.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data["has_pending_dues"])
        self.assertEqual(Decimal(response.data["expected_payment"]), Decimal("500"))
        self.assertEqual(Decimal(response.data["total_due"]), Decimal("0"))
        self.assertEqual(response.data["storage_details"]["months_covered"], 1)
        self.assertEqual(len(response.data["payments"]), 1)

    def test_dues_not_found(self):
        response = self.client.get(reverse("storages-dues", kwargs={"pk": 999999}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data["code"], "not_found")

    def test_renew_endpoint(self):
        response = self.client.post(
            reverse("storages-renew", kwargs={"pk": self.storage.id}),
            data={"renewal_months": 2, "payment_method": "cash", "payment_amount": 600, "transaction_id": "T-1"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["storage"]["status"], StorageStatus.ACTIVE)
        self.assertEqual(response.data["storage"]["renewal_months"], 2)
        self.assertEqual(Decimal(response.data["payment"]["amount"]), Decimal("600"))

    def test_renew_insufficient_payment(self):
        response = self.client.post(
            reverse("storages-renew", kwargs={"pk": self.storage.id}),
            data={"renewal_months": 2, "payment_method": "CASH", "payment_amount": 500},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "insufficient_payment")
        self.assertEqual(Decimal(response.data["required_amount"]), Decimal("600"))

    def test_renew_missing_fields(self):
        response = self.client.post(
            reverse("storages-renew", kwargs={"pk": self.storage.id}),
            data={"renewal_months": 1},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_renew_not_found(self):
        response = self.client.post(
            reverse("storages-renew", kwargs={"pk": 999999}),
            data={"renewal_months": 1, "payment_method": "CASH", "payment_amount": 300},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_renew_delivered_conflict(self):
        self.storage.status = StorageStatus.DELIVERED
        self.storage.save()
        response = self.client.post(
            reverse("storages-renew", kwargs={"pk": self.storage.id}),
            data={"renewal_months": 1, "payment_method": "CASH", "payment_amount": 300},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)

    @mock.patch("custody.otp.generate_code", return_value="2468")
    def test_deliver_with_verified_otp(self, _):
        response = self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))
        self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)

        response = self.client.post(
            reverse("storages-deliver", kwargs={"pk": self.storage.id}),
            data={"receiver_name": "Suresh", "receiver_relation": "Son", "otp_code": "2468", "notes": "ok"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)
        self.assertEqual(response.data["delivery"]["receiver_name"], "Suresh")
        self.assertEqual(response.data["delivery"]["location_name"], self.location.name)
        self.storage.refresh_from_db()
        self.assertEqual(self.storage.status, StorageStatus.DELIVERED)

        response = self.client.post(
            reverse("storages-deliver", kwargs={"pk": self.storage.id}),
            data={"receiver_name": "Suresh", "receiver_relation": "Son", "otp_code": "2468"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "already_delivered")

    def test_deliver_rejects_unverified_code(self):
        response = self.client.post(
            reverse("storages-deliver", kwargs={"pk": self.storage.id}),
            data={"receiver_name": "Suresh", "receiver_relation": "Son", "otp_code": "0000"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["code"], "invalid_otp")
        self.storage.refresh_from_db()
        self.assertEqual(self.storage.status, StorageStatus.ACTIVE)

    @mock.patch("custody.otp.generate_code", return_value="1357")
    def test_deliver_with_pending_dues_keeps_code(self, _):
        Payment.objects.filter(storage=self.storage).update(amount=Decimal("300"))
        self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))

        response = self.client.post(
            reverse("storages-deliver", kwargs={"pk": self.storage.id}),
            data={"receiver_name": "Suresh", "receiver_relation": "Son", "otp_code": "1357"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "pending_dues")
        self.assertEqual(Decimal(response.data["amount"]), Decimal("200"))
        self.assertTrue(OneTimeCode.objects.filter(used_at__isnull=True).exists())

    def test_deliver_missing_fields(self):
        response = self.client.post(
            reverse("storages-deliver", kwargs={"pk": self.storage.id}),
            data={"receiver_name": "Suresh"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_qr_returns_png(self):
        response = self.client.get(reverse("storages-qr", kwargs={"pk": self.storage.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response["Content-Type"], "image/png")


class CustomerApiTests(StorageApiTestBase):
    def test_operator_lists_only_own_customers(self):
        Customer.objects.create(name="Zoya", phone="9000000004", location=self.other_location)
        response = self.client.get(reverse("customers-list"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["name"] for row in response.data], ["Ravi"])

    def test_operator_cannot_create_customer_elsewhere(self):
        response = self.client.post(
            reverse("customers-list"),
            data={"name": "Zoya", "phone": "9000000004", "location": self.other_location.id},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    @mock.patch("custody.otp.generate_code", return_value="9876")
    def test_phone_verification(self, _):
        self.client.post(reverse("customers-send-otp", kwargs={"pk": self.customer.id}))
        response = self.client.post(
            reverse("customers-verify-phone", kwargs={"pk": self.customer.id}),
            data={"otp_code": "9876"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data["is_phone_verified"])


class LocationApiTests(StorageApiTestBase):
    def test_operator_cannot_create_location(self):
        response = self.client.post(
            reverse("locations-list"), data={"name": "New", "address": "Somewhere"}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_admin_creates_location_and_lists_counts(self):
        self.client.force_authenticate(self.admin)
        response = self.client.post(
            reverse("locations-list"), data={"name": "New", "address": "Somewhere", "capacity": 50}, format="json"
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        response = self.client.get(reverse("locations-list"))
        counts = {row["name"]: row["customer_count"] for row in response.data}
        self.assertEqual(counts["Ghat Road"], 1)
        self.assertEqual(counts["New"], 0)


class SummaryReportApiTests(StorageApiTestBase):
    def test_summary_report_returns_counts(self):
        make_storage(self.location, self.customer, self.today, add_months(self.today, 1), paid=["500"])
        response = self.client.get(reverse("reports-summary"))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["active"], 1)
        self.assertEqual(response.data["todays_entries"], 1)
        self.assertEqual(response.data["pots_in_custody"], 2)

    def test_summary_report_invalid_from_date(self):
        response = self.client.get(reverse("reports-summary"), data={"from": "2025-99-99"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class NotificationApiTests(StorageApiTestBase):
    def test_notifications_filtered_by_storage(self):
        storage = make_storage(self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["500"])
        renew_storage(storage, 1, "300", "CASH")
        response = self.client.get(reverse("notifications-list"), data={"storage": storage.id})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([row["type"] for row in response.data], [NotificationType.RENEWAL_CONFIRMATION])


class OtpAttemptLimitTests(TestCase):
    phone = "9000000009"

    @mock.patch("custody.otp.generate_code", return_value="7777")
    def test_correct_code_refused_after_max_failures(self, _):
        code = otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        for guess in ("0000", "0001", "0002", "0003", "0004"):
            self.assertFalse(otp.verify_code(self.phone, guess, OtpPurpose.DELIVERY_VERIFICATION))

        code.refresh_from_db()
        self.assertEqual(code.failed_attempts, 5)
        self.assertTrue(code.is_used)
        self.assertFalse(otp.verify_code(self.phone, "7777", OtpPurpose.DELIVERY_VERIFICATION))

    @mock.patch("custody.otp.generate_code", return_value="7777")
    def test_code_survives_fewer_failures(self, _):
        otp.send_code(self.phone, OtpPurpose.DELIVERY_VERIFICATION)
        for guess in ("0000", "0001", "0002", "0003"):
            otp.verify_code(self.phone, guess, OtpPurpose.DELIVERY_VERIFICATION)
        self.assertTrue(otp.verify_code(self.phone, "7777", OtpPurpose.DELIVERY_VERIFICATION))

    @override_settings(CUSTODY_SETTINGS={"OTP_MAX_ATTEMPTS": 2})
    @mock.patch("custody.otp.generate_code", return_value="7777")
    def test_attempt_limit_comes_from_settings(self, _):
        otp.send_code(self.phone, OtpPurpose.CUSTOMER_VERIFICATION)
        otp.verify_code(self.phone, "1234", OtpPurpose.CUSTOMER_VERIFICATION)
        otp.verify_code(self.phone, "4321", OtpPurpose.CUSTOMER_VERIFICATION)
        self.assertFalse(otp.verify_code(self.phone, "7777", OtpPurpose.CUSTOMER_VERIFICATION))


class DeliveryCodeApiTests(StorageApiTestBase):
    def setUp(self):
        super().setUp()
        self.storage = make_storage(
            self.location,
            self.customer,
            self.today - timedelta(days=10),
            add_months(self.today - timedelta(days=10), 1),
            paid=["500"],
        )
        self.url = reverse("storages-deliver", kwargs={"pk": self.storage.id})

    def deliver(self, code):
        return self.client.post(
            self.url,
            data={"receiver_name": "Suresh", "receiver_relation": "Son", "otp_code": code},
            format="json",
        )

    @mock.patch("custody.otp.generate_code", return_value="7777")
    def test_guessing_spends_the_code(self, _):
        self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))
        for guess in ("0000", "0001", "0002", "0003", "0004"):
            self.assertEqual(self.deliver(guess).status_code, status.HTTP_403_FORBIDDEN)

        response = self.deliver("7777")
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data["code"], "invalid_otp")
        self.storage.refresh_from_db()
        self.assertEqual(self.storage.status, StorageStatus.ACTIVE)

    def test_code_checks_are_throttled_per_phone(self):
        for _ in range(10):
            self.assertEqual(self.deliver("0000").status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(self.deliver("0000").status_code, status.HTTP_429_TOO_MANY_REQUESTS)

    @mock.patch("custody.otp.generate_code", return_value="7777")
    def test_code_kept_when_delivery_fails_under_lock(self, _):
        self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))
        with mock.patch(
            "custody.views.deliver_storage",
            side_effect=StateConflictError("Storage record was modified by another request. Please retry."),
        ):
            response = self.deliver("7777")
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertTrue(OneTimeCode.objects.filter(used_at__isnull=True).exists())

        response = self.deliver("7777")
        self.assertEqual(response.status_code, status.HTTP_200_OK, response.data)

    def test_send_otp_budget_shared_across_endpoints(self):
        for _ in range(3):
            response = self.client.post(reverse("customers-send-otp", kwargs={"pk": self.customer.id}))
            self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)
        for _ in range(2):
            response = self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))
            self.assertEqual(response.status_code, status.HTTP_202_ACCEPTED)

        response = self.client.post(reverse("storages-send-otp", kwargs={"pk": self.storage.id}))
        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)

    def test_verify_phone_is_throttled(self):
        url = reverse("customers-verify-phone", kwargs={"pk": self.customer.id})
        for _ in range(10):
            self.client.post(url, data={"otp_code": "0000"}, format="json")
        response = self.client.post(url, data={"otp_code": "0000"}, format="json")
        self.assertEqual(response.status_code, status.HTTP_429_TOO_MANY_REQUESTS)


class FilterValidationApiTests(StorageApiTestBase):
    def setUp(self):
        super().setUp()
        self.client.force_authenticate(self.admin)

    def test_non_numeric_location_filter_rejected(self):
        response = self.client.get(reverse("storages-list"), data={"location": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data["code"], "validation_error")

    def test_all_locations_filter_accepted(self):
        response = self.client.get(reverse("storages-list"), data={"location": "ALL"})
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_notification_filters_rejected(self):
        response = self.client.get(reverse("notifications-list"), data={"storage": "abc"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        response = self.client.get(reverse("notifications-list"), data={"type": "BOGUS"})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)


class AdminLockdownTests(StorageFixturesMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.superuser = get_user_model().objects.create_superuser(
            username="root", password="pass1234", email="root@example.com"
        )
        self.request = RequestFactory().get("/admin/")
        self.request.user = self.superuser
        self.storage = make_storage(
            self.location, self.customer, date(2024, 1, 1), date(2024, 2, 1), paid=["500"]
        )

    def test_storage_lifecycle_fields_read_only_on_change(self):
        model_admin = django_admin.site._registry[Storage]
        readonly = model_admin.get_readonly_fields(self.request, self.storage)
        for field in ("expiry_date", "registration_date", "status", "receiver_name", "delivered_at"):
            self.assertIn(field, readonly)
        self.assertNotIn("expiry_date", model_admin.get_readonly_fields(self.request, None))

    def test_completed_payment_cannot_be_changed_or_deleted(self):
        model_admin = django_admin.site._registry[Payment]
        completed = self.storage.payments.get()
        pending = Payment.objects.create(
            storage=self.storage, amount=Decimal("300"), status=PaymentStatus.PENDING, method="UPI"
        )
        self.assertFalse(model_admin.has_change_permission(self.request, completed))
        self.assertFalse(model_admin.has_delete_permission(self.request, completed))
        self.assertTrue(model_admin.has_change_permission(self.request, pending))
        self.assertIn("amount", model_admin.get_readonly_fields(self.request, pending))

    def test_admin_change_post_leaves_storage_untouched(self):
        self.client.force_login(self.superuser)
        url = reverse("admin:custody_storage_change", args=[self.storage.id])
        self.assertEqual(self.client.get(url).status_code, 200)
        self.client.post(
            url,
            data={
                "expiry_date": "2023-01-01",
                "status": StorageStatus.DELIVERED,
                "payments-TOTAL_FORMS": "1",
                "payments-INITIAL_FORMS": "1",
                "payments-MIN_NUM_FORMS": "0",
                "payments-MAX_NUM_FORMS": "1000",
                "payments-0-id": str(self.storage.payments.get().id),
                "payments-0-storage": str(self.storage.id),
            },
        )
        self.storage.refresh_from_db()
        self.assertEqual(self.storage.expiry_date, date(2024, 2, 1))
        self.assertEqual(self.storage.status, StorageStatus.ACTIVE)
