"""
dues.py
Expected payment versus completed payments for a storage record.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from .conf import initial_fee, monthly_rate
from .dates import months_covered
from .models import PaymentStatus


@dataclass(frozen=True)
class DuesSnapshot:
    months_covered: int
    expected_payment: Decimal
    total_paid: Decimal
    total_due: Decimal
    has_pending_dues: bool
    overdue_payments: list = field(default_factory=list)


def expected_payment_for(months: int) -> Decimal:
    return initial_fee() + max(0, months - 1) * monthly_rate()


def renewal_minimum(renewal_months: int) -> Decimal:
    return renewal_months * monthly_rate()


def compute_dues(storage) -> DuesSnapshot:
    months = months_covered(storage.registration_date, storage.expiry_date)
    expected = expected_payment_for(months)

    payments = list(storage.payments.all())
    total_paid = sum(
        (p.amount for p in payments if p.status == PaymentStatus.COMPLETED),
        Decimal("0"),
    )
    overdue = [
        {"id": p.id, "amount": p.amount, "due_date": p.payment_date or p.created_at}
        for p in payments
        if p.status == PaymentStatus.PENDING
    ]

    return DuesSnapshot(
        months_covered=months,
        expected_payment=expected,
        total_paid=total_paid,
        total_due=max(Decimal("0"), expected - total_paid),
        has_pending_dues=total_paid < expected,
        overdue_payments=overdue,
    )
