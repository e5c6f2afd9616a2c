"""
dates.py
Calendar helpers for storage periods.
"""

from __future__ import annotations

from calendar import monthrange
from datetime import date


def add_months(start: date, months: int) -> date:
    """Shift ``start`` by whole months, clamping to the target month's last day."""
    year, month_index = divmod(start.month - 1 + months, 12)
    year += start.year
    month = month_index + 1
    return date(year, month, min(start.day, monthrange(year, month)[1]))


def days_between(start: date, end: date) -> int:
    return (end - start).days


def months_covered(registration_date: date, expiry_date: date) -> int:
    """
    Calendar months from registration to expiry, partial months rounded up, never below 1.
    """
    months = (expiry_date.year - registration_date.year) * 12 + expiry_date.month - registration_date.month
    months = max(1, months)
    if add_months(registration_date, months) < expiry_date:
        months += 1
    return months
