"""
lifecycle.py
Status rules for storage records.

ACTIVE -> EXPIRING inside the warning window before expiry, ACTIVE/EXPIRING ->
EXPIRED once expiry is reached, any open status -> ACTIVE on renewal and
-> DELIVERED on delivery. DELIVERED is terminal.
"""

from __future__ import annotations

from datetime import date, timedelta

from django.db import models

from .conf import get_setting


class StorageStatus(models.TextChoices):
    ACTIVE = "ACTIVE", "Active"
    EXPIRING = "EXPIRING", "Expiring"
    EXPIRED = "EXPIRED", "Expired"
    DELIVERED = "DELIVERED", "Delivered"


OPEN_STATUSES = (StorageStatus.ACTIVE, StorageStatus.EXPIRING, StorageStatus.EXPIRED)

TRANSITIONS = {
    StorageStatus.ACTIVE: {StorageStatus.EXPIRING, StorageStatus.EXPIRED, StorageStatus.DELIVERED},
    StorageStatus.EXPIRING: {StorageStatus.EXPIRED, StorageStatus.ACTIVE, StorageStatus.DELIVERED},
    StorageStatus.EXPIRED: {StorageStatus.ACTIVE, StorageStatus.DELIVERED},
    StorageStatus.DELIVERED: set(),
}


def expiring_window() -> timedelta:
    return timedelta(days=int(get_setting("EXPIRING_WINDOW_DAYS")))


def can_transition(current: str, target: str) -> bool:
    # renewal keeps an ACTIVE record ACTIVE
    if current == target:
        return current != StorageStatus.DELIVERED
    return target in TRANSITIONS.get(StorageStatus(current), set())


def evaluate_status(current: str, expiry_date: date, today: date) -> str:
    if current == StorageStatus.DELIVERED:
        return current
    if today >= expiry_date:
        return StorageStatus.EXPIRED
    if current == StorageStatus.ACTIVE and today >= expiry_date - expiring_window():
        return StorageStatus.EXPIRING
    return current
