from __future__ import annotations

from decimal import Decimal
from typing import Any

from django.conf import settings

DEFAULTS: dict[str, Any] = {
    "INITIAL_FEE": 500,
    "MONTHLY_RATE": 300,
    "EXPIRING_WINDOW_DAYS": 7,
    "OTP_TTL_MINUTES": 5,
    "OTP_MAX_ATTEMPTS": 5,
    "OTP_SECRET": "change-me",
    "FINAL_WARNING_AFTER_DAYS": 30,
    "SMS_BACKEND": "custody.sms.LoggingSmsBackend",
    "SMS_SENDER": "SCM",
}


def custody_settings() -> dict[str, Any]:
    cfg = dict(DEFAULTS)
    cfg.update(getattr(settings, "CUSTODY_SETTINGS", {}))
    return cfg


def get_setting(name: str) -> Any:
    return custody_settings()[name]


def initial_fee() -> Decimal:
    return Decimal(str(get_setting("INITIAL_FEE")))


def monthly_rate() -> Decimal:
    return Decimal(str(get_setting("MONTHLY_RATE")))
