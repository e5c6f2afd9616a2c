from __future__ import annotations

import logging
from typing import Any, Callable

from django.utils import timezone
from django.utils.module_loading import import_string

from .conf import get_setting

logger = logging.getLogger(__name__)


TEMPLATES: dict[str, Callable[..., str]] = {
    "registration": lambda expiry_date, **_: (
        "Thanks for trusting us. Ashes are safe with us. Storage registration made for 1 month, "
        f'renew or collect by "{expiry_date}".'
    ),
    "renewal_reminder": lambda location_name, days_left, **_: (
        f'Your storage period at "{location_name}" is close to expire in {days_left} days. '
        "Please renew to continue the storage."
    ),
    "final_warning": lambda **_: (
        "As we informed multiple times about your storage period expiry and renewal, we haven't heard "
        "from you even after multiple reachouts, so we will be mixing these ashes in the river in the "
        "next 3 days. If you still wish to extend the storage period or collect it, we are happy to help. Thanks."
    ),
    "delivery_confirmation": lambda receiver_name, **_: f'Ashes safely collected by "{receiver_name}".',
    "payment_success": lambda location_name, months, expiry_date, **_: (
        f'Renewal of "{months}" month(s) has been successful at location "{location_name}". '
        f"New expiry date: {expiry_date}."
    ),
    "payment_failure": lambda **_: "Payment failed. Please try again or contact support.",
    "otp": lambda code, ttl_minutes, **_: f"Your verification code is {code}. Valid for {ttl_minutes} minutes.",
}


class LoggingSmsBackend:
    """Gateway stand-in that only records what would have been sent."""

    def send_text(self, phone: str, message: str) -> bool:
        logger.info(
            "SMS would be sent",
            extra={
                "sms_to": phone,
                "sms_sender": get_setting("SMS_SENDER"),
                "sms_message": message,
                "sms_timestamp": timezone.now().isoformat(),
            },
        )
        return True


def get_backend():
    return import_string(get_setting("SMS_BACKEND"))()


def render(template_name: str, params: dict[str, Any]) -> str:
    return TEMPLATES[template_name](**params)


def send(template_name: str, params: dict[str, Any], phone: str) -> bool:
    """Render ``template_name`` and hand it to the configured gateway.

    Never raises: a failed dispatch must not fail the renewal or delivery that
    triggered it, so errors are logged and reported as ``False``.
    """
    try:
        message = render(template_name, params)
        return bool(get_backend().send_text(phone, message))
    except Exception:
        logger.exception("Failed to send %s SMS to %s", template_name, phone)
        return False
