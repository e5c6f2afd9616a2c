from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import timedelta

from django.db import transaction
from django.utils import timezone

from . import sms
from .conf import get_setting
from .models import OneTimeCode

logger = logging.getLogger(__name__)


def generate_code() -> str:
    return str(1000 + secrets.randbelow(9000))


def hash_code(code: str) -> str:
    secret = str(get_setting("OTP_SECRET")).encode()
    return hmac.new(secret, str(code).encode(), hashlib.sha256).hexdigest()


@transaction.atomic
def send_code(phone: str, purpose: str) -> OneTimeCode:
    now = timezone.now()
    ttl_minutes = int(get_setting("OTP_TTL_MINUTES"))
    code = generate_code()

    # a newer code replaces any still-open one for the same phone/purpose
    OneTimeCode.objects.filter(phone=phone, purpose=purpose, used_at__isnull=True).update(
        used_at=now, updated_at=now
    )
    otp = OneTimeCode.objects.create(
        phone=phone,
        purpose=purpose,
        code_hash=hash_code(code),
        expires_at=now + timedelta(minutes=ttl_minutes),
    )
    transaction.on_commit(
        lambda: sms.send("otp", {"code": code, "ttl_minutes": ttl_minutes}, phone)
    )
    logger.info("Issued %s code for %s", purpose, phone)
    return otp


@transaction.atomic
def verify_code(phone: str, code: str, purpose: str) -> bool:
    if not phone or not code:
        return False
    # send_code leaves at most one open code per phone/purpose
    otp = (
        OneTimeCode.objects.select_for_update()
        .filter(
            phone=phone,
            purpose=purpose,
            used_at__isnull=True,
            expires_at__gt=timezone.now(),
        )
        .order_by("-created_at", "-id")
        .first()
    )
    if otp is None:
        logger.warning("No open %s code for %s", purpose, phone)
        return False
    if not hmac.compare_digest(otp.code_hash, hash_code(str(code).strip())):
        otp.register_failed_attempt(int(get_setting("OTP_MAX_ATTEMPTS")))
        logger.warning(
            "Rejected %s code for %s (attempt %s)", purpose, phone, otp.failed_attempts
        )
        return False
    otp.mark_used()
    return True
