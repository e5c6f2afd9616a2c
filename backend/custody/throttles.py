from rest_framework.throttling import SimpleRateThrottle


class BaseUserRateThrottle(SimpleRateThrottle):
    def get_ident_for(self, request, view):
        if request.user and request.user.is_authenticated:
            return request.user.pk
        return self.get_ident(request)

    def get_cache_key(self, request, view):
        return self.cache_format % {"scope": self.scope, "ident": self.get_ident_for(request, view)}


class PhoneRateThrottle(BaseUserRateThrottle):
    """Keyed by the phone the view targets, shared across every endpoint reaching it."""

    def get_ident_for(self, request, view):
        get_phone = getattr(view, "get_target_phone", None)
        phone = get_phone() if get_phone else None
        if phone:
            return f"phone:{phone}"
        return super().get_ident_for(request, view)


class OtpRateThrottle(PhoneRateThrottle):
    scope = "otp"


class OtpVerifyRateThrottle(PhoneRateThrottle):
    scope = "otp_verify"


class QrRateThrottle(BaseUserRateThrottle):
    scope = "qr"


class ReportsRateThrottle(BaseUserRateThrottle):
    scope = "reports"
