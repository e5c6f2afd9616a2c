from decimal import Decimal


class CustodyError(Exception):
    """Base class for errors raised by the storage services.

    Every subclass carries a stable machine readable ``code`` so the HTTP layer
    can report the kind of failure next to the human readable message.
    """

    code = "error"
    default_detail = "Storage operation failed"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def as_dict(self) -> dict:
        return {"detail": self.detail, "code": self.code}


class ValidationError(CustodyError):
    code = "validation_error"
    default_detail = "Missing required fields"


class NotFoundError(CustodyError):
    code = "not_found"
    default_detail = "Storage record not found"


class StateConflictError(CustodyError):
    code = "state_conflict"
    default_detail = "Storage record is not in a state that allows this action"


class AlreadyDeliveredError(StateConflictError):
    code = "already_delivered"
    default_detail = "Storage has already been delivered"


class InsufficientPaymentError(CustodyError):
    code = "insufficient_payment"

    def __init__(self, required_amount: Decimal, detail: str | None = None):
        self.required_amount = Decimal(required_amount)
        super().__init__(detail or f"Payment amount must be at least {self.required_amount}")

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["required_amount"] = self.required_amount
        return data


class PendingDuesError(CustodyError):
    code = "pending_dues"

    def __init__(self, amount: Decimal, detail: str | None = None):
        self.amount = Decimal(amount)
        super().__init__(
            detail
            or f"Cannot deliver storage with pending dues of {self.amount}. Please clear all payments first."
        )

    def as_dict(self) -> dict:
        data = super().as_dict()
        data["amount"] = self.amount
        return data


class AuthorizationError(CustodyError):
    code = "forbidden"
    default_detail = "You can only access storage for your assigned location"


class OtpVerificationError(AuthorizationError):
    code = "invalid_otp"
    default_detail = "Invalid or expired OTP"


class UpstreamError(CustodyError):
    code = "upstream_error"
    default_detail = "An upstream service failed"
