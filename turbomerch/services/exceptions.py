"""
Usage metering exceptions
Every error carries structured details so handlers can render a specific response
"""

from typing import Optional, Dict, Any


class UsageMeteringError(Exception):
    """Base exception for usage metering errors"""

    error_code = "usage_metering_error"
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_response_dict(self) -> Dict[str, Any]:
        """Convert to an HTTP error body"""
        body = {"error": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(UsageMeteringError):
    """Malformed input (count out of range, missing user id)"""

    error_code = "validation_error"
    status_code = 400


class UserNotFoundError(UsageMeteringError):
    """Raised when the resolved user id has no user row"""

    error_code = "user_not_found"
    status_code = 404

    def __init__(self, user_id: Any):
        super().__init__(
            message=f"User not found: {user_id}",
            details={"user_id": str(user_id)},
        )


class UnknownTierError(UsageMeteringError):
    """Raised by strict tier lookups for names outside the tier table"""

    error_code = "unknown_tier"
    status_code = 500

    def __init__(self, tier_name: Optional[str]):
        self.tier_name = tier_name
        super().__init__(
            message=f"Unknown subscription tier: {tier_name}",
            details={"tier": tier_name},
        )


class QuotaExceededError(UsageMeteringError):
    """
    Business-rule block: no overage available or hard cap reached.

    Carries the usage snapshot so the UI can render an upgrade prompt.
    """

    error_code = "quota_exceeded"
    status_code = 403

    def __init__(self, reason: str, usage: Dict[str, Any], hard_cap_reached: bool = False):
        self.reason = reason
        self.usage = usage
        self.hard_cap_reached = hard_cap_reached
        super().__init__(
            message=reason,
            details={"usage": usage, "hard_cap_reached": hard_cap_reached},
        )

    def to_response_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.reason,
            "usage": self.usage,
            "hardCapReached": self.hard_cap_reached,
        }


class ConcurrencyConflictError(UsageMeteringError):
    """Lock contention or version mismatch on a usage record"""

    error_code = "concurrency_conflict"
    status_code = 409

    def __init__(self, message: str, attempts: int = 0):
        self.attempts = attempts
        super().__init__(message=message, details={"attempts": attempts, "retryable": True})


class PaymentCollectionError(UsageMeteringError):
    """
    External payment failure. State is left unchanged.

    kind is one of: no_payment_method, declined, transient
    """

    error_code = "payment_failed"

    NO_PAYMENT_METHOD = "no_payment_method"
    DECLINED = "declined"
    TRANSIENT = "transient"

    def __init__(self, message: str, kind: str = TRANSIENT, provider_code: Optional[str] = None):
        self.kind = kind
        self.provider_code = provider_code
        self.retryable = kind == self.TRANSIENT
        self.status_code = 503 if self.retryable else 402
        super().__init__(
            message=message,
            details={"kind": kind, "retryable": self.retryable, "provider_code": provider_code},
        )


__all__ = [
    "UsageMeteringError",
    "ValidationError",
    "UserNotFoundError",
    "UnknownTierError",
    "QuotaExceededError",
    "ConcurrencyConflictError",
    "PaymentCollectionError",
]
