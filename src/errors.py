"""Error taxonomy for the deal lifecycle.

All deal errors inherit from DealError, which carries a machine-readable
error code, the HTTP status the API layer maps it to, and an optional
details dictionary.

- ValidationError: rejected before any state mutation.
- ConflictError: terminal; the operation can never succeed as issued.
- LockoutError: an intentional throttle carrying a retry-after duration.
- TransientError: storage or collaborator unavailable; safe to retry only
  for additive operations or when an idempotency key is supplied.
"""

from datetime import datetime
from typing import Any, Optional


class DealError(Exception):
    """Base exception for all deal lifecycle errors."""

    error_code: str = "DEAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result = {
            "error": self.error_code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(DealError):
    """Invalid input (missing price, malformed code, ...)."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        details = details or {}
        if field:
            details["field"] = field
        super().__init__(message, details=details)


class InsufficientBalanceError(ValidationError):
    """Wallet balance is too low for a debit."""

    error_code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id: str, balance: int, required: int) -> None:
        super().__init__(
            "Insufficient balance",
            details={"user_id": user_id, "balance": balance, "required": required},
        )


class ForbiddenError(DealError):
    """Caller is not allowed to perform this action in its role."""

    error_code = "FORBIDDEN"
    http_status = 403


class NotFoundError(DealError):
    """Requested resource not found."""

    error_code = "NOT_FOUND"
    http_status = 404

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(
            f"{resource_type} '{resource_id}' not found",
            details={"resource_type": resource_type, "resource_id": resource_id},
        )


class ConflictError(DealError):
    """State conflict: already responded, already paid, already confirmed."""

    error_code = "CONFLICT"
    http_status = 409


class InvalidDeliveryCodeError(DealError):
    """Submitted delivery code did not match; lockout not reached yet."""

    error_code = "INVALID_DELIVERY_CODE"
    http_status = 400

    def __init__(self, message: str, attempts: int, remaining_attempts: int) -> None:
        super().__init__(
            message,
            details={"attempts": attempts, "remaining_attempts": remaining_attempts},
        )
        self.attempts = attempts
        self.remaining_attempts = remaining_attempts


class LockoutError(DealError):
    """Code verification is locked until the cooldown expires."""

    error_code = "CODE_LOCKED"
    http_status = 429

    def __init__(self, message: str, cooldown_until: datetime, retry_after_seconds: int) -> None:
        super().__init__(
            message,
            details={
                "cooldown_until": cooldown_until.isoformat(),
                "retry_after_seconds": retry_after_seconds,
            },
        )
        self.cooldown_until = cooldown_until
        self.retry_after_seconds = retry_after_seconds


class TransientError(DealError):
    """Storage or ledger temporarily unavailable."""

    error_code = "TRANSIENT_ERROR"
    http_status = 503
