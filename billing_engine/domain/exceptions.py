"""Error taxonomy shared by every billing component."""

from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for billing failures.

    Attributes:
        code: Stable machine readable identifier
        status_code: HTTP status used when the error reaches an API caller
        retryable: Whether RetryExecutor may attempt the operation again
    """

    code = "BILLING_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "error": self.message, "code": self.code}


class ValidationError(BillingError, ValueError):
    code = "VALIDATION_ERROR"
    status_code = 400


class NotFoundError(BillingError, LookupError):
    code = "NOT_FOUND"
    status_code = 404


class UserNotFoundError(NotFoundError):
    code = "USER_NOT_FOUND"


class PlanNotFoundError(NotFoundError):
    code = "PLAN_NOT_FOUND"


class SubscriptionNotFoundError(NotFoundError):
    code = "SUBSCRIPTION_NOT_FOUND"


class SignatureInvalidError(BillingError):
    code = "SIGNATURE_INVALID"
    status_code = 401


class MalformedPayloadError(BillingError):
    code = "MALFORMED_PAYLOAD"
    status_code = 500


class InvalidPeriodError(BillingError):
    code = "INVALID_PERIOD"
    status_code = 400


class ChargeRejectedError(BillingError):
    """The gateway refused a charge request outright."""

    code = "CHARGE_REJECTED"
    status_code = 502


class TransientError(BillingError):
    """Temporary failure; the same call may succeed later."""

    code = "TRANSIENT_ERROR"
    status_code = 503
    retryable = True


class ConcurrentModificationError(TransientError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, subscription_id: str, expected_version: int, actual_version: int) -> None:
        super().__init__(
            f"Subscription {subscription_id} changed concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            details={
                "subscription_id": subscription_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.subscription_id = subscription_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class StoreUnavailableError(TransientError):
    code = "STORE_UNAVAILABLE"


class GatewayUnavailableError(TransientError):
    code = "GATEWAY_UNAVAILABLE"


def is_retryable(error: BaseException) -> bool:
    """Classify an exception for RetryExecutor.

    Billing errors carry their own flag. Other validation-class errors
    (``ValueError``, ``TypeError``, ``LookupError``) are permanent; anything
    else is treated as a transient fault.
    """
    if isinstance(error, BillingError):
        return error.retryable
    if isinstance(error, (ValueError, TypeError, LookupError)):
        return False
    return isinstance(error, Exception)
