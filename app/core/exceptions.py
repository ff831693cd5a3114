"""Custom exception hierarchy for ProdAI.

Every error surfaced to API clients derives from ``ProdAIException`` so a
single exception handler can render it. Error codes follow [CATEGORY][NUMBER]:

- AUTH: identity / credential errors (100-199)
- SUB: subscription lifecycle errors (200-299)
- PAY: payment gateway errors (300-399)
- USR: user record errors (400-499)
- SYS: system errors (500-599)
"""

from __future__ import annotations

from typing import Any


class ProdAIException(Exception):
    """Base exception for all ProdAI application errors."""

    def __init__(
        self,
        message: str,
        code: str,
        status_code: int = 400,
        details: dict[str, Any] | None = None,
    ):
        """Initialize exception with user-facing message and metadata.

        Args:
            message: User-friendly error message
            code: Unique error code (e.g., "SUB200")
            status_code: HTTP status code (default: 400 Bad Request)
            details: Optional additional context
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        return {
            "error": {
                "message": self.message,
                "code": self.code,
                "details": self.details,
            }
        }


# ============================================================================
# AUTH ERRORS (AUTH100-199)
# ============================================================================

class Unauthenticated(ProdAIException):
    """Missing, malformed, expired or revoked bearer credential."""

    def __init__(self, reason: str = "invalid_token"):
        messages = {
            "missing_token": "Authorization token not provided",
            "expired_token": "Token expired",
            "revoked_token": "Token revoked",
        }
        super().__init__(
            message=messages.get(reason, "Invalid token"),
            code="AUTH100",
            status_code=401,
            details={"reason": reason},
        )


# ============================================================================
# SUBSCRIPTION ERRORS (SUB200-299)
# ============================================================================

class SubscriptionError(ProdAIException):
    """Base class for subscription lifecycle errors."""
    pass


class NoActiveSubscription(SubscriptionError):
    """User has no recurring agreement to act on."""

    def __init__(self, user_id: str | None = None):
        super().__init__(
            message="No active subscription to cancel",
            code="SUB200",
            status_code=400,
            details={"user_id": user_id} if user_id else {},
        )


class SubscriptionNotFound(SubscriptionError):
    """The stored agreement does not exist at the payment gateway."""

    def __init__(self, agreement_id: str | None = None):
        super().__init__(
            message="Subscription not found at payment provider",
            code="SUB201",
            status_code=404,
            details={"agreement_id": agreement_id} if agreement_id else {},
        )


class DailyQuotaExceeded(SubscriptionError):
    """Free-tier user has used every message for today."""

    def __init__(self, limit: int):
        super().__init__(
            message="Daily message limit reached. Upgrade to Plus for unlimited messages.",
            code="SUB202",
            status_code=403,
            details={"daily_limit": limit, "upgrade_url": "/subscriptions/checkout"},
        )


# ============================================================================
# PAYMENT GATEWAY ERRORS (PAY300-399)
# ============================================================================

class PaymentError(ProdAIException):
    """Base class for payment gateway errors."""
    pass


class GatewayError(PaymentError):
    """Mercado Pago call failed or returned an unexpected shape.

    The message shown to clients is generic; the gateway detail only goes to logs.
    """

    def __init__(self, operation: str, reason: str | None = None, upstream_status: int | None = None):
        super().__init__(
            message="Payment service unavailable. Please try again later.",
            code="PAY300",
            status_code=502,
            details={"operation": operation},
        )
        self.operation = operation
        self.reason = reason
        self.upstream_status = upstream_status

    def __str__(self) -> str:
        return f"{self.operation} failed (status={self.upstream_status}): {self.reason}"


class InvalidWebhookSignature(PaymentError):
    """Webhook signature header missing or does not match."""

    def __init__(self):
        super().__init__(
            message="Invalid signature",
            code="PAY301",
            status_code=400,
        )


# ============================================================================
# USER RECORD ERRORS (USR400-499)
# ============================================================================

class RecordNotFound(ProdAIException):
    """No user document matches the uid or email."""

    def __init__(self, user_id: str | None = None, email: str | None = None):
        details: dict[str, Any] = {}
        if user_id:
            details["user_id"] = user_id
        if email:
            details["email"] = email
        super().__init__(
            message="User not found",
            code="USR400",
            status_code=404,
            details=details,
        )


class StaleRecordError(Exception):
    """Conditional write rejected because the record changed since it was read."""

    def __init__(self, user_id: str):
        super().__init__(f"User record {user_id} changed concurrently")
        self.user_id = user_id


# ============================================================================
# SYSTEM ERRORS (SYS500-599)
# ============================================================================

class ConfigurationError(ProdAIException):
    """A required credential or setting is missing."""

    def __init__(self, setting: str):
        super().__init__(
            message="Service is not configured correctly",
            code="SYS500",
            status_code=500,
            details={"setting": setting},
        )
