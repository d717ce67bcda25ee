"""
Exception hierarchy for payment processing.

Every error carries the HTTP status the API layer answers with and a
public message that is safe to show to the caller. Internal detail stays
in ``detail`` and is only rendered when the service runs in debug mode.
"""
from typing import Any, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    status_code: int = 500
    public_message: str = "Internal server error"
    retryable: bool = False
    retry_after_seconds: int = 5

    def __init__(self, message: Optional[str] = None, detail: Any = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message
        self.detail = detail


class ValidationError(PaymentError):
    """Raised when required input is missing or malformed."""

    status_code = 400
    public_message = "Validation failed"


class InvalidPhoneFormat(ValidationError):
    """Raised when a phone number cannot be normalized to 254XXXXXXXXX."""

    public_message = "Invalid phone number format. Should be 254XXXXXXXXX"


class RecordNotFound(PaymentError):
    """Raised when a referenced transaction or booking does not exist."""

    status_code = 404
    public_message = "Record not found"


class InvalidTransition(PaymentError):
    """Raised when an operation is not allowed from the current status."""

    status_code = 409
    public_message = "Operation not allowed in current state"


class PreconditionFailed(PaymentError):
    """Raised when a business precondition (e.g. escrow release) is unmet."""

    status_code = 409
    public_message = "Precondition failed"


class ConcurrentModification(PaymentError):
    """Raised when a record changed underneath a read-modify-write."""

    status_code = 409
    public_message = "Record was modified concurrently, please retry"
    retryable = True


class SignatureInvalid(PaymentError):
    """Raised when a webhook fails signature verification."""

    status_code = 401
    public_message = "Invalid webhook signature"


class WebhookConfigurationError(PaymentError):
    """Raised at startup when the webhook secret is not configured."""

    public_message = "Webhook secret is not configured"


class GatewayError(PaymentError):
    """Base exception for payment gateway errors."""

    public_message = "Payment gateway error"


class GatewayRejected(GatewayError):
    """The gateway processed the request but declined it."""

    status_code = 400
    public_message = "Payment was declined by the gateway"


class GatewayUnavailable(GatewayError):
    """Network failure, timeout or server-side error at the gateway."""

    status_code = 503
    public_message = "Payment service temporarily unavailable, please try again"
    retryable = True


class GatewayAuthError(GatewayError):
    """The gateway refused our credentials. Requires operator action."""

    status_code = 500
    public_message = "Payment service configuration error"


class AuthenticationFailed(PaymentError):
    """Raised when a client route is called without the configured API key."""

    status_code = 401
    public_message = "Invalid or missing API key"


class RateLimitExceeded(PaymentError):
    """Raised when a client exceeds a rate limit rule."""

    status_code = 429
    public_message = "Too many requests, please try again later."
    retryable = True

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after_seconds: int = 60,
        detail: Any = None,
    ):
        super().__init__(message, detail)
        self.retry_after_seconds = max(1, int(retry_after_seconds))
