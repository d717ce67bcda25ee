"""Core payment logic for tutorpay."""
from .exceptions import (
    AuthenticationFailed,
    ConcurrentModification,
    GatewayAuthError,
    GatewayError,
    GatewayRejected,
    GatewayUnavailable,
    InvalidPhoneFormat,
    InvalidTransition,
    PaymentError,
    PreconditionFailed,
    RateLimitExceeded,
    RecordNotFound,
    SignatureInvalid,
    ValidationError,
    WebhookConfigurationError,
)
from .references import ReferencePrefix, generate_reference
from .states import TransactionStatus, can_transition, is_terminal

__all__ = [
    "AuthenticationFailed",
    "ConcurrentModification",
    "GatewayAuthError",
    "GatewayError",
    "GatewayRejected",
    "GatewayUnavailable",
    "InvalidPhoneFormat",
    "InvalidTransition",
    "PaymentError",
    "PreconditionFailed",
    "RateLimitExceeded",
    "RecordNotFound",
    "ReferencePrefix",
    "SignatureInvalid",
    "TransactionStatus",
    "ValidationError",
    "WebhookConfigurationError",
    "can_transition",
    "generate_reference",
    "is_terminal",
]
