"""Paystack gateway integration."""
from .paystack_client import (
    ChargeResult,
    ChargeStatus,
    CircuitBreaker,
    InitializeResult,
    PaystackClient,
    VerificationResult,
)
from .webhook_handler import GatewayEvent, parse_event
from .webhook_verifier import WebhookSignatureVerifier

__all__ = [
    "ChargeResult",
    "ChargeStatus",
    "CircuitBreaker",
    "GatewayEvent",
    "InitializeResult",
    "PaystackClient",
    "VerificationResult",
    "WebhookSignatureVerifier",
    "parse_event",
]
