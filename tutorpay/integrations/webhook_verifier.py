"""Paystack webhook signature verification (HMAC-SHA512 over the raw body)."""
import hashlib
import hmac
from typing import Optional

import structlog

from tutorpay.core.exceptions import WebhookConfigurationError
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class WebhookSignatureVerifier:
    """
    Checks that a webhook body was signed with our secret.

    Build one at startup; a missing secret is a configuration error and
    fails there rather than on the first delivery.
    """

    def __init__(self, secret: Optional[str]):
        """
        Initialize verifier.

        Args:
            secret: Shared webhook secret (for Paystack, the secret key)

        Raises:
            WebhookConfigurationError: If the secret is empty
        """
        if not secret:
            logger.critical("webhook_secret_not_configured")
            raise WebhookConfigurationError()
        self._secret = secret.encode("utf-8")

    def compute(self, payload: bytes) -> str:
        """Hex HMAC-SHA512 of ``payload``."""
        return hmac.new(self._secret, payload, hashlib.sha512).hexdigest()

    def verify(self, payload: bytes, signature: Optional[str]) -> bool:
        """
        Verify a delivery signature in constant time.

        Args:
            payload: Raw request body exactly as received
            signature: Value of the signature header, if any

        Returns:
            bool: True only if the signature matches
        """
        if not signature:
            metrics.record_signature_failure()
            logger.warning("webhook_signature_missing", payload_bytes=len(payload))
            return False

        expected = self.compute(payload).encode("ascii")
        received = signature.strip().lower().encode("utf-8", errors="replace")
        if not hmac.compare_digest(expected, received):
            metrics.record_signature_failure()
            logger.warning("webhook_signature_invalid", payload_bytes=len(payload))
            return False

        return True
