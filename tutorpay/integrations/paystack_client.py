"""
Paystack API client with error classification and a circuit breaker.

Implements:
- Transaction initialization (hosted checkout)
- Mobile money (M-Pesa STK push) charges
- Transaction verification
- Circuit breaker pattern

Calls are never retried here. A timeout or outage surfaces as
``GatewayUnavailable`` and the caller decides whether to try again.
"""
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
import structlog

from tutorpay.config import Settings
from tutorpay.core.exceptions import (
    GatewayAuthError,
    GatewayRejected,
    GatewayUnavailable,
    RecordNotFound,
)
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ChargeStatus(str, Enum):
    """Outcome of a mobile money charge request."""

    SUCCESS = "success"
    PENDING_USER_ACTION = "pending_user_action"
    FAILED = "failed"


# Paystack charge statuses that mean "waiting for the payer" (OTP, STK, ...).
_PENDING_CHARGE_STATUSES = frozenset(
    {"pending", "send_otp", "send_pin", "send_phone", "send_birthday", "pay_offline", "open_url", "ongoing"}
)


@dataclass
class InitializeResult:
    """Hosted checkout handle returned by ``/transaction/initialize``."""

    reference: str
    access_code: str
    authorization_url: str


@dataclass
class ChargeResult:
    """Result of a ``/charge`` request."""

    reference: str
    status: ChargeStatus
    raw_status: str
    display_text: Optional[str] = None
    message: Optional[str] = None


@dataclass
class VerificationResult:
    """Gateway truth for one reference from ``/transaction/verify``."""

    reference: str
    status: str
    amount_minor: Optional[int]
    paid_at: Optional[str]
    channel: Optional[str]
    gateway_response: Optional[str]
    metadata: Dict[str, Any] = field(default_factory=dict)
    customer_email: Optional[str] = None


class CircuitBreaker:
    """
    Circuit breaker for Paystack API calls.

    Stops sending requests for ``timeout`` seconds once
    ``failure_threshold`` consecutive calls were unavailable.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[[], Awaitable[Any]]) -> Any:
        """
        Execute an async call with circuit breaker protection.

        Only ``GatewayUnavailable`` counts as a failure; rejections and
        auth errors say nothing about gateway health.

        Raises:
            GatewayUnavailable: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.monotonic() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayUnavailable(detail="Circuit breaker is open")

        try:
            result = await func()
        except GatewayUnavailable:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )


class PaystackClient:
    """
    Thin async wrapper around the Paystack REST API.

    All amounts cross this boundary in minor units (kobo/cents).
    """

    def __init__(
        self,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Paystack client.

        Args:
            settings: Application settings
            http_client: Optional preconfigured httpx client (tests inject a mock transport)
            circuit_breaker: Optional circuit breaker
        """
        self.settings = settings
        self.http_client = http_client or httpx.AsyncClient(
            base_url=settings.paystack_base_url,
            timeout=settings.paystack_timeout_seconds,
        )
        self._headers = {
            "Authorization": f"Bearer {settings.paystack_secret_key}",
            "Content-Type": "application/json",
        }
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

        logger.info(
            "paystack_client_initialized",
            base_url=settings.paystack_base_url,
            test_mode=settings.is_test_mode,
        )

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self.http_client.aclose()

    @staticmethod
    def _gateway_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return response.text or f"HTTP {response.status_code}"
        if isinstance(body, dict):
            return str(body.get("message") or f"HTTP {response.status_code}")
        return f"HTTP {response.status_code}"

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Send one request and classify the outcome.

        Returns:
            Dict[str, Any]: The ``data`` object of a successful response

        Raises:
            GatewayUnavailable: Network failure, timeout, 429 or 5xx
            GatewayAuthError: 401/403, credentials are wrong
            RecordNotFound: 404
            GatewayRejected: Other 4xx or a ``status: false`` body
        """
        start = time.monotonic()

        async def _send() -> httpx.Response:
            try:
                response = await self.http_client.request(
                    method, path, json=payload, headers=self._headers
                )
            except httpx.TimeoutException as e:
                metrics.record_gateway_error("unavailable")
                logger.error("paystack_timeout", operation=operation, error=str(e))
                raise GatewayUnavailable(
                    "Payment service timeout, please try again", detail=str(e)
                ) from e
            except httpx.TransportError as e:
                metrics.record_gateway_error("unavailable")
                logger.error("paystack_connection_error", operation=operation, error=str(e))
                raise GatewayUnavailable(detail=str(e)) from e

            if response.status_code == 429 or response.status_code >= 500:
                metrics.record_gateway_error("unavailable")
                logger.error(
                    "paystack_unavailable",
                    operation=operation,
                    status_code=response.status_code,
                )
                raise GatewayUnavailable(detail=self._gateway_message(response))
            return response

        response = await self.circuit_breaker.call(_send)
        duration = time.monotonic() - start
        metrics.record_gateway_call(operation, str(response.status_code), duration)

        logger.info(
            "paystack_api_call",
            operation=operation,
            method=method,
            path=path,
            status_code=response.status_code,
            duration_seconds=duration,
        )

        if response.status_code in (401, 403):
            metrics.record_gateway_error("auth")
            # Misconfigured credentials need an operator, not a retry.
            logger.critical(
                "paystack_authentication_failed",
                operation=operation,
                status_code=response.status_code,
            )
            raise GatewayAuthError(detail=self._gateway_message(response))

        if response.status_code == 404:
            metrics.record_gateway_error("not_found")
            raise RecordNotFound(
                "Payment transaction not found", detail=self._gateway_message(response)
            )

        message = self._gateway_message(response)
        if response.status_code >= 400:
            metrics.record_gateway_error("rejected")
            logger.warning("paystack_request_rejected", operation=operation, message=message)
            raise GatewayRejected(message, detail=message)

        try:
            body = response.json()
        except ValueError as e:
            metrics.record_gateway_error("unavailable")
            raise GatewayUnavailable(detail="Malformed gateway response") from e

        if not body.get("status"):
            metrics.record_gateway_error("rejected")
            logger.warning("paystack_request_rejected", operation=operation, message=message)
            raise GatewayRejected(message, detail=body)

        return body.get("data") or {}

    async def initialize_transaction(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        channels: List[str],
        metadata: Dict[str, Any],
        currency: Optional[str] = None,
        callback_url: Optional[str] = None,
    ) -> InitializeResult:
        """
        Create a hosted checkout for a payment.

        Args:
            email: Payer email
            amount_minor: Amount in minor units
            reference: Our reference for this attempt
            channels: Allowed channels (card, mobile_money)
            metadata: Metadata echoed back on webhooks
            currency: Currency code (defaults to settings)
            callback_url: Optional redirect after checkout

        Returns:
            InitializeResult: Access code and authorization URL
        """
        payload: Dict[str, Any] = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": currency or self.settings.paystack_currency,
            "channels": channels,
            "metadata": metadata,
        }
        if callback_url:
            payload["callback_url"] = callback_url

        data = await self._request("initialize", "POST", "/transaction/initialize", payload)
        return InitializeResult(
            reference=data.get("reference", reference),
            access_code=data.get("access_code", ""),
            authorization_url=data.get("authorization_url", ""),
        )

    async def charge_mobile_money(
        self,
        email: str,
        amount_minor: int,
        reference: str,
        phone: str,
        provider: str,
        metadata: Dict[str, Any],
        currency: Optional[str] = None,
    ) -> ChargeResult:
        """
        Ask the payer's carrier to push a payment prompt (STK push).

        Args:
            email: Payer email
            amount_minor: Amount in minor units
            reference: Our reference for this attempt
            phone: Canonical 254XXXXXXXXX number
            provider: Mobile money provider code (``mpesa``)
            metadata: Metadata echoed back on webhooks
            currency: Currency code (defaults to settings)

        Returns:
            ChargeResult: Immediate success, pending user action, or failure
        """
        payload = {
            "email": email,
            "amount": amount_minor,
            "reference": reference,
            "currency": currency or self.settings.paystack_currency,
            # Paystack expects the international form with a leading plus.
            "mobile_money": {"phone": f"+{phone}", "provider": provider},
            "metadata": metadata,
        }

        data = await self._request("charge", "POST", "/charge", payload)
        raw_status = str(data.get("status") or "pending")

        if raw_status == "success":
            status = ChargeStatus.SUCCESS
        elif raw_status in _PENDING_CHARGE_STATUSES:
            status = ChargeStatus.PENDING_USER_ACTION
        else:
            status = ChargeStatus.FAILED

        return ChargeResult(
            reference=data.get("reference") or reference,
            status=status,
            raw_status=raw_status,
            display_text=data.get("display_text"),
            message=data.get("message") or data.get("gateway_response"),
        )

    async def verify_transaction(self, reference: str) -> VerificationResult:
        """
        Fetch the gateway's view of a transaction.

        Raises:
            RecordNotFound: If the gateway does not know the reference
        """
        data = await self._request("verify", "GET", f"/transaction/verify/{reference}")
        customer = data.get("customer") or {}
        metadata = data.get("metadata")
        return VerificationResult(
            reference=data.get("reference") or reference,
            status=str(data.get("status") or "pending"),
            amount_minor=data.get("amount"),
            paid_at=data.get("paid_at") or data.get("paidAt"),
            channel=data.get("channel"),
            gateway_response=data.get("gateway_response"),
            metadata=metadata if isinstance(metadata, dict) else {},
            customer_email=customer.get("email"),
        )

    async def ping(self) -> None:
        """Cheap authenticated call used by health checks."""
        await self._request("ping", "GET", "/bank?perPage=1")
