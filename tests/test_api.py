"""
API tests through the ASGI app, lifespan included.
"""
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable
from unittest.mock import AsyncMock

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI

from tutorpay.api.main import create_app
from tutorpay.api.rate_limit import RateLimiter
from tutorpay.config import Settings
from tutorpay.core.exceptions import GatewayUnavailable
from tutorpay.database import Booking

SIGNATURE_HEADER = "x-paystack-signature"


@pytest_asyncio.fixture
async def app(test_settings: Settings, mock_gateway: AsyncMock) -> AsyncGenerator[FastAPI, Any]:
    application = create_app(settings=test_settings, gateway=mock_gateway)
    async with application.router.lifespan_context(application):
        yield application


@pytest_asyncio.fixture
async def client(app: FastAPI) -> AsyncGenerator[httpx.AsyncClient, Any]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


async def add_booking(app: FastAPI, booking_id: str = "bk1") -> None:
    async with app.state.database.session() as session:
        session.add(Booking(id=booking_id, status="pending"))


async def initialize(client: httpx.AsyncClient, **overrides: Any) -> httpx.Response:
    payload = {
        "email": "a@b.com",
        "amount": 500,
        "bookingId": "bk1",
        "metadata": {"payment_type": "booking_fee"},
        **overrides,
    }
    return await client.post("/api/payments/initialize", json=payload)


class TestPaymentRoutes:
    """Client-facing payment routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_initialize_envelope(self, client: httpx.AsyncClient) -> None:
        response = await initialize(client, amount="750.50")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["message"] == "Payment initialized successfully"
        assert body["request_id"]
        assert body["data"]["reference"].startswith("booking_")
        assert body["data"]["authorization_url"] == "https://checkout.paystack.com/ac_test_123"
        assert Decimal(str(body["data"]["amount"])) == Decimal("750.50")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_snake_case_booking_id_accepted(self, client: httpx.AsyncClient) -> None:
        response = await client.post(
            "/api/payments/initialize",
            json={"email": "a@b.com", "amount": 500, "booking_id": "bk1"},
        )
        assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_fields_is_400(self, client: httpx.AsyncClient) -> None:
        response = await client.post("/api/payments/initialize", json={"amount": 500})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["message"].startswith("Missing required fields:")
        assert "email" in body["message"]
        assert "bookingId" in body["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_amount_out_of_bounds_is_400(self, client: httpx.AsyncClient) -> None:
        response = await initialize(client, amount=0)
        assert response.status_code == 400
        assert response.json()["message"] == "Amount must be positive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_gateway_outage_is_503_with_retry_after(
        self, client: httpx.AsyncClient, mock_gateway: AsyncMock
    ) -> None:
        mock_gateway.initialize_transaction.side_effect = GatewayUnavailable()

        response = await initialize(client)

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["message"] == (
            "Payment service temporarily unavailable, please try again"
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_status_masks_phone_and_unknown_is_404(
        self, client: httpx.AsyncClient
    ) -> None:
        charge = await client.post(
            "/api/payments/mpesa/direct",
            json={"phone": "0712345678", "amount": 100, "email": "a@b.com", "bookingId": "bk1"},
        )
        reference = charge.json()["data"]["reference"]

        response = await client.get(f"/api/payments/status/{reference}")
        assert response.status_code == 200
        assert response.json()["data"]["phone"] == "254712****78"

        missing = await client.get("/api/payments/status/booking_nope")
        assert missing.status_code == 404
        assert missing.json()["message"] == "Transaction not found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_cancel_without_body(self, client: httpx.AsyncClient) -> None:
        reference = (await initialize(client)).json()["data"]["reference"]

        response = await client.post(f"/api/payments/cancel/{reference}")

        assert response.status_code == 200
        assert response.json()["data"]["cancel_reason"] == "User requested cancellation"

        again = await client.post(f"/api/payments/cancel/{reference}")
        assert again.status_code == 409

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_history(self, client: httpx.AsyncClient) -> None:
        await initialize(client)
        await initialize(client)

        response = await client.get("/api/payments/history/a@b.com", params={"status": "pending"})

        assert response.status_code == 200
        assert response.json()["data"]["count"] == 2

        bad = await client.get("/api/payments/history/a@b.com", params={"limit": 500})
        assert bad.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_validate_phone(self, client: httpx.AsyncClient) -> None:
        ok = await client.post("/api/payments/validate-phone", json={"phone": "+254712345678"})
        assert ok.status_code == 200
        assert ok.json()["data"]["provider"] == "Safaricom MPesa"

        bad = await client.post("/api/payments/validate-phone", json={"phone": "12345"})
        assert bad.status_code == 400
        assert bad.json()["message"].startswith("Invalid phone number format")

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_release_escrow_precondition(
        self, app: FastAPI, client: httpx.AsyncClient
    ) -> None:
        await add_booking(app)

        response = await client.post(
            "/api/payments/release-escrow",
            json={"bookingId": "bk1", "teacherPhone": "0712345678", "amount": 2000},
        )

        assert response.status_code == 409
        assert response.json()["message"] == (
            "Both parties must confirm completion before releasing escrow"
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, client: httpx.AsyncClient) -> None:
        response = await client.get(
            "/api/payments/status/booking_nope", headers={"X-Request-ID": "req-123"}
        )
        assert response.headers["X-Request-ID"] == "req-123"
        assert response.json()["request_id"] == "req-123"


class TestWebhookRoute:
    """Webhook endpoint."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signed_webhook_unlocks_negotiation(
        self,
        app: FastAPI,
        client: httpx.AsyncClient,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await add_booking(app)
        reference = (await initialize(client)).json()["data"]["reference"]
        body = webhook_body("charge.success", reference, id=1, amount=50000)

        response = await client.post(
            "/api/payments/webhook", content=body, headers={SIGNATURE_HEADER: sign(body)}
        )

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "applied"

        negotiation = await client.get("/api/payments/negotiation-status/bk1")
        assert negotiation.json()["data"]["negotiation_unlocked"] is True

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("signature", [None, "not-a-signature", "café".encode("utf-8")])
    async def test_bad_signature_is_401_and_changes_nothing(
        self,
        client: httpx.AsyncClient,
        webhook_body: Callable[..., bytes],
        signature: Any,
    ) -> None:
        reference = (await initialize(client)).json()["data"]["reference"]
        body = webhook_body("charge.success", reference, id=1)
        headers = {SIGNATURE_HEADER: signature} if signature else {}

        response = await client.post("/api/payments/webhook", content=body, headers=headers)

        assert response.status_code == 401
        assert response.json()["message"] == "Invalid webhook signature"
        status = await client.get(f"/api/payments/status/{reference}")
        assert status.json()["data"]["status"] == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_malformed_body_is_400(
        self, client: httpx.AsyncClient, sign: Callable[[bytes], str]
    ) -> None:
        body = b"{not json"
        response = await client.post(
            "/api/payments/webhook", content=body, headers={SIGNATURE_HEADER: sign(body)}
        )
        assert response.status_code == 400


class TestApiKey:
    """Shared API key on client routes."""

    @pytest_asyncio.fixture
    async def secured_client(
        self, test_settings: Settings, mock_gateway: AsyncMock
    ) -> AsyncGenerator[httpx.AsyncClient, Any]:
        settings = test_settings.model_copy(update={"api_secret": "s3cret"})
        application = create_app(settings=settings, gateway=mock_gateway)
        async with application.router.lifespan_context(application):
            transport = httpx.ASGITransport(app=application)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                yield http

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_key_required_on_client_routes(
        self, secured_client: httpx.AsyncClient
    ) -> None:
        payload = {"phone": "0712345678"}

        missing = await secured_client.post("/api/payments/validate-phone", json=payload)
        wrong = await secured_client.post(
            "/api/payments/validate-phone", json=payload, headers={"X-API-Key": "nope"}
        )
        right = await secured_client.post(
            "/api/payments/validate-phone", json=payload, headers={"X-API-Key": "s3cret"}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert right.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_and_health_do_not_need_key(
        self, secured_client: httpx.AsyncClient
    ) -> None:
        webhook = await secured_client.post("/api/payments/webhook", content=b"{}")
        assert webhook.status_code == 401
        assert webhook.json()["message"] == "Invalid webhook signature"

        live = await secured_client.get("/health/live")
        assert live.status_code == 200


class TestMonitoringRoutes:
    """Health and metrics endpoints."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/live")
        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_readiness_without_redis(self, client: httpx.AsyncClient) -> None:
        response = await client.get("/health/ready")
        body = response.json()
        assert response.status_code == 200
        assert body["status"] == "ready"
        assert body["checks"]["redis"]["status"] == "skipped"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_reports_gateway_outage(
        self, client: httpx.AsyncClient, mock_gateway: AsyncMock
    ) -> None:
        mock_gateway.ping.side_effect = GatewayUnavailable()

        response = await client.get("/health")

        body = response.json()
        assert body["status"] == "unhealthy"
        assert body["checks"]["database"]["status"] == "healthy"
        assert body["checks"]["paystack"]["status"] == "unhealthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: httpx.AsyncClient) -> None:
        await initialize(client)

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "payment_requests_total" in response.text


class TestRateLimits:
    """Rate limit rules on the payment and webhook routers."""

    @pytest_asyncio.fixture
    async def limited_client(
        self, test_settings: Settings, mock_gateway: AsyncMock
    ) -> AsyncGenerator[httpx.AsyncClient, Any]:
        settings = test_settings.model_copy(
            update={"rate_limit_payments_per_minute": 2, "rate_limit_webhooks_per_minute": 1}
        )
        application = create_app(settings=settings, gateway=mock_gateway)
        async with application.router.lifespan_context(application):
            # 20 seconds before a minute boundary
            application.state.rate_limiter = RateLimiter(settings, clock=lambda: 1_000_000.0)
            transport = httpx.ASGITransport(app=application)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                yield http

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_payment_routes_return_429_envelope(
        self, limited_client: httpx.AsyncClient
    ) -> None:
        payload = {"phone": "0712345678"}

        first = await limited_client.post("/api/payments/validate-phone", json=payload)
        await limited_client.post("/api/payments/validate-phone", json=payload)
        refused = await limited_client.post("/api/payments/validate-phone", json=payload)

        assert first.status_code == 200
        assert first.headers["RateLimit-Remaining"] == "1"
        assert refused.status_code == 429
        assert refused.headers["Retry-After"] == "20"
        body = refused.json()
        assert body["success"] is False
        assert body["message"] == "Too many payment attempts, please try again later."
        assert body["request_id"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_clients_have_separate_budgets(
        self, limited_client: httpx.AsyncClient
    ) -> None:
        payload = {"phone": "0712345678"}
        for _ in range(2):
            await limited_client.post(
                "/api/payments/validate-phone", json=payload, headers={"X-Forwarded-For": "1.1.1.1"}
            )

        other = await limited_client.post(
            "/api/payments/validate-phone", json=payload, headers={"X-Forwarded-For": "2.2.2.2"}
        )
        assert other.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_webhook_rule(self, limited_client: httpx.AsyncClient) -> None:
        first = await limited_client.post("/api/payments/webhook", content=b"{}")
        second = await limited_client.post("/api/payments/webhook", content=b"{}")

        assert first.status_code == 401
        assert second.status_code == 429
        assert second.json()["message"] == "Webhook rate limit exceeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health_is_not_limited(self, limited_client: httpx.AsyncClient) -> None:
        for _ in range(5):
            response = await limited_client.get("/health/live")
            assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_disabled_limits(
        self, test_settings: Settings, mock_gateway: AsyncMock
    ) -> None:
        settings = test_settings.model_copy(
            update={"rate_limit_enabled": False, "rate_limit_payments_per_minute": 1}
        )
        application = create_app(settings=settings, gateway=mock_gateway)
        async with application.router.lifespan_context(application):
            transport = httpx.ASGITransport(app=application)
            async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
                statuses = [
                    (
                        await http.post(
                            "/api/payments/validate-phone", json={"phone": "0712345678"}
                        )
                    ).status_code
                    for _ in range(3)
                ]
        assert statuses == [200, 200, 200]
