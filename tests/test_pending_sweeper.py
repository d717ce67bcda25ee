"""
Tests for the pending payment sweeper.
"""
from typing import Any, Awaitable, Callable, Dict
from unittest.mock import AsyncMock

import pytest

from tutorpay.config import Settings
from tutorpay.core.exceptions import GatewayUnavailable
from tutorpay.core.payment_service import PaymentService
from tutorpay.integrations.paystack_client import VerificationResult
from tutorpay.workers.pending_sweeper import sweep_pending_once

from .conftest import Records

Initialize = Callable[..., Awaitable[Dict[str, Any]]]


@pytest.fixture
def sweep_settings(test_settings: Settings) -> Settings:
    return test_settings.model_copy(update={"pending_sweep_min_age_seconds": 0})


class TestPendingSweeper:
    """Test suite for sweep_pending_once."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_resolves_what_the_gateway_settled(
        self,
        service: PaymentService,
        records: Records,
        mock_gateway: AsyncMock,
        sweep_settings: Settings,
        initialize_booking_fee: Initialize,
    ) -> None:
        paid = await initialize_booking_fee()
        waiting = await initialize_booking_fee()

        async def verify(reference: str) -> VerificationResult:
            status = "success" if reference == paid["reference"] else "ongoing"
            return VerificationResult(
                reference=reference,
                status=status,
                amount_minor=50000,
                paid_at=None,
                channel=None,
                gateway_response=None,
            )

        mock_gateway.verify_transaction.side_effect = verify

        summary = await sweep_pending_once(service, sweep_settings)

        assert summary == {"checked": 2, "resolved": 1, "still_pending": 1, "errors": 0}
        assert (await records.transaction(paid["reference"])).status == "success"
        assert (await records.transaction(waiting["reference"])).status == "pending"

        second = await sweep_pending_once(service, sweep_settings)
        assert second["checked"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(
        self,
        service: PaymentService,
        sweep_settings: Settings,
        initialize_booking_fee: Initialize,
        mocker: Any,
    ) -> None:
        first = await initialize_booking_fee()
        await initialize_booking_fee()

        original = service.verify_payment

        async def verify(reference: str) -> Dict[str, Any]:
            if reference == first["reference"]:
                raise GatewayUnavailable()
            return await original(reference)

        mocker.patch.object(service, "verify_payment", side_effect=verify)

        summary = await sweep_pending_once(service, sweep_settings)

        assert summary["checked"] == 2
        assert summary["errors"] == 1
        assert summary["still_pending"] == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recent_payments_are_left_alone(
        self,
        service: PaymentService,
        mock_gateway: AsyncMock,
        test_settings: Settings,
        initialize_booking_fee: Initialize,
    ) -> None:
        await initialize_booking_fee()

        summary = await sweep_pending_once(service, test_settings)

        assert summary["checked"] == 0
        mock_gateway.verify_transaction.assert_not_called()
