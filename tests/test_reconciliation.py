"""
Integration tests for webhook and verify reconciliation against SQLite.

Covers:
- Booking fee and escrow effects on success
- Failure handling
- Duplicate and stale deliveries
- Verify polling outcomes
- Concurrent modification detection
"""
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict
from unittest.mock import AsyncMock

import pytest

from tutorpay.core.background import BackgroundRunner
from tutorpay.core.exceptions import (
    ConcurrentModification,
    RecordNotFound,
    SignatureInvalid,
    ValidationError,
)
from tutorpay.core.payment_service import PaymentService
from tutorpay.database import Database, TransactionStore
from tutorpay.integrations.paystack_client import VerificationResult

from .conftest import Records

Initialize = Callable[..., Awaitable[Dict[str, Any]]]


async def deliver(
    service: PaymentService,
    sign: Callable[[bytes], str],
    body: bytes,
) -> Dict[str, Any]:
    return await service.handle_webhook(body, sign(body))


class TestChargeSuccess:
    """charge.success applies the booking effect exactly once."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_booking_fee_unlocks_negotiation(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()
        reference = init["reference"]

        tx = await records.transaction(reference)
        assert tx.status == "pending"
        assert tx.amount == Decimal("500.00")
        assert tx.payment_method == "unknown"

        body = webhook_body(
            "charge.success",
            reference,
            id=1001,
            amount=50000,
            status="success",
            channel="card",
            gateway_response="Approved",
            metadata={"payment_type": "booking_fee"},
        )
        result = await deliver(service, sign, body)

        assert result == {
            "status": "applied",
            "reference": reference,
            "event_type": "charge.success",
        }

        tx = await records.transaction(reference)
        assert tx.status == "success"
        assert tx.completed_at is not None
        assert tx.channel == "card"
        assert tx.gateway_response == "Approved"
        assert tx.last_webhook_event == "charge.success"

        booking = await records.booking("bk1")
        assert booking.status == "negotiating"
        assert booking.booking_fee_paid is True
        assert booking.booking_fee_reference == reference
        assert booking.negotiation_unlocked is True
        assert booking.negotiation["status"] == "ready"
        assert booking.negotiation["unlocked_by"] == "a@b.com"
        assert booking.negotiation["messages"] == []

        activity = await records.activity("bk1")
        assert [entry.action for entry in activity] == ["negotiation_unlocked"]
        assert activity[0].payment_reference == reference
        assert activity[0].details["previous_status"] == "pending"
        assert activity[0].details["new_status"] == "negotiating"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_escrow_is_held(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1", status="confirmed")
        init = await initialize_booking_fee(amount="2500", payment_type="escrow")
        body = webhook_body("charge.success", init["reference"], id=7, amount=250000)

        await deliver(service, sign, body)

        booking = await records.booking("bk1")
        assert booking.escrow_status == "held"
        assert booking.escrow_paid is True
        assert booking.escrow_amount == Decimal("2500.00")
        assert booking.escrow_reference == init["reference"]
        assert booking.status == "confirmed"
        assert booking.booking_fee_paid is False

        activity = await records.activity("bk1")
        assert [entry.action for entry in activity] == ["escrow_held"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_recorded_payment_type_wins_over_webhook_metadata(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee(payment_type="booking_fee")
        body = webhook_body(
            "charge.success",
            init["reference"],
            id=8,
            metadata={"payment_type": "escrow", "device": "android"},
        )

        await deliver(service, sign, body)

        tx = await records.transaction(init["reference"])
        assert tx.payment_metadata["payment_type"] == "booking_fee"
        assert tx.payment_metadata["device"] == "android"
        booking = await records.booking("bk1")
        assert booking.booking_fee_paid is True
        assert booking.escrow_status == "none"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_payment_type_has_no_booking_effect(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee(payment_type="tip")

        await deliver(service, sign, webhook_body("charge.success", init["reference"], id=9))

        assert (await records.transaction(init["reference"])).status == "success"
        booking = await records.booking("bk1")
        assert booking.status == "pending"
        assert booking.booking_fee_paid is False
        assert await records.activity("bk1") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_booking_does_not_block_success(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        init = await initialize_booking_fee(booking_id="bk_missing")

        result = await deliver(
            service, sign, webhook_body("charge.success", init["reference"], id=10)
        )

        assert result["status"] == "applied"
        assert (await records.transaction(init["reference"])).status == "success"
        assert await records.booking("bk_missing") is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_fee_payment_does_not_reapply(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        """Two successful fee payments for one booking unlock it once."""
        await create_booking("bk1")
        first = await initialize_booking_fee()
        second = await initialize_booking_fee()

        await deliver(service, sign, webhook_body("charge.success", first["reference"], id=11))
        await deliver(service, sign, webhook_body("charge.success", second["reference"], id=12))

        assert (await records.transaction(second["reference"])).status == "success"
        booking = await records.booking("bk1")
        assert booking.booking_fee_reference == first["reference"]
        assert len(await records.activity("bk1")) == 1


class TestChargeFailed:
    """charge.failed never touches the booking."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_is_recorded(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()
        body = webhook_body(
            "charge.failed", init["reference"], id=20, gateway_response="Declined"
        )

        result = await deliver(service, sign, body)

        assert result["status"] == "applied"
        tx = await records.transaction(init["reference"])
        assert tx.status == "failed"
        assert tx.failure_reason == "Declined"
        assert tx.failed_at is not None

        booking = await records.booking("bk1")
        assert booking.status == "pending"
        assert booking.booking_fee_paid is False
        assert await records.activity("bk1") == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_without_reason(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        init = await initialize_booking_fee()
        await deliver(service, sign, webhook_body("charge.failed", init["reference"], id=21))
        assert (await records.transaction(init["reference"])).failure_reason == "Unknown error"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_success_after_failure_is_applied(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()

        await deliver(service, sign, webhook_body("charge.failed", init["reference"], id=22))
        result = await deliver(
            service, sign, webhook_body("charge.success", init["reference"], id=23)
        )

        assert result["status"] == "applied"
        assert (await records.transaction(init["reference"])).status == "success"
        assert (await records.booking("bk1")).booking_fee_paid is True


class TestDeliveryOrdering:
    """Redeliveries and out-of-order events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()
        body = webhook_body("charge.success", init["reference"], id=30)

        first = await deliver(service, sign, body)
        second = await deliver(service, sign, body)

        assert first["status"] == "applied"
        assert second["status"] == "duplicate"
        assert len(await records.activity("bk1")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_redelivered_under_new_id_is_noop(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()

        await deliver(service, sign, webhook_body("charge.success", init["reference"], id=31))
        result = await deliver(
            service, sign, webhook_body("charge.success", init["reference"], id=32)
        )

        assert result["status"] == "noop"
        assert len(await records.activity("bk1")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_failure_after_success_is_ignored(
        self,
        service: PaymentService,
        records: Records,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()

        await deliver(service, sign, webhook_body("charge.success", init["reference"], id=33))
        result = await deliver(
            service,
            sign,
            webhook_body("charge.failed", init["reference"], id=34, gateway_response="Late"),
        )

        assert result["status"] == "ignored"
        tx = await records.transaction(init["reference"])
        assert tx.status == "success"
        assert tx.failure_reason is None
        assert (await records.booking("bk1")).status == "negotiating"


class TestOtherEvents:
    """Non-charge events are recorded without changing payment status."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event,column,value",
        [
            ("transfer.success", "transfer_status", "success"),
            ("transfer.failed", "transfer_status", "failed"),
            ("subscription.create", "subscription_status", "create"),
            ("subscription.disable", "subscription_status", "disable"),
        ],
    )
    async def test_status_columns(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
        event: str,
        column: str,
        value: str,
    ) -> None:
        init = await initialize_booking_fee()

        result = await deliver(service, sign, webhook_body(event, init["reference"], id=40))

        assert result["status"] == "applied"
        tx = await records.transaction(init["reference"])
        assert getattr(tx, column) == value
        assert tx.status == "pending"
        assert tx.last_webhook_event == event

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unhandled_event_is_noted(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        init = await initialize_booking_fee()

        result = await deliver(
            service, sign, webhook_body("refund.processed", init["reference"], id=41)
        )

        assert result["status"] == "noted"
        tx = await records.transaction(init["reference"])
        assert tx.notes == "Unhandled event type: refund.processed"
        assert tx.status == "pending"


class TestRejectedDeliveries:
    """Deliveries that must not change anything."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_bad_signature_mutates_nothing(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
        webhook_body: Callable[..., bytes],
    ) -> None:
        init = await initialize_booking_fee()
        body = webhook_body("charge.success", init["reference"], id=50)

        with pytest.raises(SignatureInvalid):
            await service.handle_webhook(body, "0" * 128)
        with pytest.raises(SignatureInvalid):
            await service.handle_webhook(body, None)

        assert (await records.transaction(init["reference"])).status == "pending"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference(
        self,
        service: PaymentService,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        with pytest.raises(RecordNotFound):
            await deliver(service, sign, webhook_body("charge.success", "booking_nope", id=51))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_reference(
        self, service: PaymentService, sign: Callable[[bytes], str]
    ) -> None:
        body = b'{"event":"charge.success","data":{"id":52}}'
        with pytest.raises(ValidationError, match="Missing event type or reference"):
            await deliver(service, sign, body)


class TestVerify:
    """verify_payment reconciles with the gateway's answer."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_verified_success_applies_effect_once(
        self,
        service: PaymentService,
        records: Records,
        mock_gateway: AsyncMock,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()
        mock_gateway.verify_transaction.return_value = VerificationResult(
            reference=init["reference"],
            status="success",
            amount_minor=50000,
            paid_at="2026-01-05T10:00:00.000Z",
            channel="mobile_money",
            gateway_response="Approved",
        )

        first = await service.verify_payment(init["reference"])
        second = await service.verify_payment(init["reference"])

        assert first["status"] == "success"
        assert first["outcome"] == "applied"
        assert first["gateway_status"] == "success"
        assert first["verified_at"] is not None
        assert second["outcome"] == "noop"

        tx = await records.transaction(init["reference"])
        assert tx.paid_at == "2026-01-05T10:00:00.000Z"
        assert tx.channel == "mobile_money"
        assert len(await records.activity("bk1")) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("gateway_status", ["failed", "abandoned", "reversed"])
    async def test_verified_failure(
        self,
        service: PaymentService,
        records: Records,
        mock_gateway: AsyncMock,
        initialize_booking_fee: Initialize,
        gateway_status: str,
    ) -> None:
        init = await initialize_booking_fee()
        mock_gateway.verify_transaction.return_value = VerificationResult(
            reference=init["reference"],
            status=gateway_status,
            amount_minor=50000,
            paid_at=None,
            channel=None,
            gateway_response="The transaction was not completed",
        )

        result = await service.verify_payment(init["reference"])

        assert result["status"] == "failed"
        tx = await records.transaction(init["reference"])
        assert tx.failure_reason == "The transaction was not completed"
        assert tx.verified_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_still_pending(
        self,
        service: PaymentService,
        records: Records,
        initialize_booking_fee: Initialize,
    ) -> None:
        init = await initialize_booking_fee()

        result = await service.verify_payment(init["reference"])

        assert result["status"] == "pending"
        assert result["outcome"] == "pending"
        assert result["gateway_status"] == "ongoing"
        assert (await records.transaction(init["reference"])).verified_at is not None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_reference_skips_gateway(
        self, service: PaymentService, mock_gateway: AsyncMock
    ) -> None:
        with pytest.raises(RecordNotFound):
            await service.verify_payment("booking_nope")
        mock_gateway.verify_transaction.assert_not_called()


class TestAuditTrail:
    """Audit events are written after commit through the background runner."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_events_written(
        self,
        service: PaymentService,
        records: Records,
        runner: BackgroundRunner,
        create_booking: Callable[..., Awaitable[Any]],
        initialize_booking_fee: Initialize,
        sign: Callable[[bytes], str],
        webhook_body: Callable[..., bytes],
    ) -> None:
        await create_booking("bk1")
        init = await initialize_booking_fee()
        await deliver(service, sign, webhook_body("charge.success", init["reference"], id=60))

        await runner.drain()

        event_types = {event.event_type for event in await records.events(init["reference"])}
        assert {"initialized", "status_success", "webhook_received"} <= event_types
        assert runner.failures == []


class TestConcurrentModification:
    """Row versions catch writers racing outside the reference lock."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_write_is_rejected(
        self,
        database: Database,
        records: Records,
        initialize_booking_fee: Initialize,
    ) -> None:
        init = await initialize_booking_fee()
        reference = init["reference"]

        with pytest.raises(ConcurrentModification):
            async with database.session() as first:
                stale = await TransactionStore(first).require(reference)

                async with database.session() as second:
                    store = TransactionStore(second)
                    fresh = await store.require(reference)
                    await store.update(fresh, notes="written first")

                await TransactionStore(first).update(stale, notes="written second")

        assert (await records.transaction(reference)).notes == "written first"
