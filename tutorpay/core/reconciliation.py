"""
Reconciliation engine.

Applies gateway outcomes (webhooks, verify polls) and client actions
(retry, cancel, escrow release) to the transaction ledger and the booking
records.

Rules:
1. Status only moves along the transition table in ``core.states``;
   anything else is a stale event and is ignored.
2. Booking effects run only on a real transition into ``success`` and are
   guarded again on the booking itself, so they happen at most once.
3. A webhook delivery is recorded with its effects; a redelivery of the
   same ``(reference, event_type, delivery_id)`` changes nothing.

The engine works inside one session. The caller owns the session (and
therefore the commit) and holds the reference lock.
"""
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from tutorpay.core.exceptions import InvalidTransition, PreconditionFailed
from tutorpay.core.normalization import from_minor_units, mask_phone, to_minor_units
from tutorpay.core.states import (
    GATEWAY_FAILURE_STATUSES,
    SUBSCRIPTION_EVENTS,
    BookingStatus,
    EscrowStatus,
    PaymentType,
    TransactionStatus,
    WebhookEvent,
    can_transition,
)
from tutorpay.database.models import Booking, Transaction, utcnow
from tutorpay.database.stores import BookingStore, TransactionStore, WebhookDeliveryStore
from tutorpay.integrations.paystack_client import VerificationResult
from tutorpay.integrations.webhook_handler import GatewayEvent
from tutorpay.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

APPLIED = "applied"
NOOP = "noop"
IGNORED = "ignored"
DUPLICATE = "duplicate"
PENDING = "pending"
NOTED = "noted"

NEGOTIATION_FEATURES = ["messaging", "offers", "counter_offers"]


@dataclass
class AuditEvent:
    """Audit trail entry to be written after the session commits."""

    reference: str
    event_type: str
    data: Dict[str, Any] = field(default_factory=dict)


class ReconciliationEngine:
    """State machine over one session's worth of stores."""

    def __init__(self, session: AsyncSession):
        self.transactions = TransactionStore(session)
        self.bookings = BookingStore(session)
        self.deliveries = WebhookDeliveryStore(session)
        self.audit: List[AuditEvent] = []

    def _note(self, reference: str, event_type: str, **data: Any) -> None:
        self.audit.append(AuditEvent(reference=reference, event_type=event_type, data=data))

    @staticmethod
    def _merge_metadata(
        transaction: Transaction, incoming: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Gateway metadata never replaces the payment type recorded at initialization."""
        merged = dict(incoming or {})
        if transaction.payment_type is not None:
            merged.pop("payment_type", None)
        return merged

    async def _transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        source: str,
        metadata: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> str:
        """
        Move ``transaction`` to ``target`` if the table allows it.

        Returns:
            str: ``applied``, ``noop`` (already there) or ``ignored`` (stale)
        """
        current = transaction.status
        if current == target.value:
            logger.info(
                "transition_noop",
                reference=transaction.reference,
                status=current,
                source=source,
            )
            return NOOP

        if not can_transition(current, target.value):
            metrics.record_stale_event(current, target.value)
            logger.warning(
                "stale_transition_ignored",
                reference=transaction.reference,
                current_status=current,
                target_status=target.value,
                source=source,
            )
            return IGNORED

        await self.transactions.update(
            transaction, metadata=metadata, status=target.value, **fields
        )
        metrics.record_transition(current, target.value, source)
        logger.info(
            "transaction_status_changed",
            reference=transaction.reference,
            from_status=current,
            to_status=target.value,
            source=source,
        )
        self._note(
            transaction.reference,
            f"status_{target.value}",
            from_status=current,
            source=source,
        )
        return APPLIED

    async def apply_success(
        self,
        transaction: Transaction,
        source: str,
        amount_minor: Optional[int] = None,
        paid_at: Optional[str] = None,
        channel: Optional[str] = None,
        gateway_response: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> str:
        """
        Mark a payment successful and apply its booking effect.

        Args:
            transaction: Ledger entry, loaded in this session
            source: What reported the success (webhook, verify, charge)
            amount_minor: Amount the gateway reports, in minor units
            paid_at: Gateway payment timestamp
            channel: Gateway channel (card, mobile_money)
            gateway_response: Gateway response text
            metadata: Metadata echoed back by the gateway

        Returns:
            str: Transition outcome
        """
        now = utcnow()
        fields: Dict[str, Any] = {"completed_at": now, **extra}
        if source == "verify":
            fields["verified_at"] = now
        for name, value in (
            ("paid_at", paid_at),
            ("channel", channel),
            ("gateway_response", gateway_response),
        ):
            if value is not None:
                fields[name] = value

        if amount_minor is not None and amount_minor != to_minor_units(transaction.amount):
            logger.warning(
                "payment_amount_mismatch",
                reference=transaction.reference,
                expected_minor=to_minor_units(transaction.amount),
                reported_minor=amount_minor,
            )

        outcome = await self._transition(
            transaction,
            TransactionStatus.SUCCESS,
            source,
            metadata=self._merge_metadata(transaction, metadata),
            **fields,
        )
        if outcome == APPLIED:
            await self._apply_booking_effect(transaction, amount_minor, now)
        return outcome

    async def apply_failure(
        self,
        transaction: Transaction,
        source: str,
        reason: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> str:
        """Mark a payment failed. Bookings are never touched on failure."""
        return await self._transition(
            transaction,
            TransactionStatus.FAILED,
            source,
            metadata=self._merge_metadata(transaction, metadata),
            failed_at=utcnow(),
            failure_reason=reason or "Unknown error",
            **extra,
        )

    async def _apply_booking_effect(
        self, transaction: Transaction, amount_minor: Optional[int], now: datetime
    ) -> None:
        payment_type = transaction.payment_type
        if payment_type not in (PaymentType.BOOKING_FEE.value, PaymentType.ESCROW.value):
            logger.info(
                "payment_without_booking_effect",
                reference=transaction.reference,
                payment_type=payment_type,
            )
            return

        booking = await self.bookings.get(transaction.booking_id)
        if booking is None:
            logger.warning(
                "booking_not_found_for_payment",
                reference=transaction.reference,
                booking_id=transaction.booking_id,
            )
            return

        if payment_type == PaymentType.BOOKING_FEE.value:
            await self._unlock_negotiation(booking, transaction, now)
        else:
            amount = from_minor_units(amount_minor) if amount_minor is not None else transaction.amount
            await self._hold_escrow(booking, transaction, amount, now)

    async def _unlock_negotiation(
        self, booking: Booking, transaction: Transaction, now: datetime
    ) -> None:
        if booking.booking_fee_paid:
            logger.info(
                "booking_fee_already_applied",
                booking_id=booking.id,
                reference=transaction.reference,
                existing_reference=booking.booking_fee_reference,
            )
            return

        previous_status = booking.status
        metadata = transaction.payment_metadata or {}
        await self.bookings.update(
            booking,
            status=BookingStatus.NEGOTIATING.value,
            booking_fee_paid=True,
            booking_fee_reference=transaction.reference,
            booking_fee_paid_at=now,
            negotiation_unlocked=True,
            negotiation_unlocked_at=now,
            negotiation={
                "status": "ready",
                "unlocked_by": metadata.get("user_id") or transaction.email,
                "unlocked_at": now.isoformat(),
                "messages": [],
                "offers": [],
                "last_activity": now.isoformat(),
            },
        )
        await self.bookings.append_activity(
            booking_id=booking.id,
            action="negotiation_unlocked",
            triggered_by="payment_success",
            payment_reference=transaction.reference,
            amount=transaction.amount,
            details={
                "previous_status": previous_status,
                "new_status": BookingStatus.NEGOTIATING.value,
                "negotiation_features": NEGOTIATION_FEATURES,
            },
        )
        metrics.record_booking_effect(PaymentType.BOOKING_FEE.value)
        logger.info(
            "negotiation_unlocked",
            booking_id=booking.id,
            reference=transaction.reference,
            previous_status=previous_status,
        )

    async def _hold_escrow(
        self, booking: Booking, transaction: Transaction, amount: Decimal, now: datetime
    ) -> None:
        if booking.escrow_status != EscrowStatus.NONE.value:
            logger.info(
                "escrow_already_applied",
                booking_id=booking.id,
                reference=transaction.reference,
                escrow_status=booking.escrow_status,
            )
            return

        await self.bookings.update(
            booking,
            escrow_paid=True,
            escrow_amount=amount,
            escrow_reference=transaction.reference,
            escrow_paid_at=now,
            escrow_status=EscrowStatus.HELD.value,
        )
        await self.bookings.append_activity(
            booking_id=booking.id,
            action="escrow_held",
            triggered_by="payment_success",
            payment_reference=transaction.reference,
            amount=amount,
        )
        metrics.record_booking_effect(PaymentType.ESCROW.value)
        logger.info(
            "escrow_held",
            booking_id=booking.id,
            reference=transaction.reference,
            amount=str(amount),
        )

    async def apply_verification(
        self, transaction: Transaction, result: VerificationResult
    ) -> str:
        """
        Apply the gateway's view from a verify call.

        ``success`` takes the success branch; ``failed``, ``reversed`` and
        ``abandoned`` take the failure branch; anything else leaves the
        status alone and only records what the gateway said.
        """
        if result.status == "success":
            return await self.apply_success(
                transaction,
                source="verify",
                amount_minor=result.amount_minor,
                paid_at=result.paid_at,
                channel=result.channel,
                gateway_response=result.gateway_response,
                metadata=result.metadata,
            )

        if result.status in GATEWAY_FAILURE_STATUSES:
            return await self.apply_failure(
                transaction,
                source="verify",
                reason=result.gateway_response,
                metadata=result.metadata,
                verified_at=utcnow(),
            )

        if transaction.status != TransactionStatus.PENDING.value:
            return NOOP

        fields: Dict[str, Any] = {"verified_at": utcnow()}
        if result.gateway_response is not None:
            fields["gateway_response"] = result.gateway_response
        if result.channel is not None:
            fields["channel"] = result.channel
        await self.transactions.update(transaction, **fields)
        logger.info(
            "payment_still_pending",
            reference=transaction.reference,
            gateway_status=result.status,
        )
        return PENDING

    async def apply_webhook(self, event: GatewayEvent) -> Dict[str, Any]:
        """
        Apply one verified webhook delivery.

        Returns:
            Dict[str, Any]: ``{"status": outcome, "reference", "event_type"}``

        Raises:
            RecordNotFound: If the reference is unknown
        """
        transaction = await self.transactions.require(event.reference)

        if await self.deliveries.seen(event.reference, event.event_type, event.delivery_id):
            logger.info(
                "webhook_event_already_processed",
                reference=event.reference,
                event_type=event.event_type,
                delivery_id=event.delivery_id,
            )
            return {
                "status": DUPLICATE,
                "reference": event.reference,
                "event_type": event.event_type,
            }

        stamp = {
            "last_webhook_event": event.event_type,
            "last_webhook_received_at": utcnow(),
        }

        if event.event_type == WebhookEvent.CHARGE_SUCCESS.value:
            outcome = await self.apply_success(
                transaction,
                source="webhook",
                amount_minor=event.amount_minor,
                paid_at=event.paid_at,
                channel=event.channel,
                gateway_response=event.gateway_response,
                metadata=event.metadata,
                **stamp,
            )
        elif event.event_type == WebhookEvent.CHARGE_FAILED.value:
            outcome = await self.apply_failure(
                transaction,
                source="webhook",
                reason=event.gateway_response,
                metadata=event.metadata,
                **stamp,
            )
        elif event.event_type in (
            WebhookEvent.TRANSFER_SUCCESS.value,
            WebhookEvent.TRANSFER_FAILED.value,
        ):
            transfer_status = event.event_type.split(".", 1)[1]
            await self.transactions.update(transaction, transfer_status=transfer_status, **stamp)
            logger.info(
                "transfer_status_recorded",
                reference=event.reference,
                transfer_status=transfer_status,
                gateway_response=event.gateway_response,
            )
            outcome = APPLIED
        elif event.event_type in SUBSCRIPTION_EVENTS:
            subscription_status = event.event_type.split(".", 1)[1]
            await self.transactions.update(
                transaction, subscription_status=subscription_status, **stamp
            )
            logger.info(
                "subscription_status_recorded",
                reference=event.reference,
                subscription_status=subscription_status,
            )
            outcome = APPLIED
        else:
            await self.transactions.update(
                transaction, notes=f"Unhandled event type: {event.event_type}", **stamp
            )
            logger.info(
                "webhook_event_unhandled",
                reference=event.reference,
                event_type=event.event_type,
            )
            outcome = NOTED

        await self.deliveries.record(
            event.reference, event.event_type, event.delivery_id, outcome
        )
        self._note(
            event.reference,
            "webhook_received",
            webhook_event=event.event_type,
            delivery_id=event.delivery_id,
            outcome=outcome,
        )
        return {
            "status": outcome,
            "reference": event.reference,
            "event_type": event.event_type,
        }

    async def cancel(self, transaction: Transaction, reason: Optional[str] = None) -> Transaction:
        """
        Cancel a payment that has not completed and cancel its booking.

        Raises:
            InvalidTransition: If the payment already succeeded or was cancelled
        """
        if transaction.status == TransactionStatus.SUCCESS.value:
            raise InvalidTransition("Cannot cancel completed payment")
        if transaction.status == TransactionStatus.CANCELLED.value:
            raise InvalidTransition("Payment already cancelled")

        reason = reason or "User requested cancellation"
        await self._transition(
            transaction,
            TransactionStatus.CANCELLED,
            "cancel",
            cancelled_at=utcnow(),
            cancel_reason=reason,
        )

        booking = await self.bookings.get(transaction.booking_id)
        if booking is None:
            logger.warning(
                "booking_not_found_for_cancellation",
                reference=transaction.reference,
                booking_id=transaction.booking_id,
            )
            return transaction

        previous_status = booking.status
        await self.bookings.update(
            booking, status=BookingStatus.CANCELLED.value, cancel_reason=reason
        )
        await self.bookings.append_activity(
            booking_id=booking.id,
            action="payment_cancelled",
            triggered_by="user",
            payment_reference=transaction.reference,
            amount=transaction.amount,
            details={"previous_status": previous_status, "reason": reason},
        )
        logger.info(
            "booking_cancelled_with_payment",
            booking_id=booking.id,
            reference=transaction.reference,
        )
        return transaction

    @staticmethod
    def ensure_retryable(transaction: Transaction) -> None:
        """
        Raises:
            InvalidTransition: Unless the payment is ``failed``
        """
        if transaction.status != TransactionStatus.FAILED.value:
            raise InvalidTransition("Only failed transactions can be retried")

    async def begin_retry(
        self,
        original: Transaction,
        retry_reference: str,
        phone: Optional[str],
        email: str,
        payment_method: Optional[str] = None,
        **extra: Any,
    ) -> Transaction:
        """
        Mark ``original`` as retrying and open a linked pending attempt.

        Returns:
            Transaction: The new pending ledger entry

        Raises:
            InvalidTransition: Unless the original is ``failed``
        """
        self.ensure_retryable(original)
        retry_count = (original.retry_count or 0) + 1

        await self._transition(
            original,
            TransactionStatus.RETRYING,
            "retry",
            retry_reference=retry_reference,
            retry_count=retry_count,
            last_retry_at=utcnow(),
        )

        metadata = dict(original.payment_metadata or {})
        metadata.update(original_reference=original.reference, is_retry=True)
        retry = await self.transactions.create(
            reference=retry_reference,
            booking_id=original.booking_id,
            email=email,
            amount=original.amount,
            currency=original.currency,
            payment_method=payment_method or original.payment_method,
            metadata=metadata,
            phone=phone,
            **extra,
        )
        self._note(
            retry_reference,
            "retry_created",
            original_reference=original.reference,
            retry_count=retry_count,
            phone=mask_phone(phone),
        )
        logger.info(
            "payment_retry_created",
            original_reference=original.reference,
            retry_reference=retry_reference,
            retry_count=retry_count,
        )
        return retry

    async def release_escrow(
        self,
        booking: Booking,
        teacher_phone: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Booking:
        """
        Flip a held escrow to released and complete the booking.

        No funds move here; the payout is handled outside this service.

        Raises:
            PreconditionFailed: If either party has not confirmed completion,
                the escrow was already released, or it was never funded
        """
        if booking.parent_completed_at is None or booking.teacher_completed_at is None:
            raise PreconditionFailed(
                "Both parties must confirm completion before releasing escrow"
            )
        if booking.escrow_status == EscrowStatus.RELEASED.value:
            raise PreconditionFailed("Escrow has already been released")
        if booking.escrow_status != EscrowStatus.HELD.value:
            raise PreconditionFailed("Escrow has not been funded for this booking")

        released_amount = amount if amount is not None else booking.escrow_amount
        now = utcnow()
        await self.bookings.update(
            booking,
            escrow_status=EscrowStatus.RELEASED.value,
            escrow_released_at=now,
            status=BookingStatus.COMPLETED.value,
        )
        await self.bookings.append_activity(
            booking_id=booking.id,
            action="escrow_released",
            triggered_by="escrow_release",
            payment_reference=booking.escrow_reference,
            amount=released_amount,
            details={"teacher_phone": mask_phone(teacher_phone)},
        )
        if booking.escrow_reference:
            self._note(
                booking.escrow_reference,
                "escrow_released",
                booking_id=booking.id,
                amount=str(released_amount) if released_amount is not None else None,
            )
        logger.info(
            "escrow_released",
            booking_id=booking.id,
            amount=str(released_amount) if released_amount is not None else None,
            teacher_phone=mask_phone(teacher_phone),
        )
        return booking
