"""
Record stores over the SQLAlchemy models.

Each store is bound to one session, so everything done through the
stores of one session commits or rolls back together. Updates are
partial: only the named columns are written, and the row version is
checked so a concurrent writer is detected instead of silently
overwritten.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tutorpay.core.exceptions import ConcurrentModification, RecordNotFound
from tutorpay.database.models import (
    Booking,
    BookingActivity,
    Transaction,
    TransactionEvent,
    WebhookDelivery,
    utcnow,
)

logger = structlog.get_logger(__name__)


async def _flush(session: AsyncSession, what: str, key: str) -> None:
    try:
        await session.flush()
    except StaleDataError as e:
        logger.warning("concurrent_modification_detected", record=what, key=key)
        raise ConcurrentModification(detail=str(e)) from e


class TransactionStore:
    """Ledger of payment attempts keyed by reference."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, reference: str) -> Optional[Transaction]:
        """Point read; None if absent."""
        return await self.session.get(Transaction, reference)

    async def require(self, reference: str) -> Transaction:
        """
        Point read that fails when absent.

        Raises:
            RecordNotFound: If no transaction has this reference
        """
        transaction = await self.get(reference)
        if transaction is None:
            raise RecordNotFound("Transaction not found")
        return transaction

    async def create(
        self,
        reference: str,
        booking_id: str,
        email: str,
        amount: Decimal,
        currency: str,
        payment_method: str,
        metadata: Optional[Dict[str, Any]] = None,
        status: str = "pending",
        **extra: Any,
    ) -> Transaction:
        """Insert a new ledger entry."""
        transaction = Transaction(
            reference=reference,
            booking_id=booking_id,
            email=email,
            amount=amount,
            currency=currency,
            status=status,
            payment_method=payment_method,
            payment_metadata=dict(metadata or {}),
            created_at=utcnow(),
            **extra,
        )
        self.session.add(transaction)
        await _flush(self.session, "transaction", reference)
        logger.info(
            "transaction_record_created",
            reference=reference,
            booking_id=booking_id,
            status=status,
        )
        return transaction

    async def update(
        self,
        transaction: Transaction,
        metadata: Optional[Dict[str, Any]] = None,
        **fields: Any,
    ) -> Transaction:
        """
        Write only the given columns.

        ``metadata`` is merged into the existing bag; keys already present
        are overwritten, others are kept.
        """
        for name, value in fields.items():
            setattr(transaction, name, value)
        if metadata:
            transaction.payment_metadata = {**(transaction.payment_metadata or {}), **metadata}
        await _flush(self.session, "transaction", transaction.reference)
        return transaction

    async def list_for_email(
        self,
        email: str,
        status: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Sequence[Transaction]:
        """Transactions for a payer, newest first."""
        stmt = select(Transaction).where(Transaction.email == email)
        if status:
            stmt = stmt.where(Transaction.status == status)
        stmt = stmt.order_by(Transaction.created_at.desc()).offset(offset).limit(limit)
        result = await self.session.execute(stmt)
        return result.scalars().all()

    async def list_stale_pending(self, older_than: datetime, limit: int) -> List[str]:
        """References of pending transactions created before ``older_than``."""
        stmt = (
            select(Transaction.reference)
            .where(Transaction.status == "pending", Transaction.created_at < older_than)
            .order_by(Transaction.created_at)
            .limit(limit)
        )
        result = await self.session.execute(stmt)
        return list(result.scalars().all())


class BookingStore:
    """Payment related view of booking records owned elsewhere."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, booking_id: str) -> Optional[Booking]:
        """Point read; None if absent."""
        return await self.session.get(Booking, booking_id)

    async def require(self, booking_id: str) -> Booking:
        """
        Point read that fails when absent.

        Raises:
            RecordNotFound: If the booking does not exist
        """
        booking = await self.get(booking_id)
        if booking is None:
            raise RecordNotFound("Booking not found")
        return booking

    async def update(self, booking: Booking, **fields: Any) -> Booking:
        """Write only the given columns and stamp ``last_updated``."""
        for name, value in fields.items():
            setattr(booking, name, value)
        booking.last_updated = utcnow()
        await _flush(self.session, "booking", booking.id)
        return booking

    async def append_activity(
        self,
        booking_id: str,
        action: str,
        triggered_by: str,
        payment_reference: Optional[str] = None,
        amount: Optional[Decimal] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> BookingActivity:
        """Append one entry to the booking's activity log."""
        entry = BookingActivity(
            booking_id=booking_id,
            action=action,
            triggered_by=triggered_by,
            payment_reference=payment_reference,
            amount=amount,
            details=details or {},
            created_at=utcnow(),
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def list_activity(self, booking_id: str) -> Sequence[BookingActivity]:
        """Activity entries for a booking, oldest first."""
        stmt = (
            select(BookingActivity)
            .where(BookingActivity.booking_id == booking_id)
            .order_by(BookingActivity.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()


class WebhookDeliveryStore:
    """Remembers which webhook deliveries were already applied."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def seen(self, reference: str, event_type: str, delivery_id: str) -> bool:
        """Check whether this exact delivery was recorded before."""
        stmt = select(WebhookDelivery.id).where(
            WebhookDelivery.reference == reference,
            WebhookDelivery.event_type == event_type,
            WebhookDelivery.delivery_id == delivery_id,
        )
        result = await self.session.execute(stmt)
        return result.first() is not None

    async def record(
        self, reference: str, event_type: str, delivery_id: str, outcome: str
    ) -> None:
        """Record a delivery in the same transaction as its effects."""
        self.session.add(
            WebhookDelivery(
                reference=reference,
                event_type=event_type,
                delivery_id=delivery_id,
                outcome=outcome,
                received_at=utcnow(),
            )
        )
        await self.session.flush()


class TransactionEventStore:
    """Append-only audit trail of what happened to each reference."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def append(self, reference: str, event_type: str, event_data: Dict[str, Any]) -> None:
        """Append one audit event."""
        self.session.add(
            TransactionEvent(
                reference=reference,
                event_type=event_type,
                event_data=event_data,
                created_at=utcnow(),
            )
        )
        await self.session.flush()

    async def list_for(self, reference: str) -> Sequence[TransactionEvent]:
        """Audit events for a reference, oldest first."""
        stmt = (
            select(TransactionEvent)
            .where(TransactionEvent.reference == reference)
            .order_by(TransactionEvent.id)
        )
        result = await self.session.execute(stmt)
        return result.scalars().all()
