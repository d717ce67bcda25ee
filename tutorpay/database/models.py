"""SQLAlchemy database models for the payment ledger and booking records."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
BigIntPK = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Transaction(Base):
    """
    Payment transaction ledger.

    One row per payment attempt, keyed by the generated reference.
    Rows are never deleted; ``version`` guards concurrent read-modify-write.
    """

    __tablename__ = "transactions"

    reference: Mapped[str] = mapped_column(String(64), primary_key=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="unknown")
    payment_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    init_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checkout_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    gateway_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel: Mapped[str | None] = mapped_column(String(50), nullable=True)
    paid_at: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    retry_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    last_webhook_event: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_webhook_received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    transfer_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )
    verified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(
            "status IN ('pending', 'success', 'failed', 'cancelled', 'retrying')",
            name="valid_transaction_status",
        ),
        CheckConstraint(
            "payment_method IN ('card', 'mpesa', 'unknown')",
            name="valid_payment_method",
        ),
        Index("idx_transactions_status_created", "status", "created_at"),
    )

    @property
    def payment_type(self) -> str | None:
        """Business purpose recorded in the metadata bag."""
        return (self.payment_metadata or {}).get("payment_type")

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses."""
        return {
            "reference": self.reference,
            "booking_id": self.booking_id,
            "email": self.email,
            "phone": self.phone,
            "amount": self.amount,
            "currency": self.currency,
            "status": self.status,
            "payment_method": self.payment_method,
            "metadata": dict(self.payment_metadata or {}),
            "init_reference": self.init_reference,
            "checkout_url": self.checkout_url,
            "gateway_response": self.gateway_response,
            "channel": self.channel,
            "paid_at": self.paid_at,
            "failure_reason": self.failure_reason,
            "cancel_reason": self.cancel_reason,
            "retry_reference": self.retry_reference,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
            "verified_at": self.verified_at,
            "completed_at": self.completed_at,
            "failed_at": self.failed_at,
            "cancelled_at": self.cancelled_at,
        }

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(reference={self.reference}, booking_id={self.booking_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Booking(Base):
    """
    Booking record.

    Owned and created by the booking subsystem. This service only updates
    the payment related columns and must never overwrite the rest.
    """

    __tablename__ = "bookings"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    booking_fee_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    booking_fee_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    booking_fee_paid_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    escrow_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escrow_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    escrow_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    escrow_paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escrow_status: Mapped[str] = mapped_column(String(20), nullable=False, default="none")
    escrow_released_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    negotiation_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    negotiation_unlocked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    negotiation: Mapped[Dict[str, Any] | None] = mapped_column(JSONType, nullable=True)

    parent_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    teacher_completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancel_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "escrow_status IN ('none', 'held', 'released')",
            name="valid_escrow_status",
        ),
    )

    def __repr__(self) -> str:
        """String representation of Booking."""
        return (
            f"<Booking(id={self.id}, status={self.status}, "
            f"fee_paid={self.booking_fee_paid}, escrow={self.escrow_status})>"
        )


class BookingActivity(Base):
    """
    Append-only booking activity log.

    Immutable once written.
    """

    __tablename__ = "booking_activity"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    booking_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    triggered_by: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of BookingActivity."""
        return f"<BookingActivity(booking_id={self.booking_id}, action={self.action})>"


class WebhookDelivery(Base):
    """
    Processed webhook deliveries.

    Lets a redelivered event be recognised and skipped.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    delivery_id: Mapped[str] = mapped_column(String(128), nullable=False)
    outcome: Mapped[str] = mapped_column(String(32), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        UniqueConstraint("reference", "event_type", "delivery_id", name="uq_webhook_delivery"),
    )


class TransactionEvent(Base):
    """
    Transaction audit trail.

    Written off the request path through the background runner.
    """

    __tablename__ = "transaction_events"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_data: Mapped[Dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    def __repr__(self) -> str:
        """String representation of TransactionEvent."""
        return f"<TransactionEvent(reference={self.reference}, type={self.event_type})>"
