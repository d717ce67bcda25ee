"""
State vocabulary for transactions and bookings.

The transition table is monotonic: once a transaction reaches ``success``
or ``cancelled`` no later event can move it, and ``failed`` is the only
state a retry may start from.
"""
from enum import Enum
from typing import Dict, FrozenSet


class TransactionStatus(str, Enum):
    """Lifecycle status of one payment attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"
    RETRYING = "retrying"


class PaymentMethod(str, Enum):
    """How the payer settled (or is expected to settle)."""

    CARD = "card"
    MPESA = "mpesa"
    UNKNOWN = "unknown"


class PaymentType(str, Enum):
    """Business purpose of a payment, carried in ``metadata.payment_type``."""

    BOOKING_FEE = "booking_fee"
    ESCROW = "escrow"


class BookingStatus(str, Enum):
    """Booking lifecycle as seen by the booking subsystem."""

    PENDING = "pending"
    NEGOTIATING = "negotiating"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class EscrowStatus(str, Enum):
    """Escrow only ever moves none -> held -> released."""

    NONE = "none"
    HELD = "held"
    RELEASED = "released"


class WebhookEvent(str, Enum):
    """Gateway webhook event types we act on."""

    CHARGE_SUCCESS = "charge.success"
    CHARGE_FAILED = "charge.failed"
    TRANSFER_SUCCESS = "transfer.success"
    TRANSFER_FAILED = "transfer.failed"
    SUBSCRIPTION_CREATE = "subscription.create"
    SUBSCRIPTION_DISABLE = "subscription.disable"
    SUBSCRIPTION_NOT_RENEW = "subscription.not_renew"


SUBSCRIPTION_EVENTS: FrozenSet[str] = frozenset(
    {
        WebhookEvent.SUBSCRIPTION_CREATE.value,
        WebhookEvent.SUBSCRIPTION_DISABLE.value,
        WebhookEvent.SUBSCRIPTION_NOT_RENEW.value,
    }
)

TERMINAL_STATUSES: FrozenSet[TransactionStatus] = frozenset(
    {TransactionStatus.SUCCESS, TransactionStatus.CANCELLED}
)

_ALLOWED: Dict[TransactionStatus, FrozenSet[TransactionStatus]] = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.SUCCESS, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.FAILED: frozenset(
        {TransactionStatus.SUCCESS, TransactionStatus.CANCELLED, TransactionStatus.RETRYING}
    ),
    TransactionStatus.RETRYING: frozenset(
        {TransactionStatus.SUCCESS, TransactionStatus.CANCELLED}
    ),
    TransactionStatus.SUCCESS: frozenset(),
    TransactionStatus.CANCELLED: frozenset(),
}

# Gateway verify statuses that map onto our failure branch.
GATEWAY_FAILURE_STATUSES: FrozenSet[str] = frozenset({"failed", "reversed", "abandoned"})


def can_transition(current: str, target: str) -> bool:
    """Return True if ``current -> target`` is a real (non-noop) transition."""
    return TransactionStatus(target) in _ALLOWED[TransactionStatus(current)]


def is_terminal(status: str) -> bool:
    """Check whether no further transition can leave ``status``."""
    return TransactionStatus(status) in TERMINAL_STATUSES
