"""Database package for tutorpay."""
from .connection import Database
from .models import (
    Base,
    Booking,
    BookingActivity,
    Transaction,
    TransactionEvent,
    WebhookDelivery,
)
from .stores import BookingStore, TransactionEventStore, TransactionStore, WebhookDeliveryStore

__all__ = [
    "Base",
    "Booking",
    "BookingActivity",
    "BookingStore",
    "Database",
    "Transaction",
    "TransactionEvent",
    "TransactionEventStore",
    "TransactionStore",
    "WebhookDelivery",
    "WebhookDeliveryStore",
]
