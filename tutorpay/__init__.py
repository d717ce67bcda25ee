"""Paystack payment backend for tutoring bookings."""

__version__ = "1.0.0"
