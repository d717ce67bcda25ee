"""
Pydantic schemas for API request/response models.

Request bodies accept both snake_case and the camelCase names used by the
mobile and web clients (``bookingId``, ``teacherPhone``).
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class InitializePaymentRequest(_Request):
    """Request schema for starting a hosted checkout."""

    email: str = Field(..., min_length=3, description="Payer email")
    amount: Decimal = Field(..., description="Amount in display units (KES)")
    booking_id: str = Field(..., alias="bookingId", min_length=1, description="Booking identifier")
    metadata: Optional[Dict[str, Any]] = Field(
        default=None, description="Metadata; payment_type selects the booking effect"
    )
    callback_url: Optional[str] = Field(
        default=None, alias="callbackUrl", description="Redirect after checkout"
    )

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """Validate email shape."""
        if "@" not in v:
            raise ValueError("Invalid email address")
        return v

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "examples": [
                {
                    "email": "parent@example.com",
                    "amount": 500,
                    "bookingId": "bk1",
                    "metadata": {"payment_type": "booking_fee"},
                }
            ]
        },
    )


class MpesaPaymentRequest(_Request):
    """Request schema for an M-Pesa STK push."""

    phone: str = Field(..., description="Phone number (07XX..., 254..., +254...)")
    amount: Decimal = Field(..., description="Amount in display units (KES)")
    email: str = Field(..., min_length=3, description="Payer email")
    booking_id: str = Field(..., alias="bookingId", min_length=1, description="Booking identifier")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Payment metadata")


class ReleaseEscrowRequest(_Request):
    """Request schema for releasing escrow to the teacher."""

    booking_id: str = Field(..., alias="bookingId", min_length=1, description="Booking identifier")
    teacher_phone: str = Field(..., alias="teacherPhone", description="Teacher payout phone")
    amount: Decimal = Field(..., description="Amount to release")


class RetryPaymentRequest(_Request):
    """Request schema for retrying a failed payment."""

    phone: Optional[str] = Field(default=None, description="Override payer phone")
    email: Optional[str] = Field(default=None, description="Override payer email")


class CancelPaymentRequest(_Request):
    """Request schema for cancelling a payment."""

    reason: Optional[str] = Field(default=None, max_length=500, description="Cancellation reason")


class ValidatePhoneRequest(_Request):
    """Request schema for phone validation."""

    phone: str = Field(..., description="Phone number to validate")


class ApiResponse(BaseModel):
    """Envelope for every payment API response."""

    success: bool = Field(..., description="Whether the operation succeeded")
    message: str = Field(..., description="Human readable outcome")
    data: Optional[Any] = Field(default=None, description="Operation result")
    error: Optional[str] = Field(default=None, description="Internal detail (debug only)")
    request_id: Optional[str] = Field(default=None, description="Request ID for support")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")
