"""FastAPI application and routes."""
from .main import create_app
from .schemas import (
    ApiResponse,
    InitializePaymentRequest,
    MpesaPaymentRequest,
    ReleaseEscrowRequest,
)

__all__ = [
    "ApiResponse",
    "InitializePaymentRequest",
    "MpesaPaymentRequest",
    "ReleaseEscrowRequest",
    "create_app",
]
