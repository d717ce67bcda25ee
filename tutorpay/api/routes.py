"""
API routes for payment processing.

Errors are raised as ``PaymentError`` subclasses and rendered by the
handlers registered in ``api.main``.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Query, Request, Response, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tutorpay.config import Settings
from tutorpay.core.normalization import mask_phone
from tutorpay.core.payment_service import PaymentService
from tutorpay.monitoring.health import HealthCheck

from .dependencies import (
    get_app_settings,
    get_health_check,
    get_payment_service,
    require_api_key,
)
from .rate_limit import rate_limit
from .schemas import (
    ApiResponse,
    CancelPaymentRequest,
    HealthCheckResponse,
    InitializePaymentRequest,
    MpesaPaymentRequest,
    ReleaseEscrowRequest,
    RetryPaymentRequest,
    ValidatePhoneRequest,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(
    prefix="/api/payments",
    tags=["payments"],
    dependencies=[
        Depends(rate_limit("api")),
        Depends(rate_limit("payments")),
        Depends(require_api_key),
    ],
)
webhook_router = APIRouter(
    prefix="/api/payments", tags=["webhooks"], dependencies=[Depends(rate_limit("webhooks"))]
)
monitoring_router = APIRouter(tags=["monitoring"])


def _ok(request: Request, message: str, data: Any = None) -> ApiResponse:
    return ApiResponse(
        success=True,
        message=message,
        data=data,
        request_id=getattr(request.state, "request_id", None),
    )


@payment_router.post(
    "/initialize",
    response_model=ApiResponse,
    summary="Initialize a payment",
    description="Start a hosted Paystack checkout (card or mobile money)",
)
async def initialize_payment(
    body: InitializePaymentRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Initialize a checkout for a booking fee or escrow payment."""
    logger.info(
        "api_initialize_payment_request",
        booking_id=body.booking_id,
        amount=str(body.amount),
    )
    result = await service.initialize_payment(
        email=body.email,
        amount=body.amount,
        booking_id=body.booking_id,
        metadata=body.metadata,
        callback_url=body.callback_url,
    )
    return _ok(request, "Payment initialized successfully", result)


@payment_router.get(
    "/verify/{reference}",
    response_model=ApiResponse,
    summary="Verify a payment",
    description="Fetch the gateway's view of a payment and reconcile it",
)
async def verify_payment(
    reference: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Verify payment by reference."""
    result = await service.verify_payment(reference)
    return _ok(request, "Payment verification completed", result)


@payment_router.post(
    "/mpesa",
    response_model=ApiResponse,
    summary="M-Pesa payment",
    description="Initialize a mobile money checkout and send an STK push",
)
async def mpesa_payment(
    body: MpesaPaymentRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Process an M-Pesa payment."""
    logger.info(
        "api_mpesa_payment_request",
        booking_id=body.booking_id,
        phone=mask_phone(body.phone),
    )
    result = await service.charge_mpesa(
        phone=body.phone,
        amount=body.amount,
        email=body.email,
        booking_id=body.booking_id,
        metadata=body.metadata,
    )
    return _ok(request, "M-Pesa payment request sent. Check your phone to authorize.", result)


@payment_router.post(
    "/mpesa/direct",
    response_model=ApiResponse,
    summary="Direct M-Pesa payment",
    description="Send an STK push without a checkout initialization",
)
async def mpesa_direct_payment(
    body: MpesaPaymentRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Process a direct M-Pesa charge."""
    result = await service.charge_mpesa_direct(
        phone=body.phone,
        amount=body.amount,
        email=body.email,
        booking_id=body.booking_id,
        metadata=body.metadata,
    )
    return _ok(request, "M-Pesa payment request sent. Check your phone to authorize.", result)


@webhook_router.post(
    "/webhook",
    response_model=ApiResponse,
    summary="Paystack webhook endpoint",
    description="Handle signed Paystack webhook events",
)
async def paystack_webhook(
    request: Request,
    service: PaymentService = Depends(get_payment_service),
    settings: Settings = Depends(get_app_settings),
) -> ApiResponse:
    """
    Handle Paystack webhook events.

    The raw body is read before any JSON parsing so the signature is
    checked over the exact bytes Paystack signed.
    """
    body = await request.body()
    signature = request.headers.get(settings.webhook_signature_header)
    result = await service.handle_webhook(body, signature)
    return _ok(request, "Webhook processed", result)


@payment_router.post(
    "/release-escrow",
    response_model=ApiResponse,
    summary="Release escrow",
    description="Release held escrow once parent and teacher confirmed completion",
)
async def release_escrow(
    body: ReleaseEscrowRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Release escrow payment to the teacher."""
    result = await service.release_escrow(
        booking_id=body.booking_id,
        teacher_phone=body.teacher_phone,
        amount=body.amount,
    )
    return _ok(request, "Escrow payment released successfully", result)


@payment_router.get(
    "/status/{reference}",
    response_model=ApiResponse,
    summary="Get payment status",
    description="Retrieve the ledger entry for a payment",
)
async def get_payment_status(
    reference: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Get payment status by reference."""
    result = await service.get_payment_status(reference)
    return _ok(request, "Payment status retrieved", result)


@payment_router.post(
    "/retry/{reference}",
    response_model=ApiResponse,
    summary="Retry a failed payment",
    description="Create a new attempt linked to a failed payment",
)
async def retry_payment(
    reference: str,
    request: Request,
    body: Optional[RetryPaymentRequest] = None,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Retry a failed payment."""
    body = body or RetryPaymentRequest()
    result = await service.retry_payment(reference, phone=body.phone, email=body.email)
    return _ok(request, "Payment retry initiated", result)


@payment_router.post(
    "/cancel/{reference}",
    response_model=ApiResponse,
    summary="Cancel a payment",
    description="Cancel a payment that has not completed",
)
async def cancel_payment(
    reference: str,
    request: Request,
    body: Optional[CancelPaymentRequest] = None,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Cancel a pending or failed payment."""
    body = body or CancelPaymentRequest()
    result = await service.cancel_payment(reference, reason=body.reason)
    return _ok(request, "Payment cancelled successfully", result)


@payment_router.get(
    "/history/{email}",
    response_model=ApiResponse,
    summary="Transaction history",
    description="List a payer's payments, newest first",
)
async def transaction_history(
    email: str,
    request: Request,
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50),
    offset: int = Query(default=0),
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Get transaction history for a payer."""
    result = await service.get_transaction_history(
        email, status=status_filter, limit=limit, offset=offset
    )
    return _ok(request, "Transaction history retrieved", result)


@payment_router.post(
    "/validate-phone",
    response_model=ApiResponse,
    summary="Validate phone number",
    description="Normalize a Kenyan mobile number and identify its provider",
)
async def validate_phone(
    body: ValidatePhoneRequest,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Validate and normalize a phone number."""
    result = service.validate_phone(body.phone)
    return _ok(request, "Phone number is valid", result)


@payment_router.get(
    "/negotiation-status/{booking_id}",
    response_model=ApiResponse,
    summary="Negotiation status",
    description="Check whether the booking fee unlocked negotiation",
)
async def negotiation_status(
    booking_id: str,
    request: Request,
    service: PaymentService = Depends(get_payment_service),
) -> ApiResponse:
    """Get negotiation status for a booking."""
    result = await service.get_negotiation_status(booking_id)
    return _ok(request, "Negotiation status retrieved", result)


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Any:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "ready":
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
