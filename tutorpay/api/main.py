"""
Main FastAPI application.

Payment API for the tutoring marketplace with:
- CORS configuration
- Error handling
- Request ID tracking
- Structured logging
- Prometheus metrics

All collaborators (database, Paystack client, locks, background runner)
are built in the lifespan and kept on ``app.state``.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

import redis.asyncio as aioredis
import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from tutorpay.config import Settings, get_settings
from tutorpay.core.background import BackgroundRunner
from tutorpay.core.exceptions import GatewayAuthError, PaymentError
from tutorpay.core.locking import ReferenceLocker
from tutorpay.core.payment_service import PaymentService
from tutorpay.database import Database
from tutorpay.integrations.paystack_client import PaystackClient
from tutorpay.integrations.webhook_verifier import WebhookSignatureVerifier
from tutorpay.monitoring.health import HealthCheck
from tutorpay.monitoring.logging import setup_logging

from .rate_limit import RateLimiter
from .routes import monitoring_router, payment_router, webhook_router

logger = structlog.get_logger(__name__)


def _error_body(request: Request, message: str, detail: Any, debug: bool) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": False,
        "message": message,
        "request_id": getattr(request.state, "request_id", None),
    }
    if debug and detail is not None:
        body["error"] = str(detail)
    return body


def create_app(
    settings: Optional[Settings] = None,
    gateway: Optional[PaystackClient] = None,
    redis_client: Optional[aioredis.Redis] = None,
) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings (defaults to ``get_settings()``)
        gateway: Optional Paystack client; one is created from settings otherwise
        redis_client: Optional Redis client; one is created when ``redis_url`` is set
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        setup_logging(settings)
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            env=settings.app_env,
            test_mode=settings.is_test_mode,
        )

        # Fails startup when no webhook secret is available
        verifier = WebhookSignatureVerifier(
            settings.paystack_webhook_secret or settings.paystack_secret_key
        )

        database = Database(settings)
        try:
            await database.create_all()
        except Exception as e:
            logger.error("database_initialization_failed", error=str(e))
            await database.dispose()
            raise

        redis = redis_client
        owns_redis = False
        if redis is None and settings.redis_url:
            redis = aioredis.from_url(settings.redis_url, encoding="utf-8", decode_responses=True)
            owns_redis = True

        paystack = gateway or PaystackClient(settings)
        runner = BackgroundRunner()

        app.state.settings = settings
        app.state.database = database
        app.state.runner = runner
        app.state.rate_limiter = RateLimiter(settings, redis)
        app.state.payment_service = PaymentService(
            settings=settings,
            database=database,
            gateway=paystack,
            locker=ReferenceLocker(settings, redis),
            runner=runner,
            verifier=verifier,
        )
        app.state.health_check = HealthCheck(settings, database, paystack, redis)

        yield

        logger.info("application_shutdown")
        await runner.drain(timeout=10)
        if gateway is None:
            await paystack.close()
        if owns_redis:
            await redis.aclose()
        await database.dispose()
        logger.info("database_connections_closed")

    app = FastAPI(
        title="Tutorpay",
        description=(
            "Payment backend for tutoring bookings on Paystack (card and M-Pesa). "
            "Features: webhook reconciliation, booking fee negotiation unlock, "
            "escrow hold and release, and comprehensive monitoring."
        ),
        version="1.0.0",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )
    app.state.settings = settings

    # CORS configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.get_allowed_origins_list(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
        """
        Add request ID to all requests for tracing.

        Also adds timing information and structured logging context.
        """
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        start_time = time.time()

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        logger.info(
            "request_started",
            client_host=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "request_completed",
                status_code=response.status_code,
                duration_seconds=time.time() - start_time,
            )
            return response

        except Exception as e:
            logger.error(
                "request_failed",
                error=str(e),
                duration_seconds=time.time() - start_time,
            )
            raise

        finally:
            structlog.contextvars.clear_contextvars()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError) -> JSONResponse:
        """Render payment errors as the standard envelope."""
        if isinstance(exc, GatewayAuthError):
            logger.critical("payment_gateway_auth_error", error=exc.message, detail=str(exc.detail))
        elif exc.status_code >= 500:
            logger.error(
                "payment_error",
                error_type=type(exc).__name__,
                error=exc.message,
                detail=str(exc.detail),
            )
        else:
            logger.warning(
                "payment_request_rejected",
                error_type=type(exc).__name__,
                error=exc.message,
                status_code=exc.status_code,
            )

        headers = {"Retry-After": str(exc.retry_after_seconds)} if exc.retryable else None
        return JSONResponse(
            status_code=exc.status_code,
            content=_error_body(request, exc.message, exc.detail, settings.debug),
            headers=headers,
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        """Render body validation failures as 400 with the missing fields named."""
        errors = exc.errors()
        missing = [
            str(error["loc"][-1]) for error in errors if error.get("type") == "missing"
        ]
        if missing:
            message = f"Missing required fields: {', '.join(missing)}"
        else:
            message = "Validation failed"
        logger.warning("request_validation_failed", errors=len(errors), missing=missing)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=_error_body(request, message, errors, settings.debug),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(request, "Internal server error", exc, settings.debug),
        )

    app.include_router(payment_router)
    app.include_router(webhook_router)
    app.include_router(monitoring_router)

    @app.get("/", tags=["root"])
    async def root() -> dict[str, Any]:
        """Root endpoint with API information."""
        return {
            "service": settings.app_name,
            "version": "1.0.0",
            "status": "operational",
            "environment": settings.app_env,
            "test_mode": settings.is_test_mode,
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
        }

    return app


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "tutorpay.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
