"""FastAPI dependencies resolving the collaborators built by the lifespan."""
import hmac

from fastapi import Request

from tutorpay.config import Settings
from tutorpay.core.exceptions import AuthenticationFailed
from tutorpay.core.payment_service import PaymentService
from tutorpay.monitoring.health import HealthCheck


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_payment_service(request: Request) -> PaymentService:
    return request.app.state.payment_service


def get_health_check(request: Request) -> HealthCheck:
    return request.app.state.health_check


def require_api_key(request: Request) -> None:
    """
    Check the shared API key when one is configured.

    Raises:
        AuthenticationFailed: Header missing or wrong
    """
    settings: Settings = request.app.state.settings
    if not settings.api_secret:
        return
    provided = request.headers.get(settings.api_key_header) or ""
    if not hmac.compare_digest(provided.encode(), settings.api_secret.encode()):
        raise AuthenticationFailed()
