"""
Structured logging configuration.

structlog renders one JSON object per event, stamped with the service,
the component (``api`` or ``sweeper``) and whether Paystack runs in test
or live mode. Customer contact details and credentials never reach the
output: phone numbers are masked, emails shortened and secrets replaced
before rendering.
"""
import logging
import sys
from typing import Any

import structlog
from pythonjsonlogger import jsonlogger

from tutorpay.config import Settings
from tutorpay.core.normalization import mask_phone

REDACTED = "[redacted]"

_PHONE_FIELDS = frozenset({"phone", "teacher_phone", "formatted_phone"})
_SECRET_FIELDS = frozenset(
    {"secret", "secret_key", "api_key", "api_secret", "authorization", "signature"}
)


def mask_email(email: Any) -> Any:
    """Keep the first character of the local part and the domain."""
    if not isinstance(email, str) or "@" not in email:
        return email
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}"


def redact_sensitive_fields(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Mask contact details and drop credentials from an event."""
    for key, value in event_dict.items():
        if key in _PHONE_FIELDS and isinstance(value, str):
            event_dict[key] = mask_phone(value)
        elif key == "email":
            event_dict[key] = mask_email(value)
        elif key in _SECRET_FIELDS and value:
            event_dict[key] = REDACTED
    return event_dict


def _service_context(settings: Settings, component: str) -> Any:
    def add_service_context(
        logger: Any, method_name: str, event_dict: dict[str, Any]
    ) -> dict[str, Any]:
        event_dict.setdefault("service", settings.app_name)
        event_dict.setdefault("component", component)
        event_dict["app_env"] = settings.app_env
        event_dict["paystack_mode"] = "test" if settings.is_test_mode else "live"
        return event_dict

    return add_service_context


def setup_logging(settings: Settings, component: str = "api") -> None:
    """
    Configure structlog and the root handler.

    Args:
        settings: Application settings (level, environment, SQL echo)
        component: Process role stamped on every event
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _service_context(settings, component),
            redact_sensitive_fields,
            structlog.processors.JSONRenderer(sort_keys=False),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Library records (uvicorn, sqlalchemy) go through python-json-logger
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            static_fields={"service": settings.app_name, "component": component},
        )
    )
    root_logger.addHandler(handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.database_echo else logging.WARNING
    )

    structlog.get_logger(__name__).info(
        "logging_configured",
        log_level=settings.log_level,
        component=component,
    )
