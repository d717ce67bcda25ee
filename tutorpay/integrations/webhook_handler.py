"""
Paystack webhook parsing.

Turns a verified delivery body into a ``GatewayEvent``. Deduplication and
state changes happen in the reconciliation engine, inside the same
database transaction as the effects.
"""
import hashlib
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from tutorpay.core.exceptions import ValidationError

logger = structlog.get_logger(__name__)


@dataclass
class GatewayEvent:
    """One webhook delivery, normalized."""

    event_type: str
    reference: str
    delivery_id: str
    status: Optional[str] = None
    amount_minor: Optional[int] = None
    gateway_response: Optional[str] = None
    paid_at: Optional[str] = None
    channel: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)


def delivery_id_for(data: Dict[str, Any], raw_body: bytes) -> str:
    """
    Identify a delivery for duplicate suppression.

    Paystack's own ``data.id`` when present, otherwise a digest of the
    exact body so a byte-identical redelivery is still recognised.
    """
    gateway_id = data.get("id")
    if gateway_id not in (None, ""):
        return str(gateway_id)
    return hashlib.sha256(raw_body).hexdigest()


def parse_event(raw_body: bytes) -> GatewayEvent:
    """
    Parse a signature-checked webhook body.

    Args:
        raw_body: Raw request body

    Returns:
        GatewayEvent: Normalized event

    Raises:
        ValidationError: If the body is not JSON or lacks event/reference
    """
    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError) as e:
        raise ValidationError("Webhook body is not valid JSON", detail=str(e)) from e

    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")

    event_type = payload.get("event")
    data = payload.get("data") or {}
    if not isinstance(data, dict):
        raise ValidationError("Webhook data must be a JSON object")

    reference = data.get("reference")
    if not event_type or not reference:
        logger.warning(
            "webhook_payload_incomplete",
            has_event=bool(event_type),
            has_reference=bool(reference),
        )
        raise ValidationError("Missing event type or reference in webhook")

    metadata = data.get("metadata")
    amount = data.get("amount")

    return GatewayEvent(
        event_type=str(event_type),
        reference=str(reference),
        delivery_id=delivery_id_for(data, raw_body),
        status=data.get("status"),
        amount_minor=(
            int(amount)
            if isinstance(amount, (int, float)) and not isinstance(amount, bool)
            else None
        ),
        gateway_response=data.get("gateway_response"),
        paid_at=data.get("paid_at") or data.get("paidAt"),
        channel=data.get("channel"),
        metadata=metadata if isinstance(metadata, dict) else {},
        data=data,
    )
