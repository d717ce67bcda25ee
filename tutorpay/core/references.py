"""Payment reference generation."""
import uuid
from enum import Enum


class ReferencePrefix(str, Enum):
    """Intent encoded in the first segment of a reference."""

    BOOKING = "booking"
    INIT = "init"
    CHARGE = "chg"
    MPESA = "mpesa"
    RETRY = "retry"


def generate_reference(prefix: ReferencePrefix | str) -> str:
    """
    Generate an opaque reference such as ``booking_3f2a...``.

    The suffix is a random UUID4 in hex (122 random bits), so two callers
    never share a reference in practice, even for the same booking.

    Raises:
        ValueError: If ``prefix`` is not a known reference prefix
    """
    intent = ReferencePrefix(prefix)
    return f"{intent.value}_{uuid.uuid4().hex}"
