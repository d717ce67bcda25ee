"""
Phone number and amount normalization.

Pure functions, no I/O. Amounts are held as ``Decimal`` in display units
everywhere inside the service; minor units (x100) only exist at the
gateway boundary.
"""
import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable

from .exceptions import InvalidPhoneFormat, ValidationError

COUNTRY_CODE = "254"
CANONICAL_PHONE = re.compile(r"^254\d{9}$")
MOBILE_PREFIXES = ("2547", "2541")  # 07XX and 01XX series
MINOR_UNITS_PER_MAJOR = 100
CENT = Decimal("0.01")

_NON_DIGITS = re.compile(r"\D")
_MASK = re.compile(r"(\d{6})\d{4}(\d{2})")


def normalize_phone(raw: str) -> str:
    """
    Normalize a Kenyan mobile number to ``254XXXXXXXXX``.

    Accepts ``0XXXXXXXXX``, ``254XXXXXXXXX``, ``+254XXXXXXXXX`` and the bare
    nine digit subscriber number, with any spacing or punctuation.

    Raises:
        InvalidPhoneFormat: If the number is not a recognised mobile number
    """
    if not raw or not isinstance(raw, str):
        raise InvalidPhoneFormat("Phone number is required")

    digits = _NON_DIGITS.sub("", raw)

    if digits.startswith("0"):
        digits = COUNTRY_CODE + digits[1:]
    elif digits.startswith(COUNTRY_CODE):
        pass
    elif len(digits) == 9:
        digits = COUNTRY_CODE + digits
    else:
        raise InvalidPhoneFormat(
            "Invalid phone number format. Please use format: 254XXXXXXXXX or 07XXXXXXXX"
        )

    if not CANONICAL_PHONE.match(digits):
        raise InvalidPhoneFormat()

    if not digits.startswith(MOBILE_PREFIXES):
        raise InvalidPhoneFormat("Invalid Kenyan mobile number prefix")

    return digits


def describe_phone(raw: str) -> Dict[str, str]:
    """Normalize ``raw`` and report the country and provider it belongs to."""
    formatted = normalize_phone(raw)
    return {
        "original_phone": raw,
        "formatted_phone": formatted,
        "country": "Kenya",
        "provider": "Safaricom MPesa" if formatted.startswith("2547") else "Other Kenyan Mobile",
    }


def mask_phone(phone: str | None) -> str | None:
    """Mask the middle digits of a phone number for logs and responses."""
    if not phone:
        return phone
    return _MASK.sub(r"\1****\2", phone)


def parse_amount(value: Any) -> Decimal:
    """Coerce ``value`` into a two decimal place ``Decimal``."""
    if isinstance(value, bool):
        raise ValidationError("Amount must be a number")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError("Amount must be a number")
    if not amount.is_finite():
        raise ValidationError("Amount must be a finite number")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def validate_amount(value: Any, minimum: Decimal, maximum: Decimal) -> Decimal:
    """
    Validate an amount against configured bounds.

    Raises:
        ValidationError: If the amount is not a number or out of bounds
    """
    amount = parse_amount(value)
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    if amount < minimum:
        raise ValidationError(f"Amount must be at least {minimum}")
    if amount > maximum:
        raise ValidationError(f"Amount cannot exceed {maximum}")
    return amount


def to_minor_units(amount: Decimal) -> int:
    """Convert a display amount to gateway minor units (x100, half up)."""
    return int((amount * MINOR_UNITS_PER_MAJOR).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(amount_minor: int | None) -> Decimal | None:
    """Convert gateway minor units back to a two decimal place amount."""
    if amount_minor is None:
        return None
    return (Decimal(int(amount_minor)) / MINOR_UNITS_PER_MAJOR).quantize(CENT)


def require_fields(payload: Dict[str, Any], fields: Iterable[str]) -> None:
    """
    Ensure every named field is present and not blank.

    Zero and False count as present; only None and empty or whitespace
    strings are missing.

    Raises:
        ValidationError: Listing the missing fields in the original order
    """
    missing = [name for name in fields if _is_blank(payload.get(name))]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}")


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False
