from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from storefront.time_utils import parse_iso_datetime


# Largest amount a Numeric(12, 2) column holds
MAX_AMOUNT = Decimal("9999999999.99")


class ValidationError(ValueError):
    """400-level input problem."""


class NotFoundError(LookupError):
    """404-level missing resource (product, promo code, order)."""


class ConflictError(ValueError):
    """409-level business rule conflict (e.g., duplicate promo code)."""


def coerce_amount(key: str, value: Any, *, allow_none: bool = False) -> Decimal | None:
    """
    Parse a monetary input into a Decimal.

    Floats are accepted through their string form so 0.1 stays 0.1.
    """
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{key} is required")
    if isinstance(value, bool):
        raise ValidationError(f"{key} must be a number")
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(f"{key} must be a number")
    if not amount.is_finite():
        raise ValidationError(f"{key} must be a number")
    if amount < 0:
        raise ValidationError(f"{key} must be >= 0")
    if amount > MAX_AMOUNT:
        raise ValidationError(f"{key} cannot exceed {MAX_AMOUNT}")
    return amount


def coerce_int(key: str, value: Any, *, allow_none: bool = False) -> int | None:
    """Strict integer parsing; rejects bools, floats and decimal strings."""
    if value is None:
        if allow_none:
            return None
        raise ValidationError(f"{key} is required")
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    raise ValidationError(f"{key} must be an integer")


def coerce_datetime(key: str, value: Any):
    if value is None or value == "":
        return None
    try:
        dt = parse_iso_datetime(value) if isinstance(value, str) else value
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    if dt is None or not hasattr(dt, "year"):
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    return dt


def require_fields(payload: dict | None, fields: tuple[str, ...], *, label: str) -> dict:
    """Every field must be present and non-blank."""
    if not isinstance(payload, dict):
        raise ValidationError(f"Please provide {label}")
    missing = [f for f in fields if not str(payload.get(f) or "").strip()]
    if missing:
        raise ValidationError(f"Please provide {label}: missing {', '.join(missing)}")
    return payload
