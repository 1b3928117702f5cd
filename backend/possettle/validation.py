from __future__ import annotations
from datetime import datetime
from possettle.time_utils import parse_iso_datetime

from typing import Any


# Maximum amount: 9,999,999.99 (999,999,999 cents)
# Prevents database overflow and nonsensical amounts
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def coerce_int(key: str, value: Any, *, required: bool = True) -> int | None:
    """
    Strict integer parsing for JSON bodies and query strings.

    Rejects floats, decimals, booleans and scientific notation.
    """
    if value is None:
        if required:
            raise ValidationError(f"{key} is required")
        return None

    # Already an int (but not bool which is a subclass of int)
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    # String input - must be plain digits (with optional leading minus)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            if required:
                raise ValidationError(f"{key} must be an integer")
            return None
        # Reject scientific notation (e.g., "1e15", "1E10")
        if 'e' in stripped.lower():
            raise ValidationError(f"{key} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if '.' in stripped:
            raise ValidationError(f"{key} must be an integer (no decimals)")
        try:
            return int(stripped)
        except ValueError:
            raise ValidationError(f"{key} must be an integer")
    # Reject floats explicitly
    if isinstance(value, float):
        raise ValidationError(f"{key} must be an integer, not a decimal")
    raise ValidationError(f"{key} must be an integer")


def coerce_cents(key: str, value: Any, *, required: bool = True) -> int | None:
    """Integer cents within range. Sign rules belong to the services."""
    cents = coerce_int(key, value, required=required)
    if cents is not None and abs(cents) > MAX_AMOUNT_CENTS:
        raise ValidationError(f"{key} cannot exceed {MAX_AMOUNT_CENTS} cents")
    return cents


def coerce_datetime(key: str, value: Any) -> datetime | None:
    """ISO-8601 string normalized to naive UTC; None/empty passes through."""
    if value is None or isinstance(value, datetime):
        return value
    if not isinstance(value, str):
        raise ValidationError(f"{key} must be an ISO-8601 datetime")
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{key} must be an ISO-8601 datetime")


def coerce_text(key: str, value: Any, *, max_length: int = 255) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    if len(text) > max_length:
        raise ValidationError(f"{key} cannot exceed {max_length} characters")
    return text


def require_json_object(payload: Any) -> dict:
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload
