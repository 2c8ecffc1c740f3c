from __future__ import annotations

from typing import Any


# Maximum amount: $9,999,999.99 (999,999,999 cents)
# This prevents database overflow issues and nonsensical prices
MAX_AMOUNT_CENTS = 999_999_999


class ValidationError(ValueError):
    """400-level input problem."""


def require_fields(payload: dict | None, *names: str) -> dict:
    """Return payload if every name is present and not None/empty, else raise."""
    if not isinstance(payload, dict):
        raise ValidationError("JSON object body required")
    missing = [n for n in names if payload.get(n) in (None, "")]
    if missing:
        raise ValidationError(f"{', '.join(missing)} required")
    return payload


def coerce_int(value: Any, field: str, *, minimum: int | None = None, maximum: int | None = None) -> int:
    """
    Strict integer coercion for ids, quantities and cent amounts.

    Accepts ints and plain digit strings. Rejects bools, floats,
    decimals and scientific notation.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer")

    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer")
        # Reject scientific notation (e.g., "1e15", "1E10")
        if "e" in stripped.lower():
            raise ValidationError(f"{field} must be a plain integer (scientific notation not allowed)")
        # Reject decimal points (e.g., "12.5")
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)")
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer")
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal")
    else:
        raise ValidationError(f"{field} must be an integer")

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}")
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}")
    return result


def coerce_cents(value: Any, field: str, *, allow_zero: bool = True) -> int:
    return coerce_int(value, field, minimum=0 if allow_zero else 1, maximum=MAX_AMOUNT_CENTS)


def optional_str(value: Any, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    if not s:
        return None
    if max_length is not None and len(s) > max_length:
        raise ValidationError(f"value exceeds {max_length} characters")
    return s
