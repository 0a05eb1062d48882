from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

from .errors import DomainError
from .time_utils import parse_iso_datetime


# Maximum money amount: 9,999,999.99 (999,999,999 paise)
MAX_AMOUNT_CENTS = 999_999_999
MAX_QUANTITY = 1_000_000


class ValidationError(DomainError, ValueError):
    """400-level input problem."""
    status_code = 400
    kind = "ValidationError"


def require_payload(data: Any) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("JSON object body required")
    return data


def require_fields(data: dict, fields: Iterable[str]) -> None:
    missing = [f for f in fields if data.get(f) is None]
    if missing:
        raise ValidationError(
            f"Missing required fields: {', '.join(missing)}",
            {"missing": missing},
        )


def parse_int(
    value: Any,
    field: str,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    """
    Strict integer coercion.

    Accepts ints and plain-digit strings. Rejects bools, floats, decimals and
    scientific notation ("1e3") so that money and quantities never pass
    through float math.
    """
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be an integer", {"field": field})
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValidationError(f"{field} must be an integer", {"field": field})
        if "e" in stripped.lower():
            raise ValidationError(
                f"{field} must be a plain integer (scientific notation not allowed)",
                {"field": field},
            )
        if "." in stripped:
            raise ValidationError(f"{field} must be an integer (no decimals)", {"field": field})
        try:
            result = int(stripped)
        except ValueError:
            raise ValidationError(f"{field} must be an integer", {"field": field})
    elif isinstance(value, float):
        raise ValidationError(f"{field} must be an integer, not a decimal", {"field": field})
    else:
        raise ValidationError(f"{field} must be an integer", {"field": field})

    if minimum is not None and result < minimum:
        raise ValidationError(f"{field} must be >= {minimum}", {"field": field, "minimum": minimum})
    if maximum is not None and result > maximum:
        raise ValidationError(f"{field} must be <= {maximum}", {"field": field, "maximum": maximum})
    return result


def parse_cents(value: Any, field: str, *, positive: bool = False) -> int:
    return parse_int(value, field, minimum=1 if positive else 0, maximum=MAX_AMOUNT_CENTS)


def parse_quantity(value: Any, field: str = "quantity", *, allow_zero: bool = False) -> int:
    return parse_int(value, field, minimum=0 if allow_zero else 1, maximum=MAX_QUANTITY)


def require_choice(value: Any, field: str, choices: Iterable[str]) -> str:
    choices = tuple(choices)
    if not isinstance(value, str) or value not in choices:
        raise ValidationError(
            f"{field} must be one of: {', '.join(choices)}",
            {"field": field, "allowed": list(choices)},
        )
    return value


def optional_str(value: Any, field: str, *, max_length: int | None = None) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string", {"field": field})
    value = value.strip()
    if not value:
        return None
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field} must be at most {max_length} characters",
            {"field": field, "max_length": max_length},
        )
    return value


def require_str(value: Any, field: str, *, max_length: int | None = None) -> str:
    result = optional_str(value, field, max_length=max_length)
    if result is None:
        raise ValidationError(f"{field} is required", {"field": field})
    return result


def parse_id_list(value: Any, field: str) -> list[int]:
    if not isinstance(value, list):
        raise ValidationError(f"{field} must be a list of ids", {"field": field})
    ids = [parse_int(v, field, minimum=1) for v in value]
    # preserve order, drop duplicates
    return list(dict.fromkeys(ids))


def optional_datetime(value: Any, field: str) -> datetime | None:
    if value is None or value == "":
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be an ISO-8601 datetime", {"field": field})
    try:
        return parse_iso_datetime(value)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", {"field": field})
