"""Request parameter parsing with field-level errors."""

import math
import re
from typing import Any, Mapping, Optional, Tuple

from bizdir.core.errors import ValidationError

DEFAULT_LIMIT = 10
MAX_LIMIT = 100
MAX_PAGE = 1000
MIN_TERM_LENGTH = 2
MAX_TERM_LENGTH = 200
MAX_RADIUS_KM = 100.0
DEFAULT_RADIUS_KM = 10.0

_BUSINESS_ID = re.compile(r"^[A-Za-z0-9_-]{1,200}$")
_UNSAFE_CHARS = re.compile(r"[${}<>]")


def parse_term(params: Mapping[str, Any], field: str, label: str) -> str:
    raw = params.get(field)
    if raw is None or not str(raw).strip():
        raise ValidationError(field, f"Query parameter '{field}' is required")
    term = _UNSAFE_CHARS.sub("", str(raw)).strip()
    if len(term) < MIN_TERM_LENGTH:
        raise ValidationError(field, f"{label} must be at least {MIN_TERM_LENGTH} characters")
    if len(term) > MAX_TERM_LENGTH:
        raise ValidationError(field, f"{label} must be at most {MAX_TERM_LENGTH} characters")
    return term


def parse_int(params: Mapping[str, Any], field: str, default: int, minimum: int = 1, maximum: Optional[int] = None) -> int:
    raw = params.get(field)
    if raw is None or str(raw).strip() == "":
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        raise ValidationError(field, f"'{field}' must be an integer") from None
    if value < minimum:
        raise ValidationError(field, f"'{field}' must be at least {minimum}")
    if maximum is not None and value > maximum:
        raise ValidationError(field, f"'{field}' must be at most {maximum}")
    return value


def parse_pagination(params: Mapping[str, Any]) -> Tuple[int, int]:
    page = parse_int(params, "page", 1, maximum=MAX_PAGE)
    limit = min(parse_int(params, "limit", DEFAULT_LIMIT), MAX_LIMIT)
    return page, limit


def parse_float(
    params: Mapping[str, Any],
    field: str,
    default: Optional[float] = None,
    minimum: Optional[float] = None,
    maximum: Optional[float] = None,
) -> float:
    """Parse a finite float; missing values use ``default`` or fail."""
    raw = params.get(field)
    if raw is None or str(raw).strip() == "":
        if default is None:
            raise ValidationError(field, f"Query parameter '{field}' is required")
        return default
    try:
        value = float(str(raw).strip())
    except ValueError:
        raise ValidationError(field, f"'{field}' must be a number") from None
    return check_finite(field, value, minimum, maximum)


def check_finite(field: str, value: Any, minimum: Optional[float] = None, maximum: Optional[float] = None) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise ValidationError(field, f"'{field}' must be a finite number")
    if minimum is not None and value < minimum:
        raise ValidationError(field, f"'{field}' must be at least {minimum:g}")
    if maximum is not None and value > maximum:
        raise ValidationError(field, f"'{field}' must be at most {maximum:g}")
    return float(value)


def parse_business_id(value: str) -> str:
    if not _BUSINESS_ID.match(value or ""):
        raise ValidationError("id", "Invalid business ID format")
    return value


def parse_choice(params: Mapping[str, Any], field: str, choices: Tuple[str, ...], default: str) -> str:
    value = str(params.get(field) or default).strip().lower()
    if value not in choices:
        raise ValidationError(field, f"'{field}' must be one of: {', '.join(choices)}")
    return value
