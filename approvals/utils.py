"""
Input helpers shared by the workflow services and blueprints. This includes:
- json_body: request JSON as a dict (400 when it is not an object).
- require_text / optional_text: trimmed strings.
- parse_optional_date / parse_optional_datetime: ISO 8601 input.
- parse_optional_int / parse_optional_bool: tolerant query/body parsing.
- page_params: page/limit pagination with sane bounds.
- utcnow: naive UTC "now" for column defaults and clocks.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any, Mapping, Optional, Tuple

from flask import request

from .errors import ValidationError

MAX_PAGE_SIZE = 200


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def json_body() -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def require_text(data: Mapping[str, Any], key: str) -> str:
    text = optional_text(data.get(key))
    if text is None:
        raise ValidationError(f"{key} is required")
    return text


def parse_optional_date(value: Any, field: str) -> Optional[date]:
    """Parse YYYY-MM-DD (a full ISO timestamp is accepted and truncated)."""
    if value is None or str(value).strip() == "":
        return None
    raw = str(value).strip()
    try:
        if len(raw) > 10:
            return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
        return date.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO date (YYYY-MM-DD)") from None


def parse_optional_datetime(value: Any, field: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp; stored naive (UTC) like every other timestamp."""
    if value is None or str(value).strip() == "":
        return None
    raw = str(value).strip().replace("Z", "+00:00")
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        raise ValidationError(f"{field} must be an ISO 8601 date/time") from None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_optional_int(value: Any) -> Optional[int]:
    """Parse optional int from query/body."""
    if value is None:
        return None
    raw = str(value).strip()
    if raw == "":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def parse_optional_bool(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def page_params(args: Mapping[str, Any], default_limit: int = 10) -> Tuple[int, int]:
    """(page, limit) from query args; page >= 1, 1 <= limit <= MAX_PAGE_SIZE."""
    page = parse_optional_int(args.get("page")) or 1
    limit = parse_optional_int(args.get("limit")) or default_limit
    return max(page, 1), min(max(limit, 1), MAX_PAGE_SIZE)
