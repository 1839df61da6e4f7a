"""Accessors for schema-less provider JSON.

Notification and payment payloads are plain ``dict`` objects of unknown
shape. These helpers never raise: they return ``None`` when the value is
missing or has the wrong type.
"""

import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

Record = dict[str, Any]


def is_record(value: Any) -> bool:
    """True for JSON objects (dicts), False for arrays, scalars and None."""
    return isinstance(value, dict)


def get_nested(value: Any, path: Iterable[str]) -> Any:
    """Walk ``path`` through nested dicts, returning None on any miss."""
    current = value
    for key in path:
        if not isinstance(current, dict):
            return None
        current = current.get(key)
    return current


def as_string(value: Any) -> Optional[str]:
    """Trimmed non-empty strings, finite numbers stringified, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float) and math.isfinite(value):
        return str(int(value)) if value.is_integer() else str(value)
    return None


def as_number(value: Any) -> Optional[float]:
    """Finite numbers and numeric strings as float, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def as_identifier(value: Any) -> Optional[str]:
    """Provider ids arrive as strings or numbers; normalize truthy ones to str."""
    if not value or isinstance(value, (bool, dict, list)):
        return None
    return as_string(value)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 provider timestamp; naive values are taken as UTC."""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
