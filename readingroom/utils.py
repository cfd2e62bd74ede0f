"""Request parsing helpers shared by routes and services."""
from __future__ import annotations

from datetime import date, datetime, timezone

from dateutil.parser import isoparse


def parse_datetime(value: object) -> datetime:
    """Parse an ISO date or datetime into a naive UTC datetime.

    Raises ValueError for anything that is not an ISO 8601 string or a
    date/datetime instance.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        parsed = isoparse(value.strip())
    else:
        raise ValueError(f"invalid date: {value!r}")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_optional_datetime(value: object) -> datetime | None:
    if value in (None, ""):
        return None
    return parse_datetime(value)


def payload_value(payload: dict, *keys: str, default=None):
    """Return the first present key; the portal frontend sends camelCase."""
    for key in keys:
        if key in payload and payload[key] not in (None, ""):
            return payload[key]
    return default


def start_of_day(value: datetime) -> datetime:
    return datetime(value.year, value.month, value.day)


def payload_text(payload: dict, *keys: str) -> str:
    """Return the stripped text for the first present key, or "" when absent.

    Raises ValueError when the value is not a string.
    """
    value = payload_value(payload, *keys)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{keys[0]} must be a string")
    return value.strip()
