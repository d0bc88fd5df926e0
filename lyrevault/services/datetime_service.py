"""Timestamp handling: bundles carry epoch milliseconds, lax input is accepted."""

from __future__ import annotations

from datetime import datetime, timezone

import pendulum
from pendulum.parsing.exceptions import ParserError


def now_utc() -> datetime:
    """Return the current UTC datetime."""
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return the current time as integer epoch milliseconds."""
    return to_ms(now_utc())


def to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are taken as UTC)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def from_ms(value: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def parse_timestamp_ms(value: object, default: int | None = None) -> int | None:
    """Parse a lax timestamp into epoch milliseconds.

    Accepts:
    - integer or float epoch milliseconds (floats are truncated)
    - numeric strings
    - ISO 8601 strings and other formats pendulum understands
    - datetime objects

    ``None`` and empty strings return ``default``. Anything else unparseable
    raises ``ValueError``.
    """
    if value is None:
        return default
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, datetime):
        return to_ms(value)
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")

    value_str = value.strip()
    if not value_str:
        return default
    try:
        return int(float(value_str))
    except ValueError:
        pass

    try:
        parsed = pendulum.parse(value_str, tz="UTC", strict=False)
    except (ParserError, ValueError) as exc:
        raise ValueError(f"Invalid timestamp: {value!r}") from exc
    if not isinstance(parsed, pendulum.DateTime):
        # pendulum.parse returns Date for date-only strings
        parsed = pendulum.datetime(
            parsed.year, parsed.month, parsed.day, tz="UTC"  # type: ignore[union-attr]
        )
    return to_ms(parsed)


def format_iso_ms(value: int) -> str:
    """Format epoch milliseconds as ISO 8601 for display."""
    return from_ms(value).isoformat()


def archive_timestamp(dt: datetime | None = None) -> str:
    """Return a filename-safe UTC timestamp like ``2026-02-02T22-21-29``."""
    if dt is None:
        dt = now_utc()
    return dt.astimezone(timezone.utc).strftime("%Y-%m-%dT%H-%M-%S")
