"""Time conversion helpers for query literals and the JSON API."""

import re
from datetime import datetime, timedelta, timezone


def to_utc(value: datetime) -> datetime:
    """Normalize a datetime to UTC, treating naive values as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_rfc3339(value: datetime) -> str:
    """Render a datetime as an RFC3339 UTC literal, e.g. 2024-01-01T10:00:00.5Z."""
    value = to_utc(value)
    text = value.strftime("%Y-%m-%dT%H:%M:%S")
    if value.microsecond:
        text += f".{value.microsecond:06d}".rstrip("0")
    return text + "Z"


def nanoseconds_to_timedelta(value: int) -> timedelta:
    return timedelta(microseconds=value // 1000)


def timedelta_to_nanoseconds(value: timedelta) -> int:
    return (value.days * 86400 + value.seconds) * 1_000_000_000 + value.microseconds * 1000


def to_microseconds(value: datetime) -> int:
    """Microseconds since the Unix epoch (the unit the JSON API uses)."""
    delta = to_utc(value) - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return delta // timedelta(microseconds=1)


def from_microseconds(value: int) -> datetime:
    return datetime(1970, 1, 1, tzinfo=timezone.utc) + timedelta(microseconds=value)


_DURATION_UNITS = {
    "ns": 0.001,
    "us": 1,
    "µs": 1,
    "ms": 1000,
    "s": 1_000_000,
    "m": 60_000_000,
    "h": 3_600_000_000,
    "d": 86_400_000_000,
    "w": 604_800_000_000,
}
_DURATION_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h|d|w)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration literal such as ``1h30m``, ``250ms`` or ``1.5s``.

    Raises:
        ValueError: if the text is not a duration literal
    """
    text = text.strip()
    negative = text.startswith("-")
    body = text[1:] if negative else text
    parts = _DURATION_RE.findall(body)
    if not parts or "".join(n + u for n, u in parts) != body:
        raise ValueError(f"invalid duration: {text!r}")
    result = timedelta(microseconds=sum(float(n) * _DURATION_UNITS[u] for n, u in parts))
    return -result if negative else result
