"""Timestamp normalization for heterogeneous telemetry sources.

Stores hand back timestamps as ISO-8601 strings (with or without ``Z``),
``datetime`` objects, epoch numbers in seconds, milliseconds, microseconds or
nanoseconds, or protobuf-style ``{"seconds": ..., "nanos": ...}`` mappings.
Everything is normalized to integer nanoseconds since the Unix epoch (UTC),
which is totally ordered and cheap to compare.
"""

from datetime import datetime, timezone
from typing import Any

NANOS_PER_SECOND = 1_000_000_000
NANOS_PER_MILLI = 1_000_000

# Epoch magnitude thresholds used to guess the unit of a bare number.
# 1e11 seconds is year ~5138, so anything larger must be a finer unit.
_SECONDS_LIMIT = 1e11
_MILLIS_LIMIT = 1e14
_MICROS_LIMIT = 1e17


def _from_datetime(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    delta = value - datetime(1970, 1, 1, tzinfo=timezone.utc)
    return (
        delta.days * 86_400 * NANOS_PER_SECOND
        + delta.seconds * NANOS_PER_SECOND
        + delta.microseconds * 1_000
    )


def _from_iso(value: str) -> int:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"

    # datetime.fromisoformat only keeps microseconds; preserve extra digits.
    extra_nanos = 0
    if "." in text:
        head, _, frac_and_tz = text.partition(".")
        digits = ""
        for ch in frac_and_tz:
            if not ch.isdigit():
                break
            digits += ch
        tz_part = frac_and_tz[len(digits) :]
        if len(digits) > 6:
            extra_nanos = int(digits[6:9].ljust(3, "0"))
            digits = digits[:6]
        text = f"{head}.{digits}{tz_part}" if digits else f"{head}{tz_part}"

    return _from_datetime(datetime.fromisoformat(text)) + extra_nanos


def _from_number(value: float) -> int:
    magnitude = abs(value)
    if magnitude < _SECONDS_LIMIT:
        return int(round(value * NANOS_PER_SECOND))
    if magnitude < _MILLIS_LIMIT:
        return int(round(value * NANOS_PER_MILLI))
    if magnitude < _MICROS_LIMIT:
        return int(round(value * 1_000))
    return int(value)


def normalize_timestamp(value: Any) -> int:
    """Converts a supported timestamp representation to epoch nanoseconds.

    Args:
        value: ISO string, datetime, epoch number, or a seconds/nanos mapping.

    Returns:
        Integer nanoseconds since the Unix epoch.

    Raises:
        ValueError: If the value cannot be interpreted as a timestamp.
    """
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp value: {value!r}")
    if isinstance(value, (int, float)):
        return _from_number(value)
    if isinstance(value, datetime):
        return _from_datetime(value)
    if isinstance(value, dict):
        if "seconds" in value:
            return int(value["seconds"]) * NANOS_PER_SECOND + int(
                value.get("nanos", 0)
            )
        raise ValueError(f"Unsupported timestamp mapping: {value!r}")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            raise ValueError("Empty timestamp string")
        try:
            return _from_number(float(stripped))
        except ValueError:
            pass
        try:
            return _from_iso(stripped)
        except ValueError as e:
            raise ValueError(f"Unparseable timestamp {value!r}: {e}") from e
    raise ValueError(f"Unsupported timestamp type: {type(value).__name__}")


def to_iso(nanos: int) -> str:
    """Renders epoch nanoseconds as an ISO-8601 UTC string (microsecond precision)."""
    dt = datetime.fromtimestamp(nanos / NANOS_PER_SECOND, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def nanos_to_ms(nanos: int) -> float:
    return nanos / NANOS_PER_MILLI
