"""UTC helpers.

The database layer stores **naive** UTC datetimes; feeds hand us epoch
seconds, epoch milliseconds or ISO-8601 strings. Everything funnels
through here so comparisons never mix aware and naive values.
"""

from datetime import datetime, timezone
from typing import Optional, Union

# Epoch values above this are treated as milliseconds (year 33658 in seconds).
_EPOCH_MS_THRESHOLD = 10**12


def utcnow() -> datetime:
    """Return the current UTC time as a naive (tzinfo=None) datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utcfromtimestamp(ts: float) -> datetime:
    """Convert a POSIX timestamp to a naive UTC datetime."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """Parse epoch seconds/millis or ISO-8601 into a naive UTC datetime.

    Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_naive_utc(value)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = value / 1000.0 if value > _EPOCH_MS_THRESHOLD else float(value)
        try:
            return utcfromtimestamp(seconds)
        except (OverflowError, OSError, ValueError):
            return None

    text = str(value).strip()
    if not text:
        return None
    if text.lstrip("-").isdigit():
        return parse_timestamp(int(text))
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    return to_naive_utc(parsed)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Render a naive UTC datetime as ISO-8601 with a trailing ``Z``."""
    if value is None:
        return None
    return to_naive_utc(value).isoformat() + "Z"
