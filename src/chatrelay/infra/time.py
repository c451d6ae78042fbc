"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch_seconds(value: Any, default: datetime | None = None) -> datetime:
    """Convert a provider epoch-seconds value to an aware UTC datetime.

    WhatsApp sends timestamps as strings ("1704067200"). Anything that does
    not parse falls back to `default`, or to now when no default is given.

    Args:
        value: Epoch seconds as int, float or numeric string.
        default: Fallback timestamp.

    Returns:
        Timezone-aware UTC datetime.
    """
    try:
        seconds = float(value)
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return default if default is not None else utc_now()


def parse_iso_timestamp(value: Any, default: datetime | None = None) -> datetime:
    """Parse an ISO-8601 string (as sent by the automation system).

    Naive values are assumed to be UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except (TypeError, ValueError):
            return default if default is not None else utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
