"""Time utilities for consistent timestamp handling."""

from datetime import datetime, timezone

# Gateway timestamps above this are milliseconds (year ~5138 in seconds)
_MILLIS_THRESHOLD = 100_000_000_000


def utc_now() -> datetime:
    """Return current UTC timestamp (timezone-aware)."""
    return datetime.now(timezone.utc)


def from_epoch(value: int | float) -> datetime:
    """Convert a gateway epoch value (seconds or milliseconds) to UTC datetime.

    Raises:
        ValueError: If value is not positive or out of range.
    """
    if value <= 0:
        raise ValueError("epoch value must be positive")
    seconds = value / 1000 if value >= _MILLIS_THRESHOLD else value
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError) as e:
        raise ValueError(f"epoch value out of range: {value}") from e
