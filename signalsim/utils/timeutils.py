"""
Timestamp and trading day utilities.

This module centralises all timestamp handling.  Prices, fills and
trade lifecycle fields are carried around as timezone‑aware UTC
`pandas.Timestamp` objects and persisted as ISO strings.  Daily
statistics (daily P&L, trading days) are keyed by calendar date in a
configurable timezone.
"""

from __future__ import annotations

from typing import Any, Optional
import pandas as pd


def to_timezone(ts: Any, tz_name: str) -> pd.Timestamp:
    """Convert a timestamp‑like value to the specified timezone.

    If the timestamp is naive, it is assumed to be in UTC before
    conversion.  If it already has a timezone, it will be converted.
    """
    if not isinstance(ts, pd.Timestamp):
        ts = pd.Timestamp(ts)
    if ts.tzinfo is None:
        ts = ts.tz_localize("UTC")
    return ts.tz_convert(tz_name)


def to_utc(value: Any) -> Optional[pd.Timestamp]:
    """Parse an ISO string, epoch milliseconds or datetime into a UTC timestamp.

    Integers and floats are interpreted as milliseconds since the Unix
    epoch, which is how exchange APIs report trade times.  ``None`` and
    empty strings yield ``None``.
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return pd.Timestamp(int(value), unit="ms", tz="UTC")
    return to_timezone(value, "UTC")


def to_iso(ts: Optional[Any]) -> Optional[str]:
    """Serialise a timestamp to an ISO 8601 UTC string."""
    if ts is None:
        return None
    return to_utc(ts).isoformat()


def now_utc() -> pd.Timestamp:
    return pd.Timestamp.now(tz="UTC")


def day_key(ts: Any, tz_name: str = "UTC") -> str:
    """Return the ``YYYY-MM-DD`` calendar date of `ts` in `tz_name`."""
    return to_timezone(ts, tz_name).strftime("%Y-%m-%d")


def seconds_between(start: Any, end: Any) -> float:
    """Return the signed number of seconds from `start` to `end`."""
    return (to_utc(end) - to_utc(start)).total_seconds()
