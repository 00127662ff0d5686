from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def now_utc() -> datetime:
    """Return current time as tz-aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_utc(dt: datetime) -> datetime:
    """Return ``dt`` as tz-aware UTC. Naive values are taken to be UTC already
    (that is how they are stored in the index)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def to_db(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert a datetime to the naive-UTC form stored in DateTime columns."""
    if dt is None:
        return None
    return to_utc(dt).replace(tzinfo=None)


def from_timestamp(seconds: float) -> datetime:
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse the timestamp shapes found in library files into tz-aware UTC.

    Accepts epoch milliseconds (int/float or digit strings), ISO-8601 strings
    (with or without a trailing 'Z') and datetimes. Returns None for empty or
    unparseable values.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, (int, float)):
        try:
            return from_timestamp(float(value) / 1000.0)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if s.lstrip("-").isdigit():
            return parse_timestamp(int(s))
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            return to_utc(datetime.fromisoformat(s))
        except ValueError:
            return None
    return None


def to_iso(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return to_utc(dt).isoformat(timespec="microseconds").replace("+00:00", "Z")


def format_duration(ms: float) -> str:
    """Human-readable duration: '850ms', '12.5s', '3m 4.0s'."""
    ms = int(round(ms))
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes = ms // 60000
    seconds = (ms % 60000) / 1000
    return f"{minutes}m {seconds:.1f}s"


def format_eta(processed: float, total: float, elapsed_seconds: float) -> Optional[str]:
    """Estimate remaining time from the current rate.

    Returns '<m>m' or '<h>h <m>m', or None when no estimate is possible or it
    would exceed a day.
    """
    if processed <= 0 or elapsed_seconds <= 0:
        return None
    rate = processed / elapsed_seconds
    eta_seconds = (total - processed) / rate
    if not 0 < eta_seconds < 86400:
        return None
    eta_minutes = round(eta_seconds / 60)
    if eta_minutes > 60:
        return f"{eta_minutes // 60}h {eta_minutes % 60}m"
    return f"{eta_minutes}m"
