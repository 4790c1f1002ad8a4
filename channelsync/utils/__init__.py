"""Shared utility helpers used across channel adapters and services."""

from datetime import datetime, timezone


def safe_int(v):
    """Safely convert a value to int, returning None on failure."""
    if v is None:
        return None
    try:
        return int(v)
    except (ValueError, TypeError):
        try:
            return int(float(v))
        except (ValueError, TypeError):
            return None


def safe_float(v):
    """Safely convert a value to float, returning None on failure."""
    if v is None:
        return None
    try:
        return float(v)
    except (ValueError, TypeError):
        return None


def utc(dt):
    """Make a naive datetime UTC-aware (no-op if already aware)."""
    if dt is None:
        return None
    return dt.replace(tzinfo=timezone.utc) if dt.tzinfo is None else dt


def from_epoch(v):
    """Epoch seconds -> aware UTC datetime, or None."""
    ts = safe_int(v)
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def parse_datetime(v):
    """Parse the ISO-ish timestamps channels return. None if unparseable."""
    if not v or not isinstance(v, str):
        return None
    for fmt in ("%Y-%m-%d %H:%M:%S %z", "%Y-%m-%dT%H:%M:%S%z", "%Y-%m-%d %H:%M:%S"):
        try:
            return utc(datetime.strptime(v, fmt))
        except ValueError:
            continue
    try:
        return utc(datetime.fromisoformat(v.replace("Z", "+00:00")))
    except ValueError:
        return None
