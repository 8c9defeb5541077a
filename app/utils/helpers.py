"""
Utility helper functions for safe data handling.
"""
import html
import time
from datetime import datetime, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError


def safe_strip(value: Any) -> str:
    """
    Safely strip whitespace from a value, handling None.

    Args:
        value: Any value to strip

    Returns:
        Stripped string or empty string if None
    """
    if value is None:
        return ""
    return str(value).strip()


def safe_int(value: Any, default: int = 0) -> int:
    """
    Safely convert value to int, handling None and invalid values.

    Args:
        value: Any value to convert
        default: Default int if conversion fails

    Returns:
        Integer or default
    """
    if value is None:
        return default
    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def decode_entities(value: Any) -> str:
    """Unescape HTML entities (&amp;, &#39; ...) and strip."""
    return html.unescape(safe_strip(value))


def resolve_timezone(name: Optional[str], default: str) -> str:
    """
    Return `name` if it is a valid IANA timezone, else `default`.
    """
    candidate = safe_strip(name)
    if not candidate:
        return default
    try:
        ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        return default
    return candidate


def utc_iso(dt: datetime) -> str:
    """Format a datetime as ISO-8601 UTC with a Z suffix."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def time_ago(published_at: datetime, now: Optional[float] = None) -> str:
    """
    Compact relative age: "now", "12m", "3h", "2d".
    """
    ts = time.time() if now is None else now
    if published_at.tzinfo is None:
        published_at = published_at.replace(tzinfo=timezone.utc)
    minutes = int((ts - published_at.timestamp()) // 60)
    if minutes < 1:
        return "now"
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 24:
        return f"{hours}h"
    return f"{hours // 24}d"
