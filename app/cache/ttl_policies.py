"""
Freshness policy: read decisions and write-time TTL assignment.
"""
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .core import CacheEntry, Freshness, FreshnessConfig


# Resource names, one FreshnessCache each
NEWS = "news"
CALENDAR_FEED = "calendar_feed"
CALENDAR = "calendar"
MACRO_DATA = "macro_data"
MACRO_DESK = "macro_desk"
DAY_OVERVIEW = "day_overview"
REDDIT = "reddit"
INSTRUMENTS = "instruments"


def build_ttl_config(settings) -> Dict[str, FreshnessConfig]:
    """
    Freshness configuration by resource, derived from settings.

    Args:
        settings: config.settings.Settings instance

    Returns:
        Mapping of resource name -> FreshnessConfig
    """
    return {
        NEWS: FreshnessConfig(
            fresh_ttl=settings.news_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.feed_timeout_seconds,
            max_entries=settings.cache_max_entries,
        ),
        CALENDAR_FEED: FreshnessConfig(
            fresh_ttl=settings.calendar_feed_ttl_seconds,
            cooldown=settings.calendar_cooldown_seconds,
            fetch_timeout=settings.calendar_timeout_seconds,
            max_entries=settings.cache_max_entries,
        ),
        CALENDAR: FreshnessConfig(
            fresh_ttl=settings.calendar_ttl_seconds,
            extended_ttl=settings.calendar_extended_ttl_seconds,
            cooldown=settings.calendar_cooldown_seconds,
            fetch_timeout=settings.calendar_timeout_seconds,
            max_entries=settings.cache_max_entries,
        ),
        MACRO_DATA: FreshnessConfig(
            fresh_ttl=settings.macro_data_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.macro_timeout_seconds,
            max_entries=settings.cache_max_entries,
        ),
        MACRO_DESK: FreshnessConfig(
            fresh_ttl=settings.macro_desk_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.ai_timeout_seconds,
            max_attempts=settings.max_fallback_attempts,
            max_entries=settings.hourly_max_entries,
        ),
        DAY_OVERVIEW: FreshnessConfig(
            fresh_ttl=settings.day_overview_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.ai_timeout_seconds,
            max_attempts=settings.max_fallback_attempts,
            max_entries=settings.day_overview_max_entries,
        ),
        REDDIT: FreshnessConfig(
            fresh_ttl=settings.reddit_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.feed_timeout_seconds,
            max_entries=settings.cache_max_entries,
        ),
        INSTRUMENTS: FreshnessConfig(
            fresh_ttl=settings.instruments_ttl_seconds,
            cooldown=settings.default_cooldown_seconds,
            fetch_timeout=settings.ai_timeout_seconds,
            max_attempts=settings.max_fallback_attempts,
            max_entries=settings.hourly_max_entries,
        ),
    }


def is_empty_value(value: Any) -> bool:
    """Default emptiness test: None or an empty collection."""
    if value is None:
        return True
    try:
        return len(value) == 0
    except TypeError:
        return False


def is_weekend(tz_name: str, now: Optional[float] = None) -> bool:
    """
    True if it is Saturday or Sunday in the given timezone.

    Unknown timezone names fall back to UTC.
    """
    try:
        tz = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        tz = timezone.utc
    ts = time.time() if now is None else now
    return datetime.fromtimestamp(ts, tz=tz).weekday() >= 5


class FreshnessPolicy:
    """
    Decides what a read may do with a cache entry, and how long a newly
    fetched value stays fresh.

    Read decision (in order):
    - no entry                      -> MUST_FETCH
    - cooldown still running        -> SERVE_STALE (no upstream call)
    - placeholder without a value   -> MUST_FETCH
    - age < freshness window        -> FRESH
    - otherwise                     -> STALE_REFRESH

    Window assignment: the extended window applies when the value is empty
    or the resource is in a quiet period; otherwise the normal window.
    """

    def __init__(
        self,
        config: FreshnessConfig,
        is_empty: Optional[Callable[[Any], bool]] = None,
        is_quiet_period: Optional[Callable[[float], bool]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config
        self._is_empty = is_empty
        self._is_quiet_period = is_quiet_period
        self.clock = clock

    def decide(self, entry: Optional[CacheEntry], now: Optional[float] = None) -> Freshness:
        now = self.clock() if now is None else now
        if entry is None:
            return Freshness.MUST_FETCH
        if entry.in_cooldown(now):
            return Freshness.SERVE_STALE
        if not entry.has_value:
            return Freshness.MUST_FETCH
        if entry.is_fresh(now):
            return Freshness.FRESH
        return Freshness.STALE_REFRESH

    def window_for(
        self,
        value: Any,
        now: Optional[float] = None,
        override: Optional[float] = None,
    ) -> float:
        """Freshness window for a value fetched at `now`."""
        if override is not None:
            return override
        now = self.clock() if now is None else now
        if self.config.extended_ttl is None:
            return self.config.fresh_ttl
        if self._is_empty is not None and self._is_empty(value):
            return self.config.quiet_ttl
        if self._is_quiet_period is not None and self._is_quiet_period(now):
            return self.config.quiet_ttl
        return self.config.fresh_ttl

    def cooldown_until(self, now: float, retry_after: Optional[float] = None) -> float:
        """End of the cooldown that starts at `now`; honours a longer Retry-After."""
        duration = self.config.cooldown
        if retry_after is not None and retry_after > duration:
            duration = retry_after
        return now + duration
