"""
Economic calendar from the ForexFactory weekly XML feed.

The raw feed is cached once (calendar_feed); each (timezone, day) view
built from it is cached separately (calendar). Feed timestamps are UTC.
"""
import logging
import re
import time
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo

from app.cache import (
    CacheRegistry,
    FreshnessCache,
    MalformedResponse,
    ReadResult,
    Stale,
    Unavailable,
    is_weekend,
    make_cache_key,
)
from app.cache.ttl_policies import CALENDAR, CALENDAR_FEED
from app.providers.http import fetch
from app.utils.helpers import decode_entities, resolve_timezone, safe_strip

logger = logging.getLogger("sources.calendar")

ALLOWED_CURRENCIES = {"USD", "EUR", "JPY", "GBP", "AUD", "CAD", "NZD"}

NO_NEWS_MESSAGE = "No high-impact news today. Market will show less momentum."
FEED_KEY = "calendar_feed"

_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})(am|pm)$")
_DATE_RE = re.compile(r"^(\d{2})-(\d{2})-(\d{4})$")
_HOLIDAY_RE = re.compile(r"\b(holiday|bank holiday)\b", re.IGNORECASE)
_DAY_RE = re.compile(r"\bday\b", re.IGNORECASE)


@dataclass
class CalendarEvent:
    """A high-impact calendar event."""
    time: str          # "1:30pm", display timezone once localized
    title: str         # "USD · Non-Farm Employment Change"
    impact: str
    consensus: str
    previous: str
    currency: str
    date: str          # MM-DD-YYYY
    url: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class BankHoliday:
    title: str
    currency: str
    date: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CalendarDay:
    """Calendar view for one day in one timezone."""
    tz: str
    today: str
    events: List[CalendarEvent] = field(default_factory=list)
    holidays: List[BankHoliday] = field(default_factory=list)
    tomorrow: Optional[str] = None
    tomorrow_events: Optional[List[CalendarEvent]] = None

    @property
    def no_news(self) -> bool:
        return not self.events

    def to_dict(self) -> dict:
        result = {
            "source": "ff",
            "tz": self.tz,
            "today": self.today,
            "events": [e.to_dict() for e in self.events],
            "holidays": [h.to_dict() for h in self.holidays],
        }
        if self.tomorrow_events is not None:
            result["tomorrow"] = self.tomorrow
            result["tomorrowEvents"] = [e.to_dict() for e in self.tomorrow_events]
        return result


# =============================================================================
# Parsing
# =============================================================================

def parse_time_hm(value: str) -> Optional[Tuple[int, int]]:
    """'1:30pm' -> (13, 30); None for empty or 'All Day' style values."""
    m = _TIME_RE.match(safe_strip(value).lower())
    if not m:
        return None
    hour, minute, period = int(m.group(1)), int(m.group(2)), m.group(3)
    if period == "am":
        if hour == 12:
            hour = 0
    elif hour != 12:
        hour += 12
    return hour, minute


def time_sort_key(value: str) -> float:
    """Minutes since midnight; unparseable times sort last."""
    hm = parse_time_hm(value)
    if hm is None:
        return float("inf")
    return hm[0] * 60 + hm[1]


def parse_feed_date(value: str) -> Optional[Tuple[int, int, int]]:
    """'01-05-2026' (MM-DD-YYYY) -> (2026, 1, 5)."""
    m = _DATE_RE.match(safe_strip(value))
    if not m:
        return None
    return int(m.group(3)), int(m.group(1)), int(m.group(2))


def day_key(moment: datetime, tz_name: str) -> str:
    """MM-DD-YYYY of `moment` in the given timezone (the feed's date format)."""
    return moment.astimezone(ZoneInfo(tz_name)).strftime("%m-%d-%Y")


def format_time(moment: datetime, tz_name: str) -> str:
    """'1:30pm' style time of `moment` in the given timezone."""
    local = moment.astimezone(ZoneInfo(tz_name))
    hour = local.hour % 12 or 12
    period = "am" if local.hour < 12 else "pm"
    return f"{hour}:{local.minute:02d}{period}"


def _is_holiday(title: str, impact: str) -> bool:
    return bool(_HOLIDAY_RE.search(title)) or (not impact and bool(_DAY_RE.search(title)))


def parse_feed(xml_data: bytes) -> Tuple[List[CalendarEvent], List[BankHoliday]]:
    """
    Extract high-impact events and bank holidays for the allowed currencies.

    Raises:
        MalformedResponse: if the document is not parseable XML
    """
    try:
        root = ET.fromstring(xml_data)
    except ET.ParseError as e:
        raise MalformedResponse("calendar_invalid_xml", details=str(e)) from e

    events: List[CalendarEvent] = []
    holidays: List[BankHoliday] = []

    for node in root.iter("event"):
        def text(tag: str) -> str:
            return safe_strip(node.findtext(tag))

        currency = text("country")
        impact = text("impact")
        title = decode_entities(text("title"))
        date = text("date")

        if currency not in ALLOWED_CURRENCIES:
            continue

        if _is_holiday(title, impact):
            holidays.append(BankHoliday(title=f"{currency} · {title}", currency=currency, date=date))
            continue

        if impact != "High":
            continue

        events.append(CalendarEvent(
            time=text("time"),
            title=f"{currency} · {title}",
            impact="High",
            consensus=decode_entities(text("forecast")) or "—",
            previous=decode_entities(text("previous")) or "—",
            currency=currency,
            date=date,
            url=text("url"),
        ))

    return events, holidays


def localize_event(event: CalendarEvent, tz_name: str) -> CalendarEvent:
    """Move a UTC feed event into tz_name; events without a clock time keep theirs."""
    d = parse_feed_date(event.date)
    t = parse_time_hm(event.time)
    if d is None or t is None:
        return event
    moment = datetime(d[0], d[1], d[2], t[0], t[1], tzinfo=timezone.utc)
    return CalendarEvent(
        **{**event.to_dict(), "time": format_time(moment, tz_name), "date": day_key(moment, tz_name)}
    )


def localize_holiday(holiday: BankHoliday, tz_name: str) -> BankHoliday:
    """Holidays are anchored at 12:00 UTC before moving into tz_name."""
    d = parse_feed_date(holiday.date)
    if d is None:
        return holiday
    moment = datetime(d[0], d[1], d[2], 12, 0, tzinfo=timezone.utc)
    return BankHoliday(title=holiday.title, currency=holiday.currency, date=day_key(moment, tz_name))


def build_day(
    events: List[CalendarEvent],
    holidays: List[BankHoliday],
    tz_name: str,
    today: str,
    tomorrow: Optional[str] = None,
) -> CalendarDay:
    """Filter localized events to today (and tomorrow), sorted by time of day."""
    localized = [localize_event(e, tz_name) for e in events]

    def for_day(day: str) -> List[CalendarEvent]:
        return sorted((e for e in localized if e.date == day), key=lambda e: time_sort_key(e.time))

    return CalendarDay(
        tz=tz_name,
        today=today,
        events=for_day(today),
        holidays=[h for h in (localize_holiday(h, tz_name) for h in holidays) if h.date == today],
        tomorrow=tomorrow,
        tomorrow_events=for_day(tomorrow) if tomorrow else None,
    )


# =============================================================================
# Service
# =============================================================================

class CalendarService:
    """Calendar endpoint logic on top of two freshness caches."""

    def __init__(self, registry: CacheRegistry, settings, clock=time.time):
        self._settings = settings
        self._clock = clock
        self.feed_cache: FreshnessCache = registry.get(CALENDAR_FEED)
        self.day_cache: FreshnessCache = registry.register(
            CALENDAR,
            is_empty=lambda day: day.no_news,
            is_quiet_period=lambda now: is_weekend(settings.calendar_quiet_timezone, now),
        )

    def _fetch_feed(self) -> bytes:
        return fetch(
            self._settings.calendar_feed_url,
            timeout=self.feed_cache.config.fetch_timeout,
            source="calendar",
            headers={"Accept": "application/xml,text/xml,*/*"},
        ).content

    def get_feed(self, revalidate: bool = False) -> ReadResult:
        """
        Args:
            revalidate: refetch in the foreground once the feed is past its
                window instead of serving it stale; used when rebuilding a
                day so the rebuilt day never carries an expired feed
        """
        force = False
        if revalidate:
            entry = self.feed_cache.peek(FEED_KEY)
            force = (
                entry is not None
                and entry.has_value
                and not entry.is_fresh(self.feed_cache.policy.clock())
            )
        return self.feed_cache.get_or_refresh(FEED_KEY, self._fetch_feed, force_refresh=force)

    def get_day(
        self,
        tz: Optional[str] = None,
        include_tomorrow: bool = False,
        force_refresh: bool = False,
    ) -> Tuple[str, str, ReadResult]:
        """
        Calendar for today (and optionally tomorrow) in a timezone.

        Returns:
            (resolved tz, today key, read result holding a CalendarDay)
        """
        tz_name = resolve_timezone(tz, self._settings.calendar_default_timezone)
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        today = day_key(now, tz_name)
        tomorrow = day_key(now + timedelta(days=1), tz_name) if include_tomorrow else None
        key = make_cache_key("calendar", tz=tz_name, day=today, span="t2" if include_tomorrow else "t1")

        def fetch_day():
            feed = self.get_feed(revalidate=True)
            if isinstance(feed, Unavailable):
                raise feed.to_error()
            previous = self.day_cache.peek(key)
            if isinstance(feed, Stale) and feed.reason is not None and previous and previous.has_value:
                # Rebuilding from the same degraded feed adds nothing; report the feed failure
                raise Unavailable(feed.reason, details="calendar feed degraded").to_error()
            events, holidays = parse_feed(feed.value)
            day = build_day(events, holidays, tz_name, today, tomorrow)
            logger.info(
                f"Built calendar for {tz_name} {today}: "
                f"{len(day.events)} events, {len(day.holidays)} holidays"
            )
            return day

        return tz_name, today, self.day_cache.get_or_refresh(key, fetch_day, force_refresh=force_refresh)
