"""
Forex / macro headlines from Google News RSS searches.
"""
import logging
import re
import xml.etree.ElementTree as ET
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import List, Optional, Tuple

from app.cache import (
    CacheRegistry,
    FreshnessCache,
    MalformedResponse,
    ReadResult,
    UpstreamError,
    make_cache_key,
)
from app.cache.errors import most_informative
from app.cache.ttl_policies import NEWS
from app.providers.http import fetch_text_with_retry
from app.utils.helpers import decode_entities, safe_strip, time_ago, utc_iso

logger = logging.getLogger("sources.news")

_GOOGLE_NEWS = "https://news.google.com/rss/search?q={query}&hl=en-US&gl=US&ceid=US:en&when=2d"

# (query, fallback source label)
FEEDS: List[Tuple[str, str]] = [
    ("US+dollar+OR+federal+reserve+OR+DXY+OR+treasury+yields+OR+US+inflation+OR+US+CPI+OR+nonfarm+payrolls", "USD"),
    ("euro+currency+OR+ECB+OR+eurozone+economy+OR+EURUSD+OR+european+central+bank+OR+EU+inflation", "EUR"),
    ("british+pound+OR+bank+of+england+OR+GBPUSD+OR+UK+economy+OR+UK+inflation+OR+UK+interest+rate", "GBP"),
    ("japanese+yen+OR+bank+of+japan+OR+USDJPY+OR+BOJ+OR+Japan+economy+OR+Japan+inflation", "JPY"),
    ("geopolitics+economy+OR+trade+war+OR+sanctions+OR+oil+price+geopolitics+OR+China+US+trade+OR+Middle+East+oil", "GEO"),
    ("forex+market+today+OR+currency+markets+OR+central+bank+rate+decision+OR+interest+rate+decision", "FX"),
]

MAX_ITEMS_PER_FEED = 15
MAX_HEADLINES = 12
MIN_TITLE_LENGTH = 10
DEDUP_PREFIX = 40

_TRAILING_SOURCE = re.compile(r"\s*-\s*[^-]+$")


@dataclass
class Headline:
    title: str
    source: str
    url: str
    published_at: datetime

    def to_dict(self, now: Optional[float] = None) -> dict:
        return {
            "title": self.title,
            "source": self.source,
            "url": self.url,
            "publishedAt": utc_iso(self.published_at),
            "ago": time_ago(self.published_at, now),
        }


def clean_title(title: str) -> str:
    """Unescape entities and drop the trailing ' - Publisher' suffix."""
    return _TRAILING_SOURCE.sub("", decode_entities(title))


def parse_rss(xml_text: str, feed_source: str) -> List[Headline]:
    """
    Parse RSS <item> entries into headlines.

    Raises:
        MalformedResponse: if the feed is not parseable XML
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise MalformedResponse("news_invalid_xml", details=str(e)) from e

    items: List[Headline] = []
    for item in root.iter("item"):
        if len(items) >= MAX_ITEMS_PER_FEED:
            break

        raw_title = safe_strip(item.findtext("title"))
        pub_date = safe_strip(item.findtext("pubDate"))
        if not raw_title or not pub_date:
            continue

        try:
            published_at = parsedate_to_datetime(pub_date)
        except (TypeError, ValueError):
            continue
        if published_at.tzinfo is None:
            published_at = published_at.replace(tzinfo=timezone.utc)

        title = clean_title(raw_title)
        if len(title) < MIN_TITLE_LENGTH:
            continue

        items.append(Headline(
            title=title,
            source=safe_strip(item.findtext("source")) or feed_source,
            url=safe_strip(item.findtext("link")),
            published_at=published_at,
        ))

    return items


def merge_headlines(batches: List[List[Headline]], limit: int = MAX_HEADLINES) -> List[Headline]:
    """Dedup by title prefix, newest first, capped at `limit`."""
    seen = set()
    unique: List[Headline] = []
    for headline in (h for batch in batches for h in batch):
        key = headline.title[:DEDUP_PREFIX].lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(headline)

    unique.sort(key=lambda h: h.published_at, reverse=True)
    return unique[:limit]


class NewsService:
    """Aggregated headline feed with a short freshness window."""

    def __init__(self, registry: CacheRegistry):
        self.cache: FreshnessCache = registry.get(NEWS)

    def _fetch_one(self, query: str, source: str) -> List[Headline]:
        xml_text = fetch_text_with_retry(
            _GOOGLE_NEWS.format(query=query),
            timeout=self.cache.config.fetch_timeout,
            source=f"news_{source.lower()}",
        )
        return parse_rss(xml_text, source)

    def fetch_headlines(self) -> List[Headline]:
        """
        Fetch every feed in parallel.

        A failing feed only drops its own items; the fetch fails only when
        every feed failed, with the most actionable of their errors.
        """
        batches: List[List[Headline]] = []
        errors: List[UpstreamError] = []

        with ThreadPoolExecutor(max_workers=len(FEEDS)) as executor:
            futures = [
                (source, executor.submit(self._fetch_one, query, source))
                for query, source in FEEDS
            ]
            for source, future in futures:
                try:
                    batches.append(future.result())
                except UpstreamError as e:
                    logger.warning(f"News feed {source} failed: {e.code}")
                    errors.append(e)

        if not batches:
            raise most_informative(errors)

        headlines = merge_headlines(batches)
        logger.info(f"Fetched {len(headlines)} headlines from {len(batches)} feeds")
        return headlines

    def get_headlines(self, force_refresh: bool = False) -> ReadResult:
        return self.cache.get_or_refresh(
            make_cache_key("news"), self.fetch_headlines, force_refresh=force_refresh
        )
