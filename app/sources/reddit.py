"""
Latest r/Forex posts, tagged with the currency pair they discuss.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional, Tuple
from urllib.parse import quote

from app.cache import (
    CacheRegistry,
    FreshnessCache,
    MalformedResponse,
    ReadResult,
    UpstreamError,
    make_cache_key,
)
from app.cache.errors import most_informative
from app.cache.ttl_policies import REDDIT
from app.providers.http import fetch_json
from app.utils.helpers import safe_int, safe_strip, time_ago, utc_iso

logger = logging.getLogger("sources.reddit")

REDDIT_HEADERS = {
    "User-Agent": "Mozilla/5.0 (web; MarketDesk/1.0)",
    "Accept": "application/json",
}

FOREX_NEW_URL = "https://www.reddit.com/r/Forex/new.json?limit=25&t=day"
FOREX_SEARCH_URL = (
    "https://www.reddit.com/r/Forex/search.json"
    "?q={query}&sort=new&restrict_sr=1&limit=15&t=week"
)

PAIR_QUERIES: List[Tuple[str, List[str]]] = [
    ("EURUSD", ["EURUSD", "EUR/USD", "euro dollar"]),
    ("GBPUSD", ["GBPUSD", "GBP/USD", "cable", "pound dollar"]),
    ("XAUUSD", ["XAUUSD", "XAU/USD", "gold usd", "gold price"]),
    ("USDJPY", ["USDJPY", "USD/JPY", "dollar yen"]),
]

MAX_POSTS = 80
SELFTEXT_CHARS = 280


@dataclass
class RedditPost:
    id: str
    title: str
    url: str
    permalink: str
    author: str
    score: int
    num_comments: int
    selftext: str
    pair: str
    flair: str
    published_at: datetime
    thumbnail: Optional[str]

    def to_dict(self, now: Optional[float] = None) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "url": self.url,
            "permalink": self.permalink,
            "author": self.author,
            "score": self.score,
            "numComments": self.num_comments,
            "selftext": self.selftext,
            "pair": self.pair,
            "flair": self.flair,
            "publishedAt": utc_iso(self.published_at),
            "ago": time_ago(self.published_at, now),
            "thumbnail": self.thumbnail,
        }


def detect_pair(title: str, selftext: str) -> str:
    haystack = f"{title} {selftext}".upper()
    for pair, terms in PAIR_QUERIES:
        if any(term.upper() in haystack for term in terms):
            return pair
    return "GENERAL"


def map_post(child: dict, force_pair: Optional[str] = None) -> RedditPost:
    """
    Reddit listing child -> RedditPost.

    Raises:
        MalformedResponse: child is not an object or created_utc is not a timestamp
    """
    d = child.get("data") if isinstance(child, dict) else None
    if not isinstance(d, dict):
        raise MalformedResponse("reddit_bad_post", details=repr(child))
    try:
        published_at = datetime.fromtimestamp(float(d.get("created_utc") or 0), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError) as e:
        raise MalformedResponse("reddit_bad_timestamp", details=repr(d.get("created_utc"))) from e

    permalink = f"https://www.reddit.com{safe_strip(d.get('permalink'))}"
    title = safe_strip(d.get("title"))
    selftext = d.get("selftext") or ""
    thumb = d.get("thumbnail") or ""
    return RedditPost(
        id=safe_strip(d.get("id")),
        title=title,
        url=d.get("url") or permalink,
        permalink=permalink,
        author=d.get("author") or "anonymous",
        score=safe_int(d.get("score")),
        num_comments=safe_int(d.get("num_comments")),
        selftext=selftext[:SELFTEXT_CHARS],
        pair=force_pair or detect_pair(title, selftext),
        flair=d.get("link_flair_text") or "",
        published_at=published_at,
        thumbnail=thumb if isinstance(thumb, str) and thumb.startswith("http") else None,
    )


def map_listing(children: List[dict], force_pair: Optional[str] = None) -> List[RedditPost]:
    """Map a listing, skipping children that are not usable posts."""
    posts = []
    for child in children:
        try:
            posts.append(map_post(child, force_pair))
        except MalformedResponse as e:
            logger.warning(f"Skipping reddit post: {e} {e.details}")
    return posts


def merge_posts(pair_posts: List[RedditPost], general_posts: List[RedditPost]) -> List[RedditPost]:
    """Dedup by id (pair-search posts win), newest first."""
    seen = set()
    merged: List[RedditPost] = []
    for post in [*pair_posts, *general_posts]:
        if not post.title or post.id in seen:
            continue
        seen.add(post.id)
        merged.append(post)
    merged.sort(key=lambda p: p.published_at, reverse=True)
    return merged[:MAX_POSTS]


class RedditService:
    def __init__(self, registry: CacheRegistry):
        self.cache: FreshnessCache = registry.get(REDDIT)

    def _listing(self, url: str) -> List[dict]:
        data = fetch_json(
            url,
            timeout=self.cache.config.fetch_timeout,
            source="reddit",
            headers=REDDIT_HEADERS,
        )
        listing = data.get("data") if isinstance(data, dict) else None
        children = listing.get("children") if isinstance(listing, dict) else None
        if not isinstance(children, list):
            raise MalformedResponse("reddit_bad_listing", details=repr(data))
        return children

    def fetch_posts(self) -> List[RedditPost]:
        errors: List[UpstreamError] = []
        general: List[RedditPost] = []
        by_pair: List[RedditPost] = []
        succeeded = 0

        with ThreadPoolExecutor(max_workers=len(PAIR_QUERIES) + 1) as executor:
            general_future = executor.submit(self._listing, FOREX_NEW_URL)
            pair_futures = [
                (pair, executor.submit(self._listing, FOREX_SEARCH_URL.format(query=quote(terms[0]))))
                for pair, terms in PAIR_QUERIES
            ]

            try:
                general = map_listing(general_future.result())
                succeeded += 1
            except UpstreamError as e:
                errors.append(e)

            for pair, future in pair_futures:
                try:
                    by_pair.extend(map_listing(future.result(), pair))
                    succeeded += 1
                except UpstreamError as e:
                    logger.warning(f"Reddit search for {pair} failed: {e.code}")
                    errors.append(e)

        if not succeeded:
            raise most_informative(errors)
        return merge_posts(by_pair, general)

    def get_posts(self, force_refresh: bool = False) -> ReadResult:
        return self.cache.get_or_refresh(
            make_cache_key("reddit"), self.fetch_posts, force_refresh=force_refresh
        )
