"""
Core cache data structures.
"""
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar, Union

from .errors import (
    ErrorKind,
    UpstreamError,
    TransportTimeout,
    RateLimited,
    UpstreamUnavailable,
    MalformedResponse,
    ContentIncomplete,
)

V = TypeVar("V")


class Freshness(Enum):
    """Decision taken by the freshness policy for one read."""
    MUST_FETCH = "must_fetch"          # nothing usable cached
    FRESH = "fresh"                    # within its window
    STALE_REFRESH = "stale_refresh"    # serve stale, refresh
    SERVE_STALE = "serve_stale"        # cooldown active, no refresh allowed


def iso_timestamp(ts: float) -> str:
    """Epoch seconds to an ISO-8601 UTC string."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class FreshnessConfig:
    """
    Per-resource freshness settings, supplied by the endpoint layer.

    All durations are in seconds.
    """
    fresh_ttl: float
    extended_ttl: Optional[float] = None  # empty result / quiet period
    cooldown: float = 600.0
    fetch_timeout: float = 10.0
    max_attempts: int = 1
    max_entries: Optional[int] = None  # LRU bound on stored keys

    @property
    def quiet_ttl(self) -> float:
        return self.extended_ttl if self.extended_ttl is not None else self.fresh_ttl


@dataclass(frozen=True)
class CacheEntry:
    """
    One cached value plus its freshness metadata.

    Entries are immutable; updates replace the whole entry so readers never
    see a half-written one. A placeholder entry (has_value=False) only
    carries a cooldown.
    """
    value: Any
    fetched_at: float
    freshness_window: float
    cooldown_until: Optional[float] = None
    has_value: bool = True

    @classmethod
    def placeholder(cls, cooldown_until: float) -> "CacheEntry":
        return cls(
            value=None,
            fetched_at=0.0,
            freshness_window=0.0,
            cooldown_until=cooldown_until,
            has_value=False,
        )

    def age_seconds(self, now: float) -> float:
        """Seconds since data was fetched."""
        return now - self.fetched_at

    def is_fresh(self, now: float) -> bool:
        return self.has_value and self.age_seconds(now) < self.freshness_window

    def in_cooldown(self, now: float) -> bool:
        return self.cooldown_until is not None and now < self.cooldown_until

    def with_cooldown(self, cooldown_until: float) -> "CacheEntry":
        return replace(self, cooldown_until=cooldown_until)


# =============================================================================
# Fetch outcomes (what an upstream adapter reports)
# =============================================================================

@dataclass(frozen=True)
class Success(Generic[V]):
    value: V
    # Fetcher-chosen freshness window, bypassing the policy
    ttl_override: Optional[float] = None


@dataclass(frozen=True)
class RateLimitedOutcome:
    retry_after: Optional[float] = None
    details: Optional[str] = None


@dataclass(frozen=True)
class UnavailableOutcome:
    details: Optional[str] = None


@dataclass(frozen=True)
class FailedOutcome:
    code: ErrorKind = ErrorKind.MALFORMED_RESPONSE
    details: Optional[str] = None


Outcome = Union[Success, RateLimitedOutcome, UnavailableOutcome, FailedOutcome]


def outcome_from_error(err: UpstreamError) -> Outcome:
    """Classify a raised upstream error as an outcome."""
    if err.kind is ErrorKind.RATE_LIMITED:
        return RateLimitedOutcome(
            retry_after=getattr(err, "retry_after", None), details=err.details
        )
    if err.kind is ErrorKind.UPSTREAM_UNAVAILABLE:
        return UnavailableOutcome(details=err.details)
    return FailedOutcome(code=err.kind, details=err.details)


def error_from_outcome(outcome: Outcome) -> UpstreamError:
    """Inverse of outcome_from_error for non-success outcomes."""
    if isinstance(outcome, RateLimitedOutcome):
        return RateLimited(details=outcome.details, retry_after=outcome.retry_after)
    if isinstance(outcome, UnavailableOutcome):
        return UpstreamUnavailable(details=outcome.details)
    if isinstance(outcome, FailedOutcome):
        cls = {
            ErrorKind.TRANSPORT_TIMEOUT: TransportTimeout,
            ErrorKind.CONTENT_INCOMPLETE: ContentIncomplete,
            ErrorKind.RATE_LIMITED: RateLimited,
            ErrorKind.UPSTREAM_UNAVAILABLE: UpstreamUnavailable,
        }.get(outcome.code, MalformedResponse)
        return cls(details=outcome.details)
    raise TypeError(f"Not a failure outcome: {outcome!r}")


# =============================================================================
# Read results (what an endpoint receives)
# =============================================================================

@dataclass(frozen=True)
class Fresh(Generic[V]):
    value: V
    fetched_at: float
    from_cache: bool = True


@dataclass(frozen=True)
class Stale(Generic[V]):
    value: V
    fetched_at: float
    # None means plain stale-while-revalidate, no failure involved
    reason: Optional[ErrorKind] = None
    refreshing: bool = False


@dataclass(frozen=True)
class Unavailable:
    reason: ErrorKind
    details: Optional[str] = None
    retry_after: Optional[float] = None

    def to_error(self) -> UpstreamError:
        """Re-raise form, for a fetcher that depends on another cache."""
        if self.reason is ErrorKind.RATE_LIMITED:
            return RateLimited(details=self.details, retry_after=self.retry_after)
        return error_from_outcome(FailedOutcome(self.reason, self.details))


ReadResult = Union[Fresh, Stale, Unavailable]


@dataclass
class CacheMeta:
    """
    Metadata about a cache access, included in API responses.
    """
    generated_at: str
    cached: bool
    stale: bool = False
    error: Optional[str] = None
    extra: dict = field(default_factory=dict)

    @classmethod
    def from_result(cls, result: ReadResult) -> "CacheMeta":
        if isinstance(result, Fresh):
            return cls(
                generated_at=iso_timestamp(result.fetched_at),
                cached=result.from_cache,
            )
        if isinstance(result, Stale):
            return cls(
                generated_at=iso_timestamp(result.fetched_at),
                cached=True,
                stale=True,
                error=result.reason.value if result.reason else None,
            )
        raise TypeError("Unavailable results carry no cache metadata")

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON response."""
        result = {
            "generatedAt": self.generated_at,
            "cached": self.cached,
        }
        if self.stale:
            result["stale"] = True
        if self.error:
            result["error"] = self.error
        result.update(self.extra)
        return result
