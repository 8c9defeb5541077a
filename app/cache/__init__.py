"""
Freshness cache with request coalescing, cooldowns and stale-on-error.
"""
from .core import (
    CacheEntry,
    CacheMeta,
    Freshness,
    FreshnessConfig,
    Success,
    RateLimitedOutcome,
    UnavailableOutcome,
    FailedOutcome,
    Outcome,
    Fresh,
    Stale,
    Unavailable,
    ReadResult,
)
from .errors import (
    ErrorKind,
    UpstreamError,
    TransportTimeout,
    RateLimited,
    UpstreamUnavailable,
    MalformedResponse,
    ContentIncomplete,
)
from .keys import make_cache_key, fingerprint
from .store import CacheStore
from .ttl_policies import FreshnessPolicy, build_ttl_config, is_weekend, is_empty_value
from .coalescer import RequestCoalescer
from .manager import FreshnessCache, CacheRegistry

__all__ = [
    # Core types
    "CacheEntry",
    "CacheMeta",
    "Freshness",
    "FreshnessConfig",
    "Success",
    "RateLimitedOutcome",
    "UnavailableOutcome",
    "FailedOutcome",
    "Outcome",
    "Fresh",
    "Stale",
    "Unavailable",
    "ReadResult",
    # Errors
    "ErrorKind",
    "UpstreamError",
    "TransportTimeout",
    "RateLimited",
    "UpstreamUnavailable",
    "MalformedResponse",
    "ContentIncomplete",
    # Keys / store
    "make_cache_key",
    "fingerprint",
    "CacheStore",
    # Policies
    "FreshnessPolicy",
    "build_ttl_config",
    "is_weekend",
    "is_empty_value",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "FreshnessCache",
    "CacheRegistry",
]
