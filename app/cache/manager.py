"""
Cache orchestration: freshness decisions, single-flight refresh,
cooldown on rate limits and stale-on-error fallback.
"""
import threading
import time
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from .core import (
    CacheEntry,
    Freshness,
    FreshnessConfig,
    Fresh,
    Stale,
    Unavailable,
    ReadResult,
    Success,
    RateLimitedOutcome,
    UnavailableOutcome,
    FailedOutcome,
    outcome_from_error,
    error_from_outcome,
)
from .coalescer import RequestCoalescer
from .errors import ErrorKind, UpstreamError, RateLimited, surface_kind
from .store import CacheStore
from .ttl_policies import FreshnessPolicy

logger = logging.getLogger("cache.manager")

_OUTCOME_TYPES = (Success, RateLimitedOutcome, UnavailableOutcome, FailedOutcome)


class FreshnessCache:
    """
    Cache for one resource type.

    - Fresh entries are served from memory
    - Expired entries are served stale while a single background refresh runs
    - Missing entries are fetched in the foreground, coalesced per key
    - A rate-limited fetch starts a cooldown; no upstream calls until it ends
    - A failed refresh never evicts the previous value
    """

    def __init__(
        self,
        name: str,
        policy: FreshnessPolicy,
        coalesce_timeout: float = 45.0,
        revalidate_in_background: bool = True,
        executor: Optional[Executor] = None,
    ):
        """
        Args:
            name: Resource name, used in logs and stats
            policy: Freshness policy (also provides the clock)
            coalesce_timeout: Max seconds a joining caller waits on a fetch
            revalidate_in_background: Refresh expired entries off the read path
            executor: Pool for background refreshes (created if omitted)
        """
        self.name = name
        self.policy = policy
        self._store = CacheStore(max_entries=policy.config.max_entries)
        self._coalescer = RequestCoalescer(timeout=coalesce_timeout)
        self._background = revalidate_in_background
        self._owns_executor = executor is None and revalidate_in_background
        self._executor = executor
        if self._owns_executor:
            self._executor = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix=f"cache-revalidate-{name}"
            )

        self._revalidating: set = set()
        self._revalidating_lock = threading.Lock()

        self._stats_lock = threading.Lock()
        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "hits_cooldown": 0,
            "misses": 0,
            "fetches": 0,
            "fetch_errors": 0,
            "rate_limited": 0,
            "stale_on_error": 0,
            "revalidations": 0,
        }

    @property
    def config(self) -> FreshnessConfig:
        return self.policy.config

    def _now(self) -> float:
        return self.policy.clock()

    def _count(self, stat: str) -> None:
        with self._stats_lock:
            self._stats[stat] += 1

    # =========================================================================
    # Read path
    # =========================================================================

    def get_or_refresh(
        self,
        key: str,
        fetcher: Callable[[], Any],
        force_refresh: bool = False,
    ) -> ReadResult:
        """
        Read a key, refreshing it from upstream when needed.

        Args:
            key: Cache key (see make_cache_key)
            fetcher: No-arg callable returning an Outcome or a bare value,
                or raising UpstreamError
            force_refresh: Refetch in the foreground even if fresh; an
                active cooldown still wins

        Returns:
            Fresh, Stale or Unavailable
        """
        now = self._now()
        entry = self._store.get(key)
        decision = self.policy.decide(entry, now)

        if force_refresh and decision in (Freshness.FRESH, Freshness.STALE_REFRESH):
            logger.info(f"[{self.name}] FORCE REFRESH: {key}")
            decision = Freshness.MUST_FETCH

        if decision is Freshness.FRESH:
            logger.debug(
                f"[{self.name}] CACHE HIT (fresh): {key} "
                f"[age={entry.age_seconds(now):.1f}s]"
            )
            self._count("hits_fresh")
            return Fresh(entry.value, entry.fetched_at)

        if decision is Freshness.SERVE_STALE:
            self._count("hits_cooldown")
            remaining = entry.cooldown_until - now
            logger.info(
                f"[{self.name}] COOLDOWN: {key} [{remaining:.0f}s left]"
            )
            if entry.has_value:
                return Stale(entry.value, entry.fetched_at, ErrorKind.RATE_LIMITED)
            return Unavailable(ErrorKind.RATE_LIMITED, retry_after=remaining)

        if decision is Freshness.STALE_REFRESH and self._background:
            logger.info(
                f"[{self.name}] CACHE HIT (stale, revalidating): {key} "
                f"[age={entry.age_seconds(now):.1f}s]"
            )
            self._count("hits_stale")
            self._trigger_background_refresh(key, fetcher)
            return Stale(entry.value, entry.fetched_at, refreshing=True)

        if entry is None or not entry.has_value:
            logger.info(f"[{self.name}] CACHE MISS: {key}")
            self._count("misses")
        else:
            logger.info(
                f"[{self.name}] CACHE EXPIRED: {key} "
                f"[age={entry.age_seconds(now):.1f}s]"
            )
            self._count("hits_stale")

        try:
            fresh_entry = self.refresh(key, fetcher)
        except UpstreamError as e:
            return self._degrade(key, e)
        return Fresh(fresh_entry.value, fresh_entry.fetched_at, from_cache=False)

    def _degrade(self, key: str, err: UpstreamError) -> ReadResult:
        """Serve the last good value if there is one, else a classified error."""
        kind = surface_kind(err.kind)
        entry = self._store.get(key)
        if entry is not None and entry.has_value:
            self._count("stale_on_error")
            logger.warning(
                f"[{self.name}] Serving stale for {key} after {kind.value}"
            )
            return Stale(entry.value, entry.fetched_at, kind)

        retry_after = None
        if entry is not None and entry.cooldown_until is not None:
            retry_after = max(0.0, entry.cooldown_until - self._now())
        logger.warning(f"[{self.name}] No data for {key}: {kind.value}")
        return Unavailable(kind, details=err.details, retry_after=retry_after)

    # =========================================================================
    # Refresh path
    # =========================================================================

    def refresh(self, key: str, fetcher: Callable[[], Any]) -> CacheEntry:
        """
        Fetch and store a new value for key, single-flight.

        Raises:
            UpstreamError: classified failure (cooldown already recorded
                for rate limits)
        """
        return self._coalescer.run_exclusive(key, lambda: self._fetch_and_store(key, fetcher))

    def _fetch_and_store(self, key: str, fetcher: Callable[[], Any]) -> CacheEntry:
        # Re-check under the single-flight slot: a cooldown may have started
        # between the caller's read and now.
        current = self._store.get(key)
        if current is not None and current.in_cooldown(self._now()):
            raise RateLimited(
                f"{self.name} cooling down",
                retry_after=current.cooldown_until - self._now(),
            )

        self._count("fetches")
        started = time.monotonic()
        try:
            outcome = fetcher()
        except UpstreamError as e:
            outcome = outcome_from_error(e)
        except Exception as e:
            logger.exception(f"[{self.name}] Unexpected fetch error for {key}")
            outcome = FailedOutcome(ErrorKind.MALFORMED_RESPONSE, details=str(e))

        if not isinstance(outcome, _OUTCOME_TYPES):
            outcome = Success(outcome)

        elapsed = time.monotonic() - started
        now = self._now()

        if isinstance(outcome, Success):
            window = self.policy.window_for(outcome.value, now, outcome.ttl_override)
            entry = CacheEntry(value=outcome.value, fetched_at=now, freshness_window=window)
            self._store.put(key, entry)
            logger.info(
                f"[{self.name}] Stored {key} [ttl={window:.0f}s, fetch={elapsed:.2f}s]"
            )
            return entry

        self._count("fetch_errors")

        if isinstance(outcome, RateLimitedOutcome):
            self._count("rate_limited")
            until = self.policy.cooldown_until(now, outcome.retry_after)
            self._start_cooldown(key, until)
            logger.warning(
                f"[{self.name}] Rate limited on {key}, cooling down "
                f"{until - now:.0f}s"
            )
        else:
            logger.warning(f"[{self.name}] Fetch failed for {key}: {outcome}")

        raise error_from_outcome(outcome)

    def _start_cooldown(self, key: str, until: float) -> None:
        current = self._store.get(key)
        if current is None:
            self._store.put(key, CacheEntry.placeholder(until))
        else:
            self._store.put(key, current.with_cooldown(until))

    def _trigger_background_refresh(self, key: str, fetcher: Callable[[], Any]) -> None:
        """Trigger background refresh without blocking."""
        with self._revalidating_lock:
            if key in self._revalidating:
                logger.debug(f"[{self.name}] Already revalidating: {key}")
                return
            self._revalidating.add(key)

        def do_revalidate():
            try:
                self.refresh(key, fetcher)
                self._count("revalidations")
            except UpstreamError as e:
                logger.warning(
                    f"[{self.name}] Background revalidation failed: {key} - {e.code}"
                )
            finally:
                with self._revalidating_lock:
                    self._revalidating.discard(key)

        self._executor.submit(do_revalidate)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Current entry for key without any refresh."""
        return self._store.get(key)

    def invalidate(self, key: str) -> bool:
        removed = self._store.delete(key)
        if removed:
            logger.info(f"[{self.name}] Invalidated cache: {key}")
        return removed

    def clear(self) -> int:
        count = self._store.clear()
        logger.info(f"[{self.name}] Cleared {count} cache entries")
        return count

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._stats_lock:
            stats = dict(self._stats)
        hits = stats["hits_fresh"] + stats["hits_stale"] + stats["hits_cooldown"]
        total = hits + stats["misses"]
        stats["entries"] = len(self._store)
        stats["evictions"] = self._store.evictions
        stats["hit_rate_percent"] = round(hits / total * 100, 1) if total else 0
        stats["coalescer"] = self._coalescer.get_stats()
        with self._revalidating_lock:
            stats["revalidating_count"] = len(self._revalidating)
        return stats


class CacheRegistry:
    """
    Owns one FreshnessCache per resource type.

    Created once at application start (see app.main lifespan) and shut
    down with the process; there is no module-level cache state.
    """

    def __init__(
        self,
        configs: Dict[str, FreshnessConfig],
        coalesce_timeout: float = 45.0,
        revalidation_workers: int = 4,
        clock: Callable[[], float] = time.time,
        revalidate_in_background: bool = True,
    ):
        self._configs = dict(configs)
        self._coalesce_timeout = coalesce_timeout
        self._clock = clock
        self._background = revalidate_in_background
        self._executor = ThreadPoolExecutor(
            max_workers=revalidation_workers,
            thread_name_prefix="cache-revalidate",
        )
        self._caches: Dict[str, FreshnessCache] = {}
        self._lock = threading.Lock()

    def register(
        self,
        name: str,
        is_empty: Optional[Callable[[Any], bool]] = None,
        is_quiet_period: Optional[Callable[[float], bool]] = None,
    ) -> FreshnessCache:
        """Create the cache for a resource, attaching its content rules."""
        if name not in self._configs:
            raise KeyError(f"No freshness config for resource '{name}'")
        policy = FreshnessPolicy(
            self._configs[name],
            is_empty=is_empty,
            is_quiet_period=is_quiet_period,
            clock=self._clock,
        )
        cache = FreshnessCache(
            name,
            policy,
            coalesce_timeout=self._coalesce_timeout,
            revalidate_in_background=self._background,
            executor=self._executor,
        )
        with self._lock:
            # First registration wins if two threads race here
            return self._caches.setdefault(name, cache)

    def get(self, name: str) -> FreshnessCache:
        """Cache for a resource; registered with default rules on first use."""
        with self._lock:
            cache = self._caches.get(name)
        if cache is not None:
            return cache
        return self.register(name)

    __getitem__ = get

    def clear(self) -> int:
        with self._lock:
            caches = list(self._caches.values())
        return sum(cache.clear() for cache in caches)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            caches = dict(self._caches)
        return {name: cache.get_stats() for name, cache in caches.items()}

    def shutdown(self, wait: bool = False) -> None:
        logger.info("Shutting down cache registry")
        self._executor.shutdown(wait=wait)
