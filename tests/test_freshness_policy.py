"""
Tests for read decisions, write-time freshness windows, store ordering
and cache keys.
"""
from datetime import datetime, timezone

import pytest

from app.cache import (
    CacheEntry,
    CacheStore,
    Freshness,
    FreshnessConfig,
    FreshnessPolicy,
    fingerprint,
    is_empty_value,
    is_weekend,
    make_cache_key,
)


# =============================================================================
# FreshnessPolicy.decide
# =============================================================================

class TestDecide:
    """Read decisions for every entry state."""

    def test_missing_entry_must_fetch(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        assert policy.decide(None) is Freshness.MUST_FETCH

    def test_within_window_is_fresh(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry("v", fetched_at=clock.now - 30, freshness_window=60)
        assert policy.decide(entry) is Freshness.FRESH

    def test_expired_entry_is_stale_refresh(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry("v", fetched_at=clock.now - 61, freshness_window=60)
        assert policy.decide(entry) is Freshness.STALE_REFRESH

    def test_window_boundary_is_not_fresh(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry("v", fetched_at=clock.now - 60, freshness_window=60)
        assert policy.decide(entry) is Freshness.STALE_REFRESH

    def test_cooldown_wins_over_expiry(self, config, clock):
        """An expired entry in cooldown is served stale, not refreshed."""
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry(
            "v", fetched_at=clock.now - 600, freshness_window=60,
            cooldown_until=clock.now + 10,
        )
        assert policy.decide(entry) is Freshness.SERVE_STALE

    def test_placeholder_in_cooldown_serves_stale(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry.placeholder(cooldown_until=clock.now + 10)
        assert policy.decide(entry) is Freshness.SERVE_STALE

    def test_placeholder_after_cooldown_must_fetch(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        entry = CacheEntry.placeholder(cooldown_until=clock.now - 1)
        assert policy.decide(entry) is Freshness.MUST_FETCH


# =============================================================================
# FreshnessPolicy.window_for
# =============================================================================

class TestWindowFor:
    """Windows assigned to freshly fetched values."""

    def test_non_empty_value_gets_normal_window(self, config, clock):
        policy = FreshnessPolicy(config, is_empty=is_empty_value, clock=clock)
        assert policy.window_for(["event"]) == 60

    def test_empty_value_gets_extended_window(self, config, clock):
        """Zero qualifying items -> exactly the extended constant."""
        policy = FreshnessPolicy(config, is_empty=is_empty_value, clock=clock)
        assert policy.window_for([]) == 600

    def test_empty_window_never_shorter_than_normal(self, clock):
        cfg = FreshnessConfig(fresh_ttl=120)
        policy = FreshnessPolicy(cfg, is_empty=is_empty_value, clock=clock)
        assert policy.window_for([]) >= policy.window_for(["x"])

    def test_quiet_period_gets_extended_window(self, config, clock):
        policy = FreshnessPolicy(config, is_quiet_period=lambda now: True, clock=clock)
        assert policy.window_for(["event"]) == 600

    def test_override_wins(self, config, clock):
        policy = FreshnessPolicy(config, is_empty=is_empty_value, clock=clock)
        assert policy.window_for([], override=15) == 15

    def test_cooldown_honours_longer_retry_after(self, config, clock):
        policy = FreshnessPolicy(config, clock=clock)
        assert policy.cooldown_until(1000.0) == 1300.0
        assert policy.cooldown_until(1000.0, retry_after=900) == 1900.0
        assert policy.cooldown_until(1000.0, retry_after=5) == 1300.0


class TestHelpers:
    def test_is_empty_value(self):
        assert is_empty_value(None)
        assert is_empty_value([])
        assert is_empty_value({})
        assert not is_empty_value([1])
        assert not is_empty_value(0)

    def test_is_weekend_uses_timezone(self):
        # Friday 20:00 UTC is already Saturday in Asia/Kolkata
        friday_night = datetime(2026, 1, 9, 20, 0, tzinfo=timezone.utc).timestamp()
        assert not is_weekend("UTC", friday_night)
        assert is_weekend("Asia/Kolkata", friday_night)

    def test_is_weekend_unknown_timezone_falls_back_to_utc(self):
        saturday = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc).timestamp()
        assert is_weekend("Not/AZone", saturday)


# =============================================================================
# CacheStore
# =============================================================================

class TestCacheStore:
    """Ordering and maintenance of the entry map."""

    def test_put_and_get(self):
        store = CacheStore()
        entry = CacheEntry("v", fetched_at=10, freshness_window=5)
        assert store.put("k", entry)
        assert store.get("k") is entry
        assert len(store) == 1

    def test_fetched_at_never_goes_backwards(self):
        store = CacheStore()
        store.put("k", CacheEntry("new", fetched_at=20, freshness_window=5))

        stored = store.put("k", CacheEntry("old", fetched_at=10, freshness_window=5))

        assert not stored
        assert store.get("k").value == "new"

    def test_successive_writes_non_decreasing(self):
        store = CacheStore()
        for ts in (5, 3, 8, 8, 1, 12):
            store.put("k", CacheEntry(ts, fetched_at=ts, freshness_window=1))
        assert store.get("k").fetched_at == 12

    def test_clear(self):
        store = CacheStore()
        for key in ("calendar:a", "calendar:b", "news"):
            store.put(key, CacheEntry(key, fetched_at=1, freshness_window=1))

        assert store.clear() == 3
        assert len(store) == 0

    def test_max_entries_evicts_least_recently_used(self):
        store = CacheStore(max_entries=2)
        store.put("a", CacheEntry("a", fetched_at=1, freshness_window=1))
        store.put("b", CacheEntry("b", fetched_at=1, freshness_window=1))
        store.get("a")
        store.put("c", CacheEntry("c", fetched_at=1, freshness_window=1))

        assert store.keys() == ["a", "c"]
        assert store.evictions == 1

    def test_unbounded_by_default(self):
        store = CacheStore()
        for i in range(300):
            store.put(f"k{i}", CacheEntry(i, fetched_at=1, freshness_window=1))
        assert len(store) == 300


class TestCacheKeys:
    def test_key_is_order_independent_and_drops_none(self):
        a = make_cache_key("calendar", tz="UTC", day="01-05-2026", extra=None)
        b = make_cache_key("calendar", day="01-05-2026", tz="UTC")
        assert a == b == "calendar:day=01-05-2026:tz=UTC"

    def test_bools_become_ints(self):
        assert make_cache_key("calendar", tomorrow=True) == "calendar:tomorrow=1"

    def test_fingerprint_normalizes_whitespace_and_case(self):
        assert fingerprint("NFP  Release\n") == fingerprint("nfp release")
        assert fingerprint("nfp") != fingerprint("cpi")
        assert len(fingerprint("x")) == 16

    @pytest.mark.parametrize("length", [8, 32])
    def test_fingerprint_length(self, length):
        assert len(fingerprint("x", length=length)) == length
