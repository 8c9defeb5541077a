"""
Shared fixtures: a controllable clock and a fetcher that records calls.
"""
import pytest

from app.cache import FreshnessCache, FreshnessConfig, FreshnessPolicy


class FakeClock:
    """Callable clock whose time only moves when a test advances it."""

    def __init__(self, start: float = 1_767_600_000.0):  # 2026-01-05 08:00 UTC
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingFetcher:
    """
    Fetcher returning (or raising) queued results in order.

    The last queued result repeats once the queue is exhausted.
    """

    def __init__(self, *results):
        self._results = list(results)
        self.calls = 0

    def __call__(self):
        self.calls += 1
        result = self._results[0] if len(self._results) == 1 else self._results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def config():
    return FreshnessConfig(fresh_ttl=60, extended_ttl=600, cooldown=300)


@pytest.fixture
def make_cache(clock, config):
    """Build a foreground-only FreshnessCache on the fake clock."""
    def _make(cfg=None, **policy_kwargs):
        policy = FreshnessPolicy(cfg or config, clock=clock, **policy_kwargs)
        return FreshnessCache("test", policy, revalidate_in_background=False)
    return _make
