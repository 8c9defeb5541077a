"""
Tests for single-flight request coalescing.
"""
import threading
import time

import pytest

from app.cache import RequestCoalescer, TransportTimeout, UpstreamUnavailable


def run_concurrently(count, target):
    """Start `count` threads on target behind a barrier; return their results."""
    barrier = threading.Barrier(count)
    results = [None] * count
    errors = [None] * count

    def worker(index):
        barrier.wait()
        try:
            results[index] = target()
        except Exception as e:
            errors[index] = e

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    return results, errors


class TestSingleFlight:
    """Concurrent callers for one key share a single call."""

    def test_two_callers_share_one_invocation(self):
        """Two simultaneous callers, 50ms fetch: one call, same value."""
        coalescer = RequestCoalescer()
        calls = []

        def fetch():
            calls.append(1)
            time.sleep(0.05)
            return {"value": 42}

        started = time.monotonic()
        results, errors = run_concurrently(
            2, lambda: coalescer.run_exclusive("K1", fetch)
        )
        elapsed = time.monotonic() - started

        assert errors == [None, None]
        assert len(calls) == 1
        assert results[0] == results[1] == {"value": 42}
        assert results[0] is results[1]
        assert elapsed >= 0.05

    def test_many_callers_share_one_invocation(self):
        coalescer = RequestCoalescer()
        calls = []

        def fetch():
            calls.append(1)
            time.sleep(0.1)
            return "shared"

        results, _ = run_concurrently(8, lambda: coalescer.run_exclusive("key", fetch))

        assert len(calls) == 1
        assert results == ["shared"] * 8
        assert coalescer.get_stats()["coalesced"] == 7

    def test_different_keys_do_not_coalesce(self):
        coalescer = RequestCoalescer()
        assert coalescer.run_exclusive("a", lambda: 1) == 1
        assert coalescer.run_exclusive("b", lambda: 2) == 2
        assert coalescer.get_stats()["started"] == 2


class TestFailures:
    """Errors reach every caller and never leave a key stuck."""

    def test_error_propagates_to_all_waiters(self):
        coalescer = RequestCoalescer()

        def fetch():
            time.sleep(0.05)
            raise UpstreamUnavailable("down", status=503)

        _, errors = run_concurrently(3, lambda: coalescer.run_exclusive("k", fetch))

        assert all(isinstance(e, UpstreamUnavailable) for e in errors)

    def test_slot_is_released_after_failure(self):
        coalescer = RequestCoalescer()

        def boom():
            raise ValueError("boom")

        with pytest.raises(ValueError):
            coalescer.run_exclusive("k", boom)

        assert not coalescer.is_in_flight("k")
        assert coalescer.active_requests == 0
        assert coalescer.run_exclusive("k", lambda: "recovered") == "recovered"

    def test_waiter_times_out_with_transport_timeout(self):
        coalescer = RequestCoalescer(timeout=0.05)
        release = threading.Event()
        entered = threading.Event()

        def slow():
            entered.set()
            release.wait(2)
            return "late"

        initiator = threading.Thread(target=lambda: coalescer.run_exclusive("k", slow))
        initiator.start()
        entered.wait(1)
        try:
            with pytest.raises(TransportTimeout):
                coalescer.run_exclusive("k", lambda: "never called")
        finally:
            release.set()
            initiator.join(timeout=2)
