"""
Single-flight execution per cache key.

While one caller is fetching a key, later callers for the same key block
on the in-flight slot and receive its result (or its exception) instead
of issuing their own upstream call.
"""
import threading
import time
import logging
from typing import Dict, Optional, Callable, Any, Tuple
from dataclasses import dataclass, field

from .errors import TransportTimeout

logger = logging.getLogger("cache.coalescer")


@dataclass
class Flight:
    """One in-progress call and the callers parked on it."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.monotonic)
    joined: int = 0

    def outcome(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.result


class RequestCoalescer:
    """
    At most one concurrent call of `fn` per key.

    - The first caller for a key registers a Flight and runs fn itself
    - Callers arriving meanwhile wait on the Flight's event
    - Everyone gets the same value, or the same exception re-raised
    - The slot is released in a finally block, so a failed call never
      leaves the key blocked; the next caller starts a new flight

    The lock only guards the slot map and is never held across fn().

    Usage:
        coalescer = RequestCoalescer(timeout=45)
        feed = coalescer.run_exclusive("calendar_feed", download_feed)
    """

    def __init__(self, timeout: float = 45.0):
        """
        Args:
            timeout: Max seconds a joining caller waits for the flight it joined
        """
        self._flights: Dict[str, Flight] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._started = 0
        self._joined = 0

    def _join_or_start(self, key: str) -> Tuple[Flight, bool]:
        with self._lock:
            flight = self._flights.get(key)
            if flight is not None:
                flight.joined += 1
                self._joined += 1
                return flight, False
            flight = self._flights[key] = Flight()
            self._started += 1
            return flight, True

    def run_exclusive(self, cache_key: str, fn: Callable[[], Any]) -> Any:
        """
        Run fn for cache_key unless a call for it is already in flight.

        Returns:
            fn's result, shared with every caller that joined this flight

        Raises:
            TransportTimeout: a joining caller gave up waiting
            Exception: whatever fn raised, re-raised in every caller
        """
        flight, leader = self._join_or_start(cache_key)

        if not leader:
            logger.debug(f"Joined in-flight call for {cache_key} ({flight.joined} waiting)")
            if not flight.done.wait(timeout=self._timeout):
                logger.error(f"Gave up waiting on {cache_key} after {self._timeout}s")
                raise TransportTimeout(
                    f"Request for {cache_key} timed out after {self._timeout}s"
                )
            return flight.outcome()

        try:
            flight.result = fn()
        except BaseException as e:
            flight.error = e
            logger.debug(f"Call for {cache_key} failed: {e!r}")
        finally:
            with self._lock:
                if self._flights.get(cache_key) is flight:
                    del self._flights[cache_key]
            flight.done.set()

        if flight.joined:
            logger.info(
                f"{cache_key}: 1 upstream call served {flight.joined + 1} callers "
                f"in {time.monotonic() - flight.started_at:.2f}s"
            )
        return flight.outcome()

    def is_in_flight(self, cache_key: str) -> bool:
        with self._lock:
            return cache_key in self._flights

    @property
    def active_requests(self) -> int:
        with self._lock:
            return len(self._flights)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "active_requests": len(self._flights),
                "active_keys": list(self._flights.keys()),
                "started": self._started,
                "coalesced": self._joined,
            }
