"""Inbound rate limiting for the AI endpoints."""

import time
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from fastapi import Request


class RateLimiter:
    """
    Sliding window rate limiter keyed by client.

    Every AI brief that misses the cache costs model calls, so each client
    gets `max_requests` per `window_seconds`. Thread-safe. Clients idle for
    a whole window are swept out at most once per window, so the map only
    holds recently active clients.
    """

    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._requests: Dict[str, List[float]] = {}
        self._lock = Lock()
        self._last_sweep = clock()

    def check(self, client_id: str) -> Tuple[bool, Optional[int]]:
        """
        Record a request if the client is under its limit.

        Returns:
            (allowed, retry_after_seconds); retry_after is None when allowed
        """
        now = self._clock()
        window_start = now - self.window_seconds

        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(window_start)
                self._last_sweep = now

            recent = [ts for ts in self._requests.get(client_id, ()) if ts > window_start]

            if len(recent) >= self.max_requests:
                self._requests[client_id] = recent
                retry_after = int(min(recent) + self.window_seconds - now) + 1
                return False, max(1, retry_after)

            recent.append(now)
            self._requests[client_id] = recent
            return True, None

    def remaining(self, client_id: str) -> int:
        window_start = self._clock() - self.window_seconds
        with self._lock:
            current = [ts for ts in self._requests.get(client_id, ()) if ts > window_start]
        return max(0, self.max_requests - len(current))

    def reset(self, client_id: Optional[str] = None) -> None:
        """Forget one client, or everyone when client_id is None."""
        with self._lock:
            if client_id is None:
                self._requests.clear()
            else:
                self._requests.pop(client_id, None)

    def _sweep(self, window_start: float) -> int:
        # Caller holds the lock
        idle = [
            client_id for client_id, stamps in self._requests.items()
            if not any(ts > window_start for ts in stamps)
        ]
        for client_id in idle:
            del self._requests[client_id]
        return len(idle)

    def cleanup(self) -> int:
        """
        Drop clients with no requests in the current window.

        Returns the number of clients removed.
        """
        window_start = self._clock() - self.window_seconds
        with self._lock:
            return self._sweep(window_start)

    def __len__(self) -> int:
        with self._lock:
            return len(self._requests)


def client_id_from_request(request: Request) -> str:
    """X-Real-IP, then the first X-Forwarded-For hop, then the socket peer."""
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("x-forwarded-for") or ""
    first_hop = forwarded.split(",")[0].strip()
    if first_hop:
        return first_hop
    return request.client.host if request.client else "anonymous"
