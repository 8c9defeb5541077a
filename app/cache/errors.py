"""
Classified upstream failures.

Every adapter raises one of these instead of a bare exception so the
freshness layer can branch on kind rather than on message text.
"""
from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Stable error codes, also used in JSON error bodies."""
    TRANSPORT_TIMEOUT = "transport_timeout"
    RATE_LIMITED = "rate_limited"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    MALFORMED_RESPONSE = "malformed_response"
    CONTENT_INCOMPLETE = "content_incomplete"


# Higher wins when a fallback chain has to pick one error to report.
# Rate limits and outages are actionable (cooldown / stale-serve).
ERROR_PRIORITY = {
    ErrorKind.RATE_LIMITED: 4,
    ErrorKind.UPSTREAM_UNAVAILABLE: 3,
    ErrorKind.TRANSPORT_TIMEOUT: 2,
    ErrorKind.MALFORMED_RESPONSE: 1,
    ErrorKind.CONTENT_INCOMPLETE: 0,
}


class UpstreamError(Exception):
    """Base class for classified upstream failures."""

    kind: ErrorKind = ErrorKind.MALFORMED_RESPONSE
    # Worth trying again (same or next provider) without waiting out a cooldown
    retryable: bool = False

    def __init__(self, message: str = "", details: Optional[str] = None):
        super().__init__(message or self.kind.value)
        self.details = details[:200] if details else None

    @property
    def code(self) -> str:
        return self.kind.value

    @property
    def priority(self) -> int:
        return ERROR_PRIORITY[self.kind]


class TransportTimeout(UpstreamError):
    """Connection failure or the request exceeded its timeout."""
    kind = ErrorKind.TRANSPORT_TIMEOUT
    retryable = True


class RateLimited(UpstreamError):
    """Upstream answered 429 or an equivalent quota signal."""
    kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        message: str = "",
        details: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, details)
        self.retry_after = retry_after


class UpstreamUnavailable(UpstreamError):
    """Upstream server error (5xx)."""
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    retryable = True

    def __init__(
        self,
        message: str = "",
        details: Optional[str] = None,
        status: Optional[int] = None,
    ):
        super().__init__(message, details)
        self.status = status


class MalformedResponse(UpstreamError):
    """Response could not be parsed or had an unexpected shape."""
    kind = ErrorKind.MALFORMED_RESPONSE


class ContentIncomplete(UpstreamError):
    """Parsed fine, but failed content validation (e.g. truncated AI output)."""
    kind = ErrorKind.CONTENT_INCOMPLETE
    retryable = True

    def __init__(
        self,
        message: str = "",
        details: Optional[str] = None,
        partial: Optional[str] = None,
    ):
        super().__init__(message, details)
        # The rejected content, for retries that ask for a rewrite
        self.partial = partial


def surface_kind(kind: ErrorKind) -> ErrorKind:
    """Kind reported to callers once all retries are spent."""
    if kind is ErrorKind.CONTENT_INCOMPLETE:
        return ErrorKind.MALFORMED_RESPONSE
    return kind


def most_informative(errors) -> Optional[UpstreamError]:
    """Pick the error a caller can act on best; latest wins ties."""
    best: Optional[UpstreamError] = None
    for err in errors:
        if best is None or err.priority >= best.priority:
            best = err
    return best
