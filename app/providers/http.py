"""
HTTP upstream adapter.

Wraps requests with a bounded timeout and turns every failure into a
classified UpstreamError. The timeout covers the whole request: the body
is streamed against a deadline and the connection is closed once it
passes, so a slow drip of bytes cannot keep a fetch running.
"""
import logging
import time
from typing import Any, Optional

import requests
from tenacity import (
    retry,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    retry_if_exception_type,
)

from app.cache.errors import (
    TransportTimeout,
    RateLimited,
    UpstreamUnavailable,
    MalformedResponse,
)

logger = logging.getLogger("providers.http")

USER_AGENT = "Mozilla/5.0 (compatible; MarketDesk/1.0)"
CHUNK_SIZE = 8192
# Wall-clock budget for fetch_text_with_retry, all attempts included
RETRY_BUDGET_SECONDS = 30


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After in seconds; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def classify_response(response: requests.Response, source: str) -> None:
    """
    Raise the classified error for a non-2xx response.

    429 -> RateLimited, 5xx -> UpstreamUnavailable, other -> MalformedResponse
    """
    status = response.status_code
    if 200 <= status < 300:
        return

    body = (response.text or "")[:200]
    if status == 429:
        retry_after = _parse_retry_after(response.headers.get("Retry-After"))
        logger.warning(f"{source} rate limited (retry_after={retry_after})")
        raise RateLimited(f"{source}_rate_limited", details=body, retry_after=retry_after)
    if status >= 500:
        logger.warning(f"{source} upstream error {status}")
        raise UpstreamUnavailable(f"{source}_upstream_{status}", details=body, status=status)

    logger.warning(f"{source} rejected request with {status}")
    raise MalformedResponse(f"{source}_upstream_{status}", details=body)


def _read_body(response: requests.Response, deadline: float, timeout: float, source: str) -> None:
    """
    Read a streamed body into the response before `deadline`.

    A single socket read may still block for up to `timeout`, so the
    overrun past the deadline is bounded by one read.

    Raises:
        TransportTimeout: deadline passed or the connection broke mid-body
    """
    chunks = []
    try:
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if time.monotonic() > deadline:
                logger.warning(f"{source} body not complete after {timeout}s, aborting")
                raise TransportTimeout(f"{source}_timeout", details=f"body exceeded {timeout}s")
            chunks.append(chunk)
    except requests.RequestException as e:
        logger.warning(f"{source} failed while reading body: {e}")
        raise TransportTimeout(f"{source}_read_failed", details=str(e)) from e
    finally:
        response.close()
    # Later .text / .json() read from the buffered content
    response._content = b"".join(chunks)


def fetch(
    url: str,
    timeout: float,
    source: str = "upstream",
    method: str = "GET",
    **kwargs: Any,
) -> requests.Response:
    """
    Perform one HTTP request with a total timeout and classified errors.

    Args:
        url: Target URL
        timeout: Seconds for the whole request, body included
        source: Short name for logs and error codes
        method: HTTP method
        **kwargs: Passed to requests.request (headers, params, json...)

    Raises:
        TransportTimeout, RateLimited, UpstreamUnavailable, MalformedResponse
    """
    headers = {"User-Agent": USER_AGENT}
    headers.update(kwargs.pop("headers", None) or {})
    deadline = time.monotonic() + timeout

    try:
        response = requests.request(
            method, url, headers=headers, timeout=timeout, stream=True, **kwargs
        )
    except requests.Timeout as e:
        logger.warning(f"{source} timed out after {timeout}s")
        raise TransportTimeout(f"{source}_timeout", details=str(e)) from e
    except requests.ConnectionError as e:
        logger.warning(f"{source} connection failed: {e}")
        raise TransportTimeout(f"{source}_connection_failed", details=str(e)) from e
    except requests.RequestException as e:
        logger.error(f"{source} request error: {e}")
        raise MalformedResponse(f"{source}_request_failed", details=str(e)) from e

    _read_body(response, deadline, timeout, source)
    classify_response(response, source)
    return response


def fetch_text(url: str, timeout: float, source: str = "upstream", **kwargs: Any) -> str:
    return fetch(url, timeout, source, **kwargs).text


def fetch_json(url: str, timeout: float, source: str = "upstream", **kwargs: Any) -> Any:
    response = fetch(url, timeout, source, **kwargs)
    try:
        return response.json()
    except ValueError as e:
        raise MalformedResponse(
            f"{source}_invalid_json", details=(response.text or "")[:200]
        ) from e


@retry(
    stop=(stop_after_attempt(2) | stop_after_delay(RETRY_BUDGET_SECONDS)),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(TransportTimeout),
    reraise=True,
)
def fetch_text_with_retry(url: str, timeout: float, source: str = "upstream", **kwargs: Any) -> str:
    """
    fetch_text with one retry on transport failures.

    Rate limits and server errors are never retried here; they go
    straight back to the freshness layer.
    """
    return fetch_text(url, timeout, source, **kwargs)
