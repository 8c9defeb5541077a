"""
Tests for the HTTP adapter's error classification and the OpenRouter client.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from app.cache import (
    ContentIncomplete,
    MalformedResponse,
    RateLimited,
    TransportTimeout,
    UpstreamUnavailable,
)
from app.providers.http import fetch, fetch_json, fetch_text_with_retry
from app.providers.openrouter import OpenRouterClient, model_order, parse_json_object
from tests.conftest import FakeClock


def response(status=200, text="", json_data=None, headers=None):
    mock = MagicMock()
    mock.status_code = status
    mock.text = text
    mock.iter_content.return_value = [text.encode()]
    mock.headers = headers or {}
    if json_data is None:
        mock.json.side_effect = ValueError("no json")
    else:
        mock.json.return_value = json_data
    return mock


class TestFetch:
    """Every failure comes back as a classified UpstreamError."""

    @patch("app.providers.http.requests.request")
    def test_passes_timeout_and_user_agent(self, mock_request):
        mock_request.return_value = response(text="ok")

        fetch("https://x", timeout=3.5, source="t", headers={"Accept": "text/xml"})

        _, kwargs = mock_request.call_args
        assert kwargs["timeout"] == 3.5
        assert kwargs["headers"]["Accept"] == "text/xml"
        assert "MarketDesk" in kwargs["headers"]["User-Agent"]
        assert kwargs["stream"] is True


class TestTotalTimeout:
    """The timeout bounds the whole request, not each socket read."""

    def drip(self, clock, chunks, step):
        def iter_content(chunk_size=1):
            for _ in range(chunks):
                clock.advance(step)
                yield b"x"
        return iter_content

    @patch("app.providers.http.time")
    @patch("app.providers.http.requests.request")
    def test_slow_body_aborted_at_deadline(self, mock_request, mock_time):
        clock = FakeClock(1000.0)
        mock_time.monotonic.side_effect = clock
        slow = response(text="x" * 20)
        slow.iter_content.side_effect = self.drip(clock, chunks=20, step=0.9)
        mock_request.return_value = slow

        with pytest.raises(TransportTimeout) as exc:
            fetch("https://x", timeout=3, source="t")

        assert exc.value.code == "transport_timeout"
        slow.close.assert_called_once()
        assert clock() < 1000.0 + 3 + 1

    @patch("app.providers.http.time")
    @patch("app.providers.http.requests.request")
    def test_body_within_deadline_is_buffered(self, mock_request, mock_time):
        clock = FakeClock(1000.0)
        mock_time.monotonic.side_effect = clock
        ok = response(text="abc")
        ok.iter_content.side_effect = self.drip(clock, chunks=3, step=0.5)
        mock_request.return_value = ok

        result = fetch("https://x", timeout=3, source="t")

        assert result._content == b"xxx"
        ok.close.assert_called_once()

    @patch("app.providers.http.requests.request")
    def test_connection_dropped_mid_body(self, mock_request):
        broken = response(text="partial")
        broken.iter_content.side_effect = requests.exceptions.ChunkedEncodingError("reset")
        mock_request.return_value = broken

        with pytest.raises(TransportTimeout):
            fetch("https://x", timeout=1, source="t")

    @patch("app.providers.http.requests.request")
    def test_429_with_retry_after(self, mock_request):
        mock_request.return_value = response(429, headers={"Retry-After": "120"})
        with pytest.raises(RateLimited) as exc:
            fetch("https://x", timeout=1, source="t")
        assert exc.value.retry_after == 120.0

    @patch("app.providers.http.requests.request")
    def test_http_date_retry_after_ignored(self, mock_request):
        mock_request.return_value = response(429, headers={"Retry-After": "Wed, 21 Oct 2026 07:28:00 GMT"})
        with pytest.raises(RateLimited) as exc:
            fetch("https://x", timeout=1, source="t")
        assert exc.value.retry_after is None

    @patch("app.providers.http.requests.request")
    def test_5xx_is_unavailable(self, mock_request):
        mock_request.return_value = response(503, text="maintenance")
        with pytest.raises(UpstreamUnavailable) as exc:
            fetch("https://x", timeout=1, source="t")
        assert exc.value.status == 503

    @patch("app.providers.http.requests.request")
    def test_4xx_is_malformed(self, mock_request):
        mock_request.return_value = response(404)
        with pytest.raises(MalformedResponse):
            fetch("https://x", timeout=1, source="t")

    @patch("app.providers.http.requests.request", side_effect=requests.Timeout("read timed out"))
    def test_timeout(self, mock_request):
        with pytest.raises(TransportTimeout):
            fetch("https://x", timeout=1, source="t")

    @patch("app.providers.http.requests.request", side_effect=requests.ConnectionError("refused"))
    def test_connection_error(self, mock_request):
        with pytest.raises(TransportTimeout):
            fetch("https://x", timeout=1, source="t")

    @patch("app.providers.http.requests.request")
    def test_invalid_json(self, mock_request):
        mock_request.return_value = response(text="<html>")
        with pytest.raises(MalformedResponse):
            fetch_json("https://x", timeout=1, source="t")


class TestRetry:
    @patch("app.providers.http.requests.request")
    def test_transport_failure_retried_once(self, mock_request):
        mock_request.side_effect = [requests.ConnectionError("reset"), response(text="<rss/>")]

        assert fetch_text_with_retry("https://x", timeout=1, source="t") == "<rss/>"
        assert mock_request.call_count == 2

    @patch("app.providers.http.requests.request")
    def test_rate_limit_not_retried(self, mock_request):
        mock_request.return_value = response(429)
        with pytest.raises(RateLimited):
            fetch_text_with_retry("https://x", timeout=1, source="t")
        assert mock_request.call_count == 1


class TestOpenRouter:
    def completion(self, content):
        return response(json_data={"choices": [{"message": {"content": content}}]})

    @patch("app.providers.http.requests.request")
    def test_complete_returns_text(self, mock_request):
        mock_request.return_value = self.completion("  hello  ")
        client = OpenRouterClient("key", timeout=5)

        assert client.complete("model-a", [{"role": "user", "content": "hi"}], max_tokens=700) == "hello"

        args, kwargs = mock_request.call_args
        assert args[0] == "POST"
        assert args[1] == "https://openrouter.ai/api/v1/chat/completions"
        assert kwargs["json"]["max_tokens"] == 700
        assert kwargs["headers"]["Authorization"] == "Bearer key"

    @patch("app.providers.http.requests.request")
    def test_empty_content_is_incomplete(self, mock_request):
        mock_request.return_value = self.completion("")
        with pytest.raises(ContentIncomplete):
            OpenRouterClient("key").complete("m", [])

    @patch("app.providers.http.requests.request")
    def test_unexpected_shape(self, mock_request):
        mock_request.return_value = response(json_data={"error": {"message": "bad"}})
        with pytest.raises(MalformedResponse):
            OpenRouterClient("key").complete("m", [])

    def test_is_configured(self):
        assert OpenRouterClient("key").is_configured
        assert not OpenRouterClient(None).is_configured


class TestJsonRecovery:
    def test_fenced(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_embedded(self):
        assert parse_json_object('Sure! {"a": 1} hope it helps') == {"a": 1}

    def test_garbage(self):
        with pytest.raises(MalformedResponse):
            parse_json_object("no json here")


def test_model_order_dedups():
    assert model_order("a", ["a", "b", "", "b", "c"]) == ["a", "b", "c"]
