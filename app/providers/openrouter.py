"""OpenRouter chat-completions client used for AI briefs.

One client talks to every model; the fallback chain decides which models
to try and in what order.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional

from app.cache.errors import ContentIncomplete, MalformedResponse
from app.providers.http import fetch_json

logger = logging.getLogger("providers.openrouter")

_CODE_FENCE_START = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_CODE_FENCE_END = re.compile(r"\s*```\s*$")
_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ``` / ```json block if present."""
    cleaned = _CODE_FENCE_START.sub("", (text or "").strip())
    return _CODE_FENCE_END.sub("", cleaned).strip()


def parse_json_object(text: str) -> Dict[str, Any]:
    """
    Parse a JSON object out of model output.

    Tries the whole (fence-stripped) text first, then the outermost
    {...} block.

    Raises:
        MalformedResponse: if no JSON object can be recovered
    """
    cleaned = strip_code_fences(text)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_OBJECT.search(cleaned)
        if not match:
            raise MalformedResponse("ai_invalid_json", details=cleaned)
        try:
            parsed = json.loads(match.group(0))
        except json.JSONDecodeError:
            logger.warning(f"JSON parse failed: {match.group(0)[:300]}")
            raise MalformedResponse("ai_invalid_json", details=match.group(0))

    if not isinstance(parsed, dict):
        raise MalformedResponse("ai_unexpected_shape", details=cleaned)
    return parsed


class OpenRouterClient:
    """
    Minimal OpenRouter client.

    complete() returns the assistant text or raises a classified
    UpstreamError (429 -> RateLimited, 5xx -> UpstreamUnavailable, timeouts
    -> TransportTimeout, empty content -> ContentIncomplete).
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://openrouter.ai/api/v1",
        referer: str = "http://localhost:8000",
        title: str = "MarketDesk",
        timeout: float = 30.0,
    ):
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._referer = referer
        self._title = title
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def complete(
        self,
        model: str,
        messages: List[Dict[str, str]],
        max_tokens: int = 600,
        temperature: float = 0.3,
    ) -> str:
        """Run one chat completion and return the trimmed assistant text."""
        logger.info(f"Calling {model} (max_tokens={max_tokens})")
        data = fetch_json(
            f"{self._base_url}/chat/completions",
            timeout=self.timeout,
            source="openrouter",
            method="POST",
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "HTTP-Referer": self._referer,
                "X-Title": self._title,
            },
            json={
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
            },
        )

        try:
            content = data["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError):
            raise MalformedResponse("openrouter_unexpected_shape", details=str(data))

        content = content.strip()
        logger.debug(f"{model} raw response ({len(content)} chars): {content[:200]}")
        if not content:
            raise ContentIncomplete("openrouter_empty_response", partial="")
        return content


def model_order(primary: Optional[str], fallbacks: List[str]) -> List[str]:
    """Primary model first, then the fallbacks, without repeats."""
    ordered: List[str] = []
    for model in [primary, *fallbacks]:
        if model and model not in ordered:
            ordered.append(model)
    return ordered
