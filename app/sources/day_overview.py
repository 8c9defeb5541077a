"""
AI trading-day overview for a client-supplied set of calendar events.

Truncated model output is common here, so each model gets a ladder of
retries (more tokens, rewrite shorter, start over) before the chain
moves on to the next model.
"""
import logging
import re
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.cache import (
    CacheRegistry,
    ContentIncomplete,
    FreshnessCache,
    ReadResult,
    fingerprint,
    make_cache_key,
)
from app.cache.ttl_policies import DAY_OVERVIEW
from app.providers.chain import Params, Provider, ProviderFallbackChain, with_params
from app.providers.openrouter import OpenRouterClient, model_order

logger = logging.getLogger("sources.day_overview")

KEY_EVENT_LIMIT = 12
PROMPT_EVENT_LIMIT = 20

REQUIRED_SECTIONS = ("DATE:", "OVERVIEW:", "SCENARIOS:")
_ENDS_WITH_PUNCTUATION = re.compile(r"[.!?\]]\s*$")
_DANGLING_WORD = re.compile(r"\b(a|an|the|and|or|to|of)\s*$")

SYSTEM_PROMPT = (
    "You are an experienced FX macro strategist. Write concise, complete trading "
    "briefs. Never output partial sentences."
)
KEEP_SHORT = "Keep it short. If space is tight, shorten sentences but keep ALL required sections."
REWRITE_PROMPT = (
    "Rewrite the SAME brief strictly shorter. Keep DATE, OVERVIEW, and SCENARIOS only, "
    "and finish every sentence. Do NOT add anything else."
)
FROM_SCRATCH_PROMPT = (
    "Try again from scratch. Output MUST contain DATE, OVERVIEW, and SCENARIOS only, "
    "and must end with a period. Keep it very short."
)


class OverviewEvent(BaseModel):
    time: str = ""
    title: str
    impact: str = "High"
    consensus: str = ""
    previous: str = ""
    currency: Optional[str] = None


class OverviewHoliday(BaseModel):
    title: str
    currency: str = ""


class DayOverviewRequest(BaseModel):
    """Request body for POST /api/day-overview."""
    date: str
    riskMode: str
    events: List[OverviewEvent] = Field(default_factory=list)
    holidays: List[OverviewHoliday] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.events and not self.holidays


def is_overview_complete(text: Optional[str]) -> bool:
    """All sections present and the text does not stop mid-sentence."""
    t = (text or "").strip()
    if not t:
        return False
    if not all(section in t for section in REQUIRED_SECTIONS):
        return False
    if not _ENDS_WITH_PUNCTUATION.search(t):
        return False
    return not _DANGLING_WORD.search(t.lower())


def overview_cache_key(body: DayOverviewRequest, model: str) -> str:
    events = ";".join(
        f"{e.time}|{e.currency or ''}|{e.title}" for e in body.events[:KEY_EVENT_LIMIT]
    )
    holidays = ";".join(h.title for h in body.holidays)
    return make_cache_key(
        "day_overview",
        model=model,
        date=body.date,
        risk=body.riskMode,
        content=fingerprint(f"{events}::{holidays}"),
    )


def build_prompt(body: DayOverviewRequest) -> str:
    lines = [
        "Create a complete, non-truncated FX trading day brief"
        + (" for a quiet holiday day." if not body.events else "."),
        f"Date: {body.date}",
        f"Risk mode: {body.riskMode}",
    ]
    if body.holidays:
        lines.append(f"Bank Holidays today: {', '.join(h.title for h in body.holidays)}")

    if body.events:
        lines.append("Events (time, ccy, title, consensus, previous):")
        lines.extend(
            f"- {e.time} {e.currency or ''} {e.title} | cons {e.consensus} | prev {e.previous}".strip()
            for e in body.events[:PROMPT_EVENT_LIMIT]
        )
        overview_rule = "- (exactly 3 bullets, each one sentence, end with a period)"
        base = "- Base: <1 sentence>."
        upside = "- Upside surprise: <1 sentence>."
        downside = "- Downside surprise: <1 sentence>."
    else:
        lines.append("No high-impact economic events are scheduled today.")
        overview_rule = (
            "- (exactly 3 bullets: mention the bank holiday(s), reduced liquidity, and "
            "likely muted momentum. Each one sentence, end with a period)"
        )
        base = "- Base: <1 sentence about expected quiet session>."
        upside = "- Upside surprise: <1 sentence about what could cause unexpected moves>."
        downside = "- Downside surprise: <1 sentence about thin-liquidity risk>."

    lines += [
        "",
        "STRICT FORMAT (must follow):",
        "DATE: <same date> | RISK: <same risk mode>",
        "OVERVIEW:",
        overview_rule,
        "SCENARIOS:",
        base,
        upside,
        downside,
        "Do not add any other sections. Do not cut off mid-sentence.",
    ]
    return "\n".join(lines)


def base_messages(prompt: str) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": f"{prompt}\n\n{KEEP_SHORT}"},
    ]


def rewrite_shorter(params: Params, partial: Optional[str]) -> Params:
    """Show the model its truncated answer and ask for a shorter one."""
    messages = list(params["messages"])
    if partial:
        messages += [
            {"role": "assistant", "content": partial},
            {"role": "user", "content": REWRITE_PROMPT},
        ]
    return {**params, "messages": messages, "max_tokens": 650}


def from_scratch(params: Params, partial: Optional[str]) -> Params:
    messages = [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": f"{params['prompt']}\n\n{FROM_SCRATCH_PROMPT}"},
    ]
    return {**params, "messages": messages, "max_tokens": 1100}


# Tried in order on the same model after an incomplete answer
ADJUSTMENTS = (with_params(max_tokens=950), rewrite_shorter, from_scratch)


def validate_overview(raw: str) -> str:
    """
    Raises:
        ContentIncomplete: missing sections or cut off mid-sentence
    """
    text = (raw or "").strip()
    if not is_overview_complete(text):
        raise ContentIncomplete("day_overview_incomplete", details=text[-200:], partial=text)
    return text


class DayOverviewService:
    def __init__(self, registry: CacheRegistry, settings, client: OpenRouterClient):
        self._settings = settings
        self._client = client
        self.cache: FreshnessCache = registry.get(DAY_OVERVIEW)

    @property
    def models(self) -> List[str]:
        return model_order(self._settings.openrouter_model, self._settings.openrouter_fallback_models)

    def _provider(self, model: str) -> Provider:
        def call(params: Params) -> str:
            return self._client.complete(
                model,
                params["messages"],
                max_tokens=params["max_tokens"],
                temperature=0.2,
            )
        return Provider(name=model, call=call, adjustments=ADJUSTMENTS)

    def generate(self, body: DayOverviewRequest) -> str:
        prompt = build_prompt(body)
        chain = ProviderFallbackChain(
            [self._provider(m) for m in self.models],
            max_attempts=self.cache.config.max_attempts,
        )
        params = {"prompt": prompt, "messages": base_messages(prompt), "max_tokens": 700}
        result = chain.run(params, validate=validate_overview)
        logger.info(
            f"Day overview for {body.date} from {result.provider} "
            f"after {len(result.attempts)} attempts"
        )
        return result.value

    def get_overview(self, body: DayOverviewRequest, force_refresh: bool = False) -> ReadResult:
        """
        Raises:
            ValueError: body has neither events nor holidays
        """
        if body.is_empty:
            raise ValueError("no_events_or_holidays")
        key = overview_cache_key(body, self._settings.openrouter_model)
        return self.cache.get_or_refresh(
            key, lambda: self.generate(body), force_refresh=force_refresh
        )
