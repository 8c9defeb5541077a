"""
AI macro desk brief.

Context (headlines, today's calendar, macro indicators) is read from the
sibling caches, then the model chain writes a JSON brief. If every model
fails, a neutral brief assembled from the same context is served and
kept only briefly so the models are retried soon.
"""
import logging
import time
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo

from app.cache import (
    CacheRegistry,
    FreshnessCache,
    MalformedResponse,
    ReadResult,
    Success,
    Unavailable,
    UpstreamError,
    make_cache_key,
)
from app.cache.ttl_policies import MACRO_DESK
from app.providers.chain import Provider, ProviderFallbackChain
from app.providers.openrouter import OpenRouterClient, model_order, parse_json_object
from app.sources.calendar import CalendarDay, CalendarService
from app.sources.macro_data import MacroDataService, MacroIndicator
from app.sources.news import Headline, NewsService

logger = logging.getLogger("sources.macro_desk")

NEW_YORK = ZoneInfo("America/New_York")
BRIEF_TITLE = "AI Macro Desk"
MAX_BULLETS = 5
MACRO_CURRENCIES = ("USD", "EUR", "GBP", "JPY")

SYSTEM_PROMPT = (
    "You are an elite FX macro strategist at a major hedge fund. You produce the "
    "morning macro desk brief that traders rely on before the day begins. You have "
    "access to live news headlines, the economic calendar, AND current macro "
    "indicators (central bank rates, CPI/inflation, GDP, unemployment) for major "
    "currencies. Use these numbers to support your analysis: reference specific rate "
    "differentials, inflation trends, and growth divergences. Be opinionated, "
    "specific, and concise. Think like a trader, not an academic. You MUST respond "
    "with valid JSON only."
)

RESPONSE_SHAPE = (
    '{"bias":"<Risk-on | Risk-off | Neutral | Risk-on (tactical) | Risk-off (tactical)>",'
    '"bullets":["<USD/rates/Fed: reference actual rate, CPI trend>",'
    '"<EUR macro: reference ECB rate, eurozone inflation/growth>",'
    '"<GBP macro: reference BoE rate, UK inflation/growth>",'
    '"<JPY/BoJ: reference BoJ rate, carry trade dynamics>",'
    '"<Key risk event + liquidity/positioning, 1 sentence>"],'
    '"notes":"<1-2 sentence tactical takeaway referencing rate differentials or macro divergences>"}'
)


@dataclass
class MacroBrief:
    bias: str
    bullets: List[str]
    notes: str = ""
    title: str = BRIEF_TITLE
    model: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class DeskContext:
    """Inputs gathered for one brief; any part may be missing."""
    headlines: List[Headline] = field(default_factory=list)
    calendar: Optional[CalendarDay] = None
    indicators: Dict[str, MacroIndicator] = field(default_factory=dict)
    session_note: str = ""
    now: Optional[datetime] = None


def session_note(now: datetime) -> str:
    """Trading session description for the New York hour of `now`."""
    hour = now.astimezone(NEW_YORK).hour
    if hour < 8:
        return "Asian session is active. London pre-open."
    if hour < 12:
        return "London session is active. NY open upcoming."
    if hour < 17:
        return "NY session overlap with London. Peak liquidity."
    if hour < 21:
        return "NY afternoon. London closed. Liquidity thinning."
    return "Asian session open. Thin liquidity period."


def hour_bucket(now: datetime) -> str:
    """'2026-01-05-h14': the brief is regenerated at most once per UTC hour."""
    utc = now.astimezone(timezone.utc)
    return f"{utc.strftime('%Y-%m-%d')}-h{utc.hour}"


# =============================================================================
# Prompt
# =============================================================================

def render_news(headlines: List[Headline], now: Optional[float] = None, limit: int = 10) -> str:
    if not headlines:
        return "No recent headlines."
    return "\n".join(
        f"- [{h.source}] {h.title} ({h.to_dict(now)['ago']})" for h in headlines[:limit]
    )


def render_calendar(day: Optional[CalendarDay]) -> str:
    if day is None:
        return "Could not fetch calendar data."

    parts = []
    if day.events:
        lines = [
            f"- {e.time} [{e.currency}] {e.title} "
            f"(impact: {e.impact}, cons: {e.consensus}, prev: {e.previous})"
            for e in day.events[:15]
        ]
        parts.append("Scheduled economic events today:\n" + "\n".join(lines))
    else:
        parts.append("No high-impact economic events scheduled today.")
    if day.holidays:
        parts.append("Bank holidays: " + ", ".join(h.title for h in day.holidays))
    return "\n\n".join(parts)


def render_indicators(indicators: Dict[str, MacroIndicator]) -> str:
    lines = [
        f"{ccy}: Rate={ind.rate}, CPI/Inflation={ind.cpi}, "
        f"GDP Growth={ind.gdp}, Unemployment={ind.unemployment}"
        for ccy, ind in indicators.items()
        if ccy in MACRO_CURRENCIES
    ]
    return "\n".join(lines) if lines else "No macro indicator data available."


def build_messages(context: DeskContext) -> List[Dict[str, str]]:
    now = context.now or datetime.now(timezone.utc)
    local = now.astimezone(NEW_YORK)
    time_str = local.strftime("%I:%M %p")
    day_str = f"{local.strftime('%A, %B')} {local.day}, {local.year}"

    user_prompt = (
        "Generate today's AI Macro Desk brief.\n\n"
        f"CURRENT TIME: {time_str} ET, {day_str}\n"
        f"SESSION: {context.session_note}\n\n"
        "=== MACRO INDICATORS (Central Bank Rates, Inflation, GDP, Jobs) ===\n"
        f"{render_indicators(context.indicators)}\n\n"
        "=== LIVE NEWS HEADLINES ===\n"
        f"{render_news(context.headlines, now.timestamp())}\n\n"
        "=== ECONOMIC CALENDAR ===\n"
        f"{render_calendar(context.calendar)}\n\n"
        "=== INSTRUCTIONS ===\n"
        "Use the macro indicators above to inform your analysis. Reference rate "
        "differentials (e.g. Fed vs BoJ), inflation divergences, and growth outlooks "
        "when explaining currency flows. Cross-reference headlines and calendar events "
        "with the underlying macro data.\n\n"
        "Respond with ONLY this JSON (no markdown, no code fences, no explanation):\n\n"
        f"{RESPONSE_SHAPE}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


# =============================================================================
# Validation and local fallback
# =============================================================================

def validate_brief(raw: str) -> MacroBrief:
    """
    Model text -> MacroBrief.

    Raises:
        MalformedResponse: no JSON object, missing bias, or no bullets
    """
    data = parse_json_object(raw)
    bias = data.get("bias")
    bullets = data.get("bullets")
    if not bias or not isinstance(bullets, list) or not bullets:
        raise MalformedResponse("macro_desk_missing_fields", details=raw)
    return MacroBrief(
        bias=str(bias),
        bullets=[str(b) for b in bullets[:MAX_BULLETS]],
        notes=str(data.get("notes") or ""),
    )


def build_local_brief(context: DeskContext) -> MacroBrief:
    """Neutral brief built from the gathered feeds, used when no model answers."""
    bullets: List[str] = []

    usd = context.indicators.get("USD")
    if usd is not None:
        bullets.append(
            f"Macro snapshot: USD rate {usd.rate}, CPI {usd.cpi}, "
            f"GDP growth {usd.gdp}, unemployment {usd.unemployment}."
        )

    bullets.extend(h.title for h in context.headlines[:2])

    day = context.calendar
    if day is not None:
        if day.holidays:
            names = ", ".join(h.title for h in day.holidays)
            bullets.append(f"Bank holidays today: {names}. Expect reduced liquidity.")
        if not day.events:
            bullets.append("No high-impact events scheduled. Range-bound conditions likely.")

    bullets.append(context.session_note)

    return MacroBrief(
        bias="Neutral",
        bullets=bullets[:MAX_BULLETS],
        notes="AI analysis temporarily unavailable. Showing summary from live feeds.",
        fallback=True,
    )


# =============================================================================
# Service
# =============================================================================

class MacroDeskService:
    """Hourly AI brief over the news, calendar and macro caches."""

    def __init__(
        self,
        registry: CacheRegistry,
        settings,
        client: OpenRouterClient,
        news: NewsService,
        calendar: CalendarService,
        macro: MacroDataService,
        clock=time.time,
    ):
        self._settings = settings
        self._client = client
        self._news = news
        self._calendar = calendar
        self._macro = macro
        self._clock = clock
        self.cache: FreshnessCache = registry.get(MACRO_DESK)

    @property
    def models(self) -> List[str]:
        return model_order(self._settings.openrouter_model, self._settings.openrouter_fallback_models)

    def gather_context(self) -> DeskContext:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        context = DeskContext(session_note=session_note(now), now=now)

        news = self._news.get_headlines()
        if isinstance(news, Unavailable):
            logger.warning(f"Macro desk without news: {news.reason.value}")
        else:
            context.headlines = news.value

        _, _, day = self._calendar.get_day()
        if isinstance(day, Unavailable):
            logger.warning(f"Macro desk without calendar: {day.reason.value}")
        else:
            context.calendar = day.value

        macro = self._macro.get_indicators()
        if isinstance(macro, Unavailable):
            logger.warning(f"Macro desk without indicators: {macro.reason.value}")
        else:
            context.indicators = macro.value

        return context

    def _provider(self, model: str) -> Provider:
        def call(params):
            return self._client.complete(
                model,
                params["messages"],
                max_tokens=params["max_tokens"],
                temperature=params["temperature"],
            )
        return Provider(name=model, call=call)

    def generate(self, key: Optional[str] = None) -> Success:
        """
        Fetcher for one hour bucket.

        When every model fails the local brief is stored, unless `key`
        already holds a model brief; then the chain error propagates and
        the cache keeps serving that brief as stale.
        """
        context = self.gather_context()
        chain = ProviderFallbackChain(
            [self._provider(m) for m in self.models],
            max_attempts=self.cache.config.max_attempts,
        )
        params = {"messages": build_messages(context), "max_tokens": 600, "temperature": 0.3}

        try:
            result = chain.run(params, validate=validate_brief)
        except UpstreamError as e:
            prior = self.cache.peek(key) if key else None
            if prior is not None and prior.has_value and not prior.value.fallback:
                logger.warning(f"All AI models failed ({e.code}), keeping brief from {prior.value.model}")
                raise
            logger.warning(f"All AI models failed ({e.code}), using local fallback")
            return Success(
                build_local_brief(context),
                ttl_override=self._settings.macro_desk_fallback_ttl_seconds,
            )

        brief = result.value
        brief.model = result.provider
        return Success(brief)

    def get_brief(self, force_refresh: bool = False) -> ReadResult:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        key = make_cache_key("macro_desk", hour=hour_bucket(now))
        return self.cache.get_or_refresh(
            key, lambda: self.generate(key), force_refresh=force_refresh
        )
