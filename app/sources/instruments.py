"""
AI instrument grid: a bias, confidence and short read for each tracked
FX pair, built from three inputs.

- News: the cached headlines drive direction
- Technicals: 1h candles from the Yahoo chart API give trend, momentum
  and the nearest support / resistance
- Macro: rates, CPI and growth frame the background

One grid is generated per UTC hour. When no model answers, a rule-based
grid from headline keywords and the technicals is served briefly instead.
"""
import json
import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

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
from app.cache.ttl_policies import INSTRUMENTS
from app.providers.chain import Provider, ProviderFallbackChain
from app.providers.http import fetch_json
from app.providers.openrouter import (
    OpenRouterClient,
    model_order,
    parse_json_object,
    strip_code_fences,
)
from app.sources.calendar import CalendarDay, CalendarService
from app.sources.macro_data import MacroDataService, MacroIndicator
from app.sources.macro_desk import NEW_YORK, hour_bucket, render_indicators, render_news
from app.sources.news import Headline, NewsService

logger = logging.getLogger("sources.instruments")


@dataclass(frozen=True)
class Instrument:
    symbol: str
    display_name: str
    chart_symbol: str

    @property
    def is_yen(self) -> bool:
        return "JPY" in self.symbol

    def fmt(self, price: float) -> str:
        return f"{price:.3f}" if self.is_yen else f"{price:.5f}"


TRACKED = (
    Instrument("EURUSD", "Euro / Dollar", "EURUSD=X"),
    Instrument("GBPUSD", "Cable", "GBPUSD=X"),
    Instrument("USDJPY", "Dollar / Yen", "USDJPY=X"),
)

CHART_URL = "https://query1.finance.yahoo.com/v8/finance/chart/{symbol}?interval=1h&range=5d"
CHART_HEADERS = {"User-Agent": "Mozilla/5.0 (compatible; MarketDesk/1.0)"}

MIN_CANDLES = 10
H1_CANDLES = 6
H4_CANDLES = 24
MIN_CONFIDENCE = 30
MAX_CONFIDENCE = 95

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")


# =============================================================================
# Types
# =============================================================================

@dataclass
class TechnicalSnapshot:
    symbol: str
    price: float
    h1_trend: str
    h1_change_pct: float
    h1_high: float
    h1_low: float
    h1_candles_up: int
    h1_candles_down: int
    h4_trend: str
    h4_change_pct: float
    h4_high: float
    h4_low: float
    daily_high: float
    daily_low: float
    daily_change_pct: float
    momentum: str
    nearest_support: float
    nearest_resistance: float


@dataclass
class InstrumentAnalysis:
    symbol: str
    display_name: str
    bias: str  # "Bullish" | "Bearish"
    confidence: int
    summary: str = ""
    news_driver: str = ""
    technical_levels: str = ""
    macro_backdrop: str = ""

    def to_dict(self) -> dict:
        return {
            "symbol": self.symbol,
            "displayName": self.display_name,
            "bias": self.bias,
            "confidence": self.confidence,
            "summary": self.summary,
            "newsDriver": self.news_driver,
            "technicalLevels": self.technical_levels,
            "macroBackdrop": self.macro_backdrop,
        }


@dataclass
class InstrumentGrid:
    instruments: List[InstrumentAnalysis]
    model: Optional[str] = None
    fallback: bool = False

    def to_dict(self) -> dict:
        return {
            "instruments": [i.to_dict() for i in self.instruments],
            "model": self.model,
            "fallback": self.fallback,
        }


@dataclass
class GridContext:
    """Inputs gathered for one grid; any part may be missing."""
    headlines: List[Headline] = field(default_factory=list)
    calendar: Optional[CalendarDay] = None
    indicators: Dict[str, MacroIndicator] = field(default_factory=dict)
    technicals: Dict[str, TechnicalSnapshot] = field(default_factory=dict)
    now: Optional[datetime] = None


# =============================================================================
# Technicals
# =============================================================================

def _positive(values: List[float]) -> List[float]:
    return [v for v in values if v > 0]


def _pct(price: float, start: float) -> float:
    return (price - start) / start * 100


def _trend(change_pct: float, threshold: float) -> str:
    if change_pct > threshold:
        return "up"
    if change_pct < -threshold:
        return "down"
    return "flat"


def _score(change_pct: float, threshold: float) -> int:
    if change_pct > threshold:
        return 1
    if change_pct < -threshold:
        return -1
    return 0


def compute_technicals(
    symbol: str,
    closes: List[float],
    highs: List[float],
    lows: List[float],
) -> TechnicalSnapshot:
    """
    Trend, momentum and key levels from hourly candles (oldest first).

    Missing candles are passed as 0 and ignored.

    Raises:
        MalformedResponse: fewer than MIN_CANDLES usable closes
    """
    if len(_positive(closes)) < MIN_CANDLES:
        raise MalformedResponse("chart_too_short", details=f"{symbol}: {len(closes)} candles")
    price = closes[-1] or closes[-2]
    if not price:
        raise MalformedResponse("chart_no_price", details=symbol)

    h1_closes = _positive(closes[-H1_CANDLES:])
    h1_highs = _positive(highs[-H1_CANDLES:])
    h1_lows = _positive(lows[-H1_CANDLES:])
    h1_change = _pct(price, h1_closes[0] if h1_closes else price)
    steps = list(zip(h1_closes, h1_closes[1:]))

    h4_closes = _positive(closes[-H4_CANDLES:])
    h4_highs = _positive(highs[-H4_CANDLES:])
    h4_lows = _positive(lows[-H4_CANDLES:])
    h4_change = _pct(price, h4_closes[0] if h4_closes else price)

    daily_change = _pct(price, _positive(closes)[0])

    score = _score(h1_change, 0.02) + _score(h4_change, 0.05)
    if score >= 1:
        momentum = "bullish"
    elif score <= -1:
        momentum = "bearish"
    else:
        momentum = "neutral"

    recent_highs = h4_highs or [price]
    recent_lows = h4_lows or [price]
    above = sorted(h for h in recent_highs if h > price)
    below = sorted((low for low in recent_lows if low < price), reverse=True)

    return TechnicalSnapshot(
        symbol=symbol,
        price=price,
        h1_trend=_trend(h1_change, 0.03),
        h1_change_pct=round(h1_change, 3),
        h1_high=max(h1_highs + [price]),
        h1_low=min(h1_lows + [price]),
        h1_candles_up=sum(1 for a, b in steps if b > a),
        h1_candles_down=sum(1 for a, b in steps if b < a),
        h4_trend=_trend(h4_change, 0.08),
        h4_change_pct=round(h4_change, 3),
        h4_high=max(h4_highs + [price]),
        h4_low=min(h4_lows + [price]),
        daily_high=max(_positive(highs) + [price]),
        daily_low=min(_positive(lows) + [price]),
        daily_change_pct=round(daily_change, 3),
        momentum=momentum,
        nearest_support=below[0] if below else min(recent_lows),
        nearest_resistance=above[0] if above else max(recent_highs),
    )


def parse_chart(data, symbol: str) -> TechnicalSnapshot:
    """
    Yahoo chart JSON -> TechnicalSnapshot.

    Raises:
        MalformedResponse: missing result block or too few candles
    """
    try:
        result = data["chart"]["result"][0]
        quote = result["indicators"]["quote"][0]
        timestamps = result.get("timestamp") or []
    except (KeyError, IndexError, TypeError) as e:
        raise MalformedResponse("chart_missing_result", details=repr(data)) from e
    if len(timestamps) < MIN_CANDLES:
        raise MalformedResponse("chart_too_short", details=f"{symbol}: {len(timestamps)} candles")

    def series(name: str) -> List[float]:
        values = quote.get(name) or []
        try:
            return [float(v) if v is not None else 0.0 for v in values]
        except (TypeError, ValueError) as e:
            raise MalformedResponse("chart_bad_series", details=f"{symbol} {name}") from e

    return compute_technicals(symbol, series("close"), series("high"), series("low"))


def render_technicals(technicals: Dict[str, TechnicalSnapshot]) -> str:
    blocks = []
    for inst in TRACKED:
        s = technicals.get(inst.symbol)
        if s is None:
            continue
        fmt = inst.fmt
        blocks.append(
            f"{s.symbol}: Price={fmt(s.price)}\n"
            f"  1H: trend={s.h1_trend}, change={s.h1_change_pct}%, high={fmt(s.h1_high)}, "
            f"low={fmt(s.h1_low)}, candles(up={s.h1_candles_up}/down={s.h1_candles_down})\n"
            f"  4H: trend={s.h4_trend}, change={s.h4_change_pct}%, high={fmt(s.h4_high)}, "
            f"low={fmt(s.h4_low)}\n"
            f"  Daily: change={s.daily_change_pct}%, high={fmt(s.daily_high)}, low={fmt(s.daily_low)}\n"
            f"  Momentum: {s.momentum}\n"
            f"  Key Levels: support={fmt(s.nearest_support)}, resistance={fmt(s.nearest_resistance)}"
        )
    return "\n\n".join(blocks) if blocks else "Technical data unavailable."


# =============================================================================
# Prompt
# =============================================================================

SYSTEM_PROMPT = (
    "You are an elite FX trader at a top-tier prop desk, known for blending NEWS FLOW "
    "with TECHNICAL ANALYSIS and MACRO context.\n\n"
    "Your analysis methodology (in order of priority):\n"
    "1. NEWS FLOW (40% weight): What are the latest headlines saying? Which currencies "
    "are being mentioned? What's the sentiment? Breaking news > old news.\n"
    "2. TECHNICALS (30% weight): What does 1H and 4H price action show? Trend direction, "
    "momentum, key support/resistance levels. Use the actual price data provided.\n"
    "3. MACRO (30% weight): Central bank rates, CPI, GDP. These set the background but "
    "rarely change intraday bias.\n\n"
    "RULES:\n"
    "- Your summary MUST reference at least one specific headline or news event AND one "
    "technical level/trend.\n"
    "- Never write a purely macro summary (e.g. \"rates favor USD\"). That's lazy analysis.\n"
    "- Confidence should reflect how aligned all three pillars are. If news says one thing "
    "but technicals say another, lower confidence.\n"
    "- Respond with ONLY valid JSON. No code fences, no explanation."
)

RESPONSE_SHAPE = json.dumps({
    "instruments": [
        {
            "symbol": inst.symbol,
            "displayName": inst.display_name,
            "bias": "...",
            "confidence": 65,
            "summary": "...",
            "newsDriver": "...",
            "technicalLevels": "...",
            "macroBackdrop": "...",
        }
        for inst in TRACKED
    ]
}, separators=(",", ":"))


def render_events(day: Optional[CalendarDay]) -> str:
    if day is None:
        return "Could not fetch calendar."
    if not day.events:
        return "No high-impact events today."
    lines = []
    for e in day.events[:10]:
        extra = "".join([
            f", cons: {e.consensus}" if e.consensus and e.consensus != "-" else "",
            f", prev: {e.previous}" if e.previous and e.previous != "-" else "",
        ])
        lines.append(f"- {e.time} [{e.currency}] {e.title} ({e.impact}{extra})")
    return "\n".join(lines)


def build_messages(context: GridContext) -> List[Dict[str, str]]:
    now = context.now or datetime.now(timezone.utc)
    time_str = now.astimezone(NEW_YORK).strftime("%I:%M %p")
    pairs = ", ".join(f"{i.symbol} ({i.display_name})" for i in TRACKED)

    user_prompt = (
        f"Analyse these FX pairs: {pairs}\n\n"
        f"CURRENT TIME: {time_str} ET\n\n"
        "=== PILLAR 1: LIVE NEWS (most important) ===\n"
        f"{render_news(context.headlines, now.timestamp(), limit=15)}\n\n"
        "=== PILLAR 2: TECHNICAL DATA (1H & 4H) ===\n"
        f"{render_technicals(context.technicals)}\n\n"
        "=== PILLAR 3: MACRO BACKDROP ===\n"
        f"{render_indicators(context.indicators)}\n\n"
        "=== ECONOMIC CALENDAR ===\n"
        f"{render_events(context.calendar)}\n\n"
        "=== INSTRUCTIONS ===\n"
        "For each pair, provide:\n"
        "- bias: \"Bullish\" or \"Bearish\" (for the pair, EURUSD Bullish = EUR strength)\n"
        "- confidence: 30-95 (higher only when news + technicals + macro all agree)\n"
        "- summary: 1 concise sentence referencing BOTH a news driver AND a technical level. "
        "Max 25 words.\n"
        "- newsDriver: 1-2 sentences on the key news headlines driving this pair right now. "
        "Cite actual headlines.\n"
        "- technicalLevels: 1-2 sentences on 1H/4H structure with support/resistance prices. "
        "Use the data above.\n"
        "- macroBackdrop: 1 sentence on rates/CPI/GDP framing.\n\n"
        f"Respond with ONLY this JSON:\n{RESPONSE_SHAPE}"
    )
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user_prompt},
    ]


# =============================================================================
# Validation and rule-based fallback
# =============================================================================

def _first(item: dict, *names: str, default: str = "") -> str:
    for name in names:
        if item.get(name) is not None:
            return str(item[name])
    return default


def _confidence(value) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError, OverflowError):
        number = 0
    if not number:
        number = 50
    return min(MAX_CONFIDENCE, max(MIN_CONFIDENCE, number))


def parse_instrument_list(raw: str) -> List[dict]:
    """
    Model text -> list of instrument objects.

    Accepts a bare array or {"instruments": [...]}, fenced or embedded
    in prose.

    Raises:
        MalformedResponse: nothing list-shaped can be recovered
    """
    cleaned = strip_code_fences(raw)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        match = _JSON_ARRAY.search(cleaned)
        try:
            parsed = json.loads(match.group(0)) if match else parse_json_object(cleaned)
        except json.JSONDecodeError:
            parsed = parse_json_object(cleaned)

    if isinstance(parsed, dict):
        parsed = parsed.get("instruments")
    if not isinstance(parsed, list) or not parsed:
        raise MalformedResponse("instruments_missing_list", details=cleaned)
    return parsed


def validate_grid(raw: str) -> InstrumentGrid:
    """
    Raises:
        MalformedResponse: no list, or no item with a symbol and a bias
    """
    items = [
        item for item in parse_instrument_list(raw)
        if isinstance(item, dict) and item.get("symbol") and item.get("bias")
    ]
    if not items:
        raise MalformedResponse("instruments_missing_fields", details=raw)
    return InstrumentGrid([
        InstrumentAnalysis(
            symbol=str(item["symbol"]),
            display_name=_first(item, "displayName", "display_name", default=str(item["symbol"])),
            bias="Bearish" if str(item["bias"]) == "Bearish" else "Bullish",
            confidence=_confidence(item.get("confidence")),
            summary=_first(item, "summary"),
            news_driver=_first(item, "newsDriver", "news_driver"),
            technical_levels=_first(item, "technicalLevels", "technical_levels"),
            macro_backdrop=_first(item, "macroBackdrop", "macro_backdrop"),
        )
        for item in items
    ])


def _trend_word(trend: str, up: str, down: str, flat: str) -> str:
    return {"up": up, "down": down}.get(trend, flat)


def build_rule_based_grid(context: GridContext) -> InstrumentGrid:
    """Grid from headline keywords and technicals, used when no model answers."""
    news = " ".join(h.title for h in context.headlines).lower()
    usd_bullish = any(k in news for k in ("dollar strength", "fed haw", "rate hike"))
    yen_weak = any(k in news for k in ("boj", "yen weak"))

    analyses = []
    for inst in TRACKED:
        tech = context.technicals.get(inst.symbol)
        moved = tech is not None and abs(tech.h4_change_pct) > 0.1

        if inst.symbol == "USDJPY":
            bullish = yen_weak or (tech is not None and tech.momentum == "bullish")
            confidence = 60 if moved else 52
            summary = (
                f"{_trend_word(tech.h4_trend, 'Pushing higher', 'Pulling back', 'Consolidating')} "
                f"on 4H near {inst.fmt(tech.price)}. Resistance at {inst.fmt(tech.nearest_resistance)}."
                if tech else "Watching US yields and BoJ headlines for direction."
            )
        elif inst.symbol == "GBPUSD":
            bullish = not (usd_bullish or (tech is not None and tech.momentum == "bearish"))
            confidence = 58 if moved else 48
            summary = (
                f"Cable {_trend_word(tech.h4_trend, 'bid', 'under pressure', 'consolidating')} "
                f"on 4H. Key support at {inst.fmt(tech.nearest_support)}."
                if tech else "Cable tracking USD tone. BoE outlook mixed."
            )
        else:
            bullish = not (usd_bullish or (tech is not None and tech.momentum == "bearish"))
            confidence = 62 if moved else 50
            summary = (
                f"{_trend_word(tech.h4_trend, 'Recovering', 'Trending lower', 'Ranging')} on 4H. "
                f"Price at {inst.fmt(tech.price)}, support {inst.fmt(tech.nearest_support)}."
                if tech else "Watching EUR headlines and ECB rhetoric for direction."
            )

        levels = (
            f"Price at {inst.fmt(tech.price)}. 4H trend: {tech.h4_trend}. "
            f"Support: {inst.fmt(tech.nearest_support)}, "
            f"Resistance: {inst.fmt(tech.nearest_resistance)}."
            if tech else "Technical data unavailable."
        )
        analyses.append(InstrumentAnalysis(
            symbol=inst.symbol,
            display_name=inst.display_name,
            bias="Bullish" if bullish else "Bearish",
            confidence=confidence,
            summary=summary,
            news_driver="AI analysis unavailable. Using rule-based signals from headline sentiment.",
            technical_levels=levels,
            macro_backdrop="Macro data available but AI model was unreachable for detailed analysis.",
        ))
    return InstrumentGrid(analyses, fallback=True)


# =============================================================================
# Service
# =============================================================================

class InstrumentsService:
    """Hourly AI grid over news, quotes and macro indicators."""

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
        self.cache: FreshnessCache = registry.get(INSTRUMENTS)

    @property
    def models(self) -> List[str]:
        return model_order(self._settings.openrouter_model, self._settings.openrouter_fallback_models)

    def fetch_quote(self, inst: Instrument) -> TechnicalSnapshot:
        data = fetch_json(
            CHART_URL.format(symbol=inst.chart_symbol),
            timeout=self._settings.feed_timeout_seconds,
            source=f"quotes_{inst.symbol.lower()}",
            headers=CHART_HEADERS,
        )
        return parse_chart(data, inst.symbol)

    def fetch_technicals(self) -> Dict[str, TechnicalSnapshot]:
        """Snapshots for every pair that answered; failures are left out."""
        technicals: Dict[str, TechnicalSnapshot] = {}
        with ThreadPoolExecutor(max_workers=len(TRACKED)) as executor:
            futures = [(inst, executor.submit(self.fetch_quote, inst)) for inst in TRACKED]
            for inst, future in futures:
                try:
                    technicals[inst.symbol] = future.result()
                except UpstreamError as e:
                    logger.warning(f"Quotes for {inst.symbol} unavailable: {e.code}")
        return technicals

    def gather_context(self) -> GridContext:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        context = GridContext(now=now, technicals=self.fetch_technicals())

        news = self._news.get_headlines()
        if isinstance(news, Unavailable):
            logger.warning(f"Instrument grid without news: {news.reason.value}")
        else:
            context.headlines = news.value

        _, _, day = self._calendar.get_day()
        if not isinstance(day, Unavailable):
            context.calendar = day.value

        macro = self._macro.get_indicators()
        if not isinstance(macro, Unavailable):
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

        A model grid already stored under `key` outranks the rule-based
        grid: if every model fails, the error propagates and that grid is
        served stale.
        """
        context = self.gather_context()
        chain = ProviderFallbackChain(
            [self._provider(m) for m in self.models],
            max_attempts=self.cache.config.max_attempts,
        )
        params = {"messages": build_messages(context), "max_tokens": 1800, "temperature": 0.35}

        try:
            result = chain.run(params, validate=validate_grid)
        except UpstreamError as e:
            prior = self.cache.peek(key) if key else None
            if prior is not None and prior.has_value and not prior.value.fallback:
                logger.warning(f"All AI models failed ({e.code}), keeping grid from {prior.value.model}")
                raise
            logger.warning(f"All AI models failed ({e.code}), using rule-based grid")
            return Success(
                build_rule_based_grid(context),
                ttl_override=self._settings.instruments_fallback_ttl_seconds,
            )

        grid = result.value
        grid.model = result.provider
        return Success(grid)

    def get_grid(self, force_refresh: bool = False) -> ReadResult:
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        key = make_cache_key("instruments", hour=hour_bucket(now))
        return self.cache.get_or_refresh(
            key, lambda: self.generate(key), force_refresh=force_refresh
        )
