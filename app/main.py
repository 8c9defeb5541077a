"""
MarketDesk - Main FastAPI Application
FX dashboard data: calendar, news, macro indicators, AI briefs and Reddit,
each served from an in-process freshness cache.
"""
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse

from app.cache import (
    CacheMeta,
    CacheRegistry,
    ErrorKind,
    Unavailable,
    ReadResult,
    build_ttl_config,
)
from app.cache.core import iso_timestamp
from app.providers.openrouter import OpenRouterClient
from app.rate_limiter import RateLimiter, client_id_from_request
from app.sources import (
    CalendarService,
    DayOverviewRequest,
    DayOverviewService,
    InstrumentsService,
    MacroDataService,
    MacroDeskService,
    NewsService,
    RedditService,
)
from app.sources.calendar import NO_NEWS_MESSAGE
from app.sources.macro_data import indicators_to_dict
from config.settings import settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("app.main")

# Version tracking
APP_VERSION = "v0.1.0"
APP_NAME = "MarketDesk"
APP_STAGE = "Pre-Alpha"

ERROR_STATUS = {
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.UPSTREAM_UNAVAILABLE: 503,
}


@dataclass
class Services:
    """Everything the routes need, built once per application."""
    registry: CacheRegistry
    openrouter: OpenRouterClient
    limiter: RateLimiter
    news: NewsService
    calendar: CalendarService
    macro_data: MacroDataService
    macro_desk: MacroDeskService
    day_overview: DayOverviewService
    instruments: InstrumentsService
    reddit: RedditService


def build_services(app_settings=settings, clock=time.time) -> Services:
    registry = CacheRegistry(
        build_ttl_config(app_settings),
        coalesce_timeout=app_settings.coalesce_timeout,
        revalidation_workers=app_settings.revalidation_workers,
        clock=clock,
    )
    openrouter = OpenRouterClient(
        app_settings.openrouter_api_key,
        base_url=app_settings.openrouter_base_url,
        referer=app_settings.public_base_url,
        title=app_settings.app_title,
        timeout=app_settings.ai_timeout_seconds,
    )
    news = NewsService(registry)
    calendar = CalendarService(registry, app_settings, clock=clock)
    macro_data = MacroDataService(registry)
    return Services(
        registry=registry,
        openrouter=openrouter,
        limiter=RateLimiter(
            app_settings.rate_limit_requests,
            app_settings.rate_limit_window_seconds,
        ),
        news=news,
        calendar=calendar,
        macro_data=macro_data,
        macro_desk=MacroDeskService(
            registry, app_settings, openrouter, news, calendar, macro_data, clock=clock
        ),
        day_overview=DayOverviewService(registry, app_settings, openrouter),
        instruments=InstrumentsService(
            registry, app_settings, openrouter, news, calendar, macro_data, clock=clock
        ),
        reddit=RedditService(registry),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    services = build_services()
    app.state.services = services
    logger.info(f"{APP_NAME} {APP_VERSION} started")
    try:
        yield
    finally:
        services.registry.shutdown()


app = FastAPI(
    title=f"{APP_NAME} ({APP_STAGE})",
    description="FX market data with coalesced, stale-tolerant upstream caching",
    version=APP_VERSION,
    lifespan=lifespan,
)


# =============================================================================
# Dependencies and response helpers
# =============================================================================

def get_services(request: Request) -> Services:
    return request.app.state.services


def get_registry(services: Services = Depends(get_services)) -> CacheRegistry:
    return services.registry


def error_response(status_code: int, error: str, retry_after: Optional[float] = None, **extra) -> JSONResponse:
    headers = {}
    if retry_after is not None:
        headers["Retry-After"] = str(max(1, int(retry_after)))
    return JSONResponse(status_code=status_code, content={"error": error, **extra}, headers=headers)


def unavailable_response(result: Unavailable) -> JSONResponse:
    """rate_limited -> 429, upstream_unavailable -> 503, anything else -> 502."""
    status_code = ERROR_STATUS.get(result.reason, 502)
    return error_response(status_code, result.reason.value, retry_after=result.retry_after)


def envelope(result: ReadResult, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Payload plus generatedAt / cached / stale / error."""
    return {**payload, **CacheMeta.from_result(result).to_dict()}


def check_ai_access(request: Request, services: Services) -> Optional[JSONResponse]:
    """Shared guard for AI routes: key configured and client under its limit."""
    if not services.openrouter.is_configured:
        return error_response(
            501, "OpenRouter not configured. Set OPENROUTER_API_KEY in .env and restart."
        )
    allowed, retry_after = services.limiter.check(client_id_from_request(request))
    if not allowed:
        return error_response(429, "rate_limited", retry_after=retry_after)
    return None


# =============================================================================
# Service endpoints
# =============================================================================

@app.get("/health")
def health_check():
    """Health check endpoint."""
    return {"status": "ok", "mode": "live"}


@app.get("/version")
def version_info():
    """Version information endpoint."""
    return {
        "name": APP_NAME,
        "version": APP_VERSION,
        "stage": APP_STAGE,
        "full": f"{APP_NAME} {APP_VERSION} ({APP_STAGE})"
    }


@app.get("/cache/stats")
def cache_stats(registry: CacheRegistry = Depends(get_registry)):
    """Get cache statistics, per resource."""
    return registry.stats()


@app.post("/cache/clear")
def cache_clear(registry: CacheRegistry = Depends(get_registry)):
    """Drop every cached entry (cooldowns included)."""
    return {"cleared": registry.clear()}


# =============================================================================
# Market data
# =============================================================================

@app.get("/api/news")
def api_news(services: Services = Depends(get_services)):
    """Latest forex / macro headlines."""
    result = services.news.get_headlines()
    if isinstance(result, Unavailable):
        return unavailable_response(result)
    now = time.time()
    return envelope(result, {"headlines": [h.to_dict(now) for h in result.value]})


@app.get("/api/calendar")
def api_calendar(
    tz: Optional[str] = Query(None, description="IANA timezone, e.g. Asia/Kolkata"),
    includeTomorrow: bool = Query(False, description="Also return tomorrow's events"),
    services: Services = Depends(get_services),
):
    """High-impact economic events and bank holidays for today."""
    tz_name, today, result = services.calendar.get_day(tz, includeTomorrow)
    if isinstance(result, Unavailable):
        return unavailable_response(result)

    day = result.value
    payload = day.to_dict()
    if day.no_news:
        payload["noNews"] = True
        payload["message"] = NO_NEWS_MESSAGE
    return envelope(result, payload)


@app.get("/api/macro-data")
def api_macro_data(services: Services = Depends(get_services)):
    """
    Rate, CPI, GDP growth and unemployment for USD / EUR / GBP / JPY.

    With no live data and nothing cached, the static baseline is served
    flagged stale rather than failing the request.
    """
    result = services.macro_data.get_indicators()
    if isinstance(result, Unavailable):
        meta = CacheMeta(
            generated_at=iso_timestamp(time.time()),
            cached=False,
            stale=True,
            error=result.reason.value,
        )
        return {**indicators_to_dict(services.macro_data.baseline()), **meta.to_dict()}
    return envelope(result, indicators_to_dict(result.value))


@app.get("/api/reddit")
def api_reddit(services: Services = Depends(get_services)):
    """Recent r/Forex posts tagged by currency pair."""
    result = services.reddit.get_posts()
    if isinstance(result, Unavailable):
        return unavailable_response(result)
    now = time.time()
    return envelope(result, {"posts": [p.to_dict(now) for p in result.value]})


# =============================================================================
# AI briefs
# =============================================================================

@app.get("/api/macro-desk")
def api_macro_desk(
    request: Request,
    refresh: bool = Query(False, description="Regenerate even if this hour's brief is cached"),
    services: Services = Depends(get_services),
):
    """Hourly AI macro brief: bias, up to 5 bullets and a tactical note."""
    denied = check_ai_access(request, services)
    if denied is not None:
        return denied

    result = services.macro_desk.get_brief(force_refresh=refresh)
    if isinstance(result, Unavailable):
        return unavailable_response(result)
    return envelope(result, result.value.to_dict())


@app.post("/api/day-overview")
def api_day_overview(
    body: DayOverviewRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    """
    AI overview of one trading day from the events and holidays the
    dashboard already shows.
    """
    denied = check_ai_access(request, services)
    if denied is not None:
        return denied
    if body.is_empty:
        return error_response(400, "no_events_or_holidays")

    result = services.day_overview.get_overview(body)
    if isinstance(result, Unavailable):
        return unavailable_response(result)
    return envelope(result, {"overview": result.value})


@app.get("/api/instruments")
def api_instruments(
    request: Request,
    refresh: bool = Query(False, description="Regenerate even if this hour's grid is cached"),
    services: Services = Depends(get_services),
):
    """Hourly AI bias and confidence per tracked FX pair."""
    denied = check_ai_access(request, services)
    if denied is not None:
        return denied

    result = services.instruments.get_grid(force_refresh=refresh)
    if isinstance(result, Unavailable):
        return unavailable_response(result)
    return envelope(result, result.value.to_dict())
