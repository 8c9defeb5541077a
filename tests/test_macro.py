"""
Tests for macro indicators and the AI macro desk brief.
"""
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from app.cache import (
    CacheRegistry,
    ErrorKind,
    Fresh,
    MalformedResponse,
    RateLimited,
    Stale,
    TransportTimeout,
    Unavailable,
    build_ttl_config,
    make_cache_key,
)
from app.sources.calendar import BankHoliday, CalendarDay
from app.sources.macro_data import (
    STATIC_BASELINE,
    MacroDataService,
    extract_indicators,
    merge_with_baseline,
)
from app.sources.macro_desk import (
    DeskContext,
    MacroDeskService,
    build_local_brief,
    hour_bucket,
    session_note,
    validate_brief,
)
from app.sources.news import Headline
from config.settings import Settings
from tests.conftest import FakeClock


US_ROWS = [
    {"Category": "Interest Rate", "LatestValue": 4.25},
    {"Category": "Deposit Interest Rate", "LatestValue": 9.99},
    {"Category": "Inflation Rate", "LatestValue": 2.7},
    {"Category": "Inflation Rate MoM", "LatestValue": 0.3},
    {"Category": "GDP Growth Rate", "LatestValue": 3.1},
    {"Category": "GDP Annual Growth Rate", "LatestValue": 2.0},
    {"Category": "Unemployment Rate", "LatestValue": 4.1},
    {"Category": "Balance of Trade", "LatestValue": -70},
    {"Category": "Interest Rate", "LatestValue": None},
]

VALID_BRIEF = (
    '```json\n{"bias": "Risk-off", "bullets": ["one", "two", "three", "four", "five", "six"],'
    ' "notes": "Fade rallies."}\n```'
)

# 2026-01-05 08:00 UTC is 03:00 in New York
MONDAY = datetime(2026, 1, 5, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def settings():
    return Settings(
        openrouter_api_key="test-key",
        openrouter_model="model-a",
        openrouter_fallback_models=["model-b"],
    )


# =============================================================================
# Macro data
# =============================================================================

class TestExtractIndicators:
    def test_picks_headline_series(self):
        assert extract_indicators(US_ROWS) == {
            "rate": "4.25%",
            "cpi": "2.7%",
            "gdp": "3.1%",
            "unemployment": "4.1%",
        }

    def test_rejects_non_list(self):
        with pytest.raises(MalformedResponse):
            extract_indicators({"error": "quota"})


class TestMergeWithBaseline:
    def test_live_rate_marks_live(self):
        merged = merge_with_baseline({"USD": {"rate": "4.25%"}})
        assert merged["USD"].rate == "4.25%"
        assert merged["USD"].cpi == STATIC_BASELINE["USD"].cpi
        assert merged["USD"].lastUpdated == "Live"

    def test_missing_country_uses_baseline(self):
        merged = merge_with_baseline({})
        assert merged["JPY"] == STATIC_BASELINE["JPY"]
        assert set(merged) == {"USD", "EUR", "GBP", "JPY"}


class TestMacroDataService:
    def test_partial_failure_fills_from_baseline(self, settings):
        def fake_json(url, timeout, source, headers):
            if source == "macro_usd":
                return US_ROWS
            raise TransportTimeout()

        registry = CacheRegistry(build_ttl_config(settings), revalidate_in_background=False)
        try:
            with patch("app.sources.macro_data.fetch_json", side_effect=fake_json):
                result = MacroDataService(registry).get_indicators()
        finally:
            registry.shutdown()

        assert isinstance(result, Fresh)
        assert result.value["USD"].lastUpdated == "Live"
        assert result.value["EUR"].lastUpdated == "Jan 2025"

    def test_no_live_data_is_a_failure(self, settings):
        registry = CacheRegistry(build_ttl_config(settings), revalidate_in_background=False)
        try:
            with patch("app.sources.macro_data.fetch_json", side_effect=RateLimited()):
                result = MacroDataService(registry).get_indicators()
        finally:
            registry.shutdown()

        assert isinstance(result, Unavailable)
        assert result.reason is ErrorKind.RATE_LIMITED


# =============================================================================
# Macro desk helpers
# =============================================================================

class TestSession:
    @pytest.mark.parametrize("utc_hour,expected", [
        (8, "Asian session is active. London pre-open."),
        (14, "London session is active. NY open upcoming."),
        (18, "NY session overlap with London. Peak liquidity."),
        (23, "NY afternoon. London closed. Liquidity thinning."),
        (3, "Asian session open. Thin liquidity period."),
    ])
    def test_session_note_follows_new_york_hour(self, utc_hour, expected):
        assert session_note(MONDAY.replace(hour=utc_hour)) == expected

    def test_hour_bucket(self):
        assert hour_bucket(MONDAY) == "2026-01-05-h8"


class TestValidateBrief:
    def test_accepts_fenced_json_and_caps_bullets(self):
        brief = validate_brief(VALID_BRIEF)
        assert brief.bias == "Risk-off"
        assert brief.bullets == ["one", "two", "three", "four", "five"]
        assert brief.notes == "Fade rallies."
        assert brief.fallback is False

    @pytest.mark.parametrize("raw", [
        "I cannot help with that",
        '{"bias": "Neutral", "bullets": []}',
        '{"bullets": ["x"]}',
        '["not", "an", "object"]',
    ])
    def test_rejects_unusable_output(self, raw):
        with pytest.raises(MalformedResponse):
            validate_brief(raw)


class TestLocalBrief:
    def test_built_from_context(self):
        context = DeskContext(
            headlines=[
                Headline("Dollar firms before payrolls", "R", "u", MONDAY),
                Headline("Yen weakens on carry demand", "R", "u", MONDAY),
                Headline("Third headline not used", "R", "u", MONDAY),
            ],
            calendar=CalendarDay(
                tz="UTC",
                today="01-05-2026",
                holidays=[BankHoliday("JPY · Bank Holiday", "JPY", "01-05-2026")],
            ),
            indicators=dict(STATIC_BASELINE),
            session_note="Asian session is active. London pre-open.",
            now=MONDAY,
        )

        brief = build_local_brief(context)

        assert brief.bias == "Neutral"
        assert brief.fallback is True
        assert len(brief.bullets) == 5
        assert brief.bullets[0].startswith("Macro snapshot: USD rate 4.50%")
        assert brief.bullets[1] == "Dollar firms before payrolls"
        assert "JPY · Bank Holiday" in brief.bullets[3]
        assert "No high-impact events" in brief.bullets[4]

    def test_empty_context_still_has_session(self):
        brief = build_local_brief(DeskContext(session_note="NY afternoon."))
        assert brief.bullets == ["NY afternoon."]


# =============================================================================
# Macro desk service
# =============================================================================

class StubSource:
    """Sibling service returning a fixed read result."""

    def __init__(self, result):
        self.result = result

    def get_headlines(self):
        return self.result

    def get_indicators(self):
        return self.result

    def get_day(self):
        return "UTC", "01-05-2026", self.result


class ScriptedClient:
    def __init__(self, **answers):
        self.answers = answers
        self.models = []

    def complete(self, model, messages, max_tokens=600, temperature=0.3):
        self.models.append(model)
        answer = self.answers[model.replace("-", "_")]
        if isinstance(answer, BaseException):
            raise answer
        return answer


def make_desk(settings, client, clock, news=None, calendar=None, macro=None):
    registry = CacheRegistry(build_ttl_config(settings), clock=clock, revalidate_in_background=False)
    unavailable = Unavailable(ErrorKind.TRANSPORT_TIMEOUT)
    desk = MacroDeskService(
        registry,
        settings,
        client,
        news=StubSource(news or unavailable),
        calendar=StubSource(calendar or unavailable),
        macro=StubSource(macro or unavailable),
        clock=clock,
    )
    return desk, registry


class TestMacroDeskService:
    def test_first_failing_model_falls_through(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=RateLimited(), model_b=VALID_BRIEF)
        desk, registry = make_desk(settings, client, clock)
        try:
            result = desk.get_brief()
        finally:
            registry.shutdown()

        assert isinstance(result, Fresh)
        assert result.value.model == "model-b"
        assert client.models == ["model-a", "model-b"]

    def test_all_models_failing_serves_local_brief_briefly(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=RateLimited(), model_b=TransportTimeout())
        macro = Fresh(dict(STATIC_BASELINE), MONDAY.timestamp())
        desk, registry = make_desk(settings, client, clock, macro=macro)
        try:
            result = desk.get_brief()
            entry = desk.cache.peek(make_cache_key("macro_desk", hour=hour_bucket(MONDAY)))
        finally:
            registry.shutdown()

        assert isinstance(result, Fresh)
        assert result.value.fallback is True
        assert result.value.bullets[0].startswith("Macro snapshot")
        assert entry.freshness_window == settings.macro_desk_fallback_ttl_seconds

    def test_brief_cached_within_the_hour(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=VALID_BRIEF, model_b=VALID_BRIEF)
        desk, registry = make_desk(settings, client, clock)
        try:
            desk.get_brief()
            clock.advance(20 * 60)
            second = desk.get_brief()
        finally:
            registry.shutdown()

        assert second.from_cache is True
        assert client.models == ["model-a"]

    def test_fallback_brief_expires_before_the_hour(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=RateLimited(), model_b=TransportTimeout())
        desk, registry = make_desk(settings, client, clock)
        try:
            desk.get_brief()
            clock.advance(settings.macro_desk_fallback_ttl_seconds + 1)
            client.answers = {"model_a": VALID_BRIEF, "model_b": VALID_BRIEF}
            second = desk.get_brief()
        finally:
            registry.shutdown()

        assert isinstance(second, Fresh)
        assert second.from_cache is False
        assert second.value.fallback is False
        assert second.value.model == "model-a"

    def test_forced_refresh_keeps_model_brief_when_models_fail(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=VALID_BRIEF, model_b=VALID_BRIEF)
        desk, registry = make_desk(settings, client, clock)
        try:
            desk.get_brief()
            client.answers = {"model_a": RateLimited(), "model_b": TransportTimeout()}
            forced = desk.get_brief(force_refresh=True)
            after = desk.get_brief()
        finally:
            registry.shutdown()

        assert isinstance(forced, Stale)
        assert forced.reason is ErrorKind.RATE_LIMITED
        assert forced.value.fallback is False
        assert forced.value.model == "model-a"
        assert after.value.fallback is False
        assert after.value.model == "model-a"

    def test_fallback_brief_replaced_by_fallback_on_refresh(self, settings):
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=MalformedResponse(), model_b=TransportTimeout())
        desk, registry = make_desk(settings, client, clock)
        try:
            desk.get_brief()
            clock.advance(settings.macro_desk_fallback_ttl_seconds + 1)
            second = desk.get_brief()
        finally:
            registry.shutdown()

        assert isinstance(second, Fresh)
        assert second.from_cache is False
        assert second.value.fallback is True

    def test_hour_buckets_bounded(self, settings):
        settings.hourly_max_entries = 6
        clock = FakeClock(MONDAY.timestamp())
        client = ScriptedClient(model_a=VALID_BRIEF, model_b=VALID_BRIEF)
        desk, registry = make_desk(settings, client, clock)
        try:
            for _ in range(30):
                desk.get_brief()
                clock.advance(3600)
            entries = registry.stats()["macro_desk"]["entries"]
        finally:
            registry.shutdown()

        assert entries == 6
        assert len(client.models) == 30
