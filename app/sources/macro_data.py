"""
Key macro indicators (rate, CPI, GDP growth, unemployment) for the
major currencies, from Trading Economics' guest API.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

from app.cache import (
    CacheRegistry,
    FreshnessCache,
    MalformedResponse,
    ReadResult,
    UpstreamError,
    make_cache_key,
)
from app.cache.errors import most_informative
from app.cache.ttl_policies import MACRO_DATA
from app.providers.http import fetch_json

logger = logging.getLogger("sources.macro_data")

_TE_URL = "https://api.tradingeconomics.com/country/{country}?c=guest:guest&f=json"

COUNTRIES: Dict[str, str] = {
    "USD": "united%20states",
    "EUR": "euro%20area",
    "GBP": "united%20kingdom",
    "JPY": "japan",
}


@dataclass
class MacroIndicator:
    rate: str
    cpi: str
    gdp: str
    unemployment: str
    lastUpdated: str

    def to_dict(self) -> dict:
        return asdict(self)


# Baseline used for any indicator the live source did not return
STATIC_BASELINE: Dict[str, MacroIndicator] = {
    "USD": MacroIndicator("4.50%", "2.9%", "2.3%", "4.0%", "Jan 2025"),
    "EUR": MacroIndicator("2.90%", "2.4%", "0.9%", "6.3%", "Jan 2025"),
    "GBP": MacroIndicator("4.50%", "3.0%", "1.4%", "4.4%", "Jan 2025"),
    "JPY": MacroIndicator("0.50%", "3.6%", "1.2%", "2.4%", "Jan 2025"),
}


def extract_indicators(rows: List[dict]) -> Dict[str, str]:
    """
    Pick rate / cpi / gdp / unemployment out of a country's indicator rows.

    Raises:
        MalformedResponse: if rows is not a list
    """
    if not isinstance(rows, list):
        raise MalformedResponse("macro_unexpected_shape", details=str(rows))

    found: Dict[str, str] = {}
    for row in rows:
        if not isinstance(row, dict):
            continue
        category = str(row.get("Category") or "").lower()
        value = row.get("LatestValue")
        if value is None:
            continue
        formatted = f"{value}%"

        if "interest rate" in category and "deposit" not in category:
            found["rate"] = formatted
        elif "inflation rate" in category and "mom" not in category:
            found["cpi"] = formatted
        elif category in ("gdp growth rate", "gdp annual growth rate"):
            found.setdefault("gdp", formatted)
        elif "unemployment rate" in category:
            found["unemployment"] = formatted
    return found


def merge_with_baseline(live: Dict[str, Dict[str, str]]) -> Dict[str, MacroIndicator]:
    """Fill gaps from the static baseline; 'Live' when the rate came from upstream."""
    merged: Dict[str, MacroIndicator] = {}
    for currency, base in STATIC_BASELINE.items():
        data = live.get(currency) or {}
        merged[currency] = MacroIndicator(
            rate=data.get("rate", base.rate),
            cpi=data.get("cpi", base.cpi),
            gdp=data.get("gdp", base.gdp),
            unemployment=data.get("unemployment", base.unemployment),
            lastUpdated="Live" if "rate" in data else base.lastUpdated,
        )
    return merged


class MacroDataService:
    """Macro indicator snapshot with a long freshness window."""

    def __init__(self, registry: CacheRegistry):
        self.cache: FreshnessCache = registry.get(MACRO_DATA)

    def _fetch_country(self, currency: str) -> Dict[str, str]:
        rows = fetch_json(
            _TE_URL.format(country=COUNTRIES[currency]),
            timeout=self.cache.config.fetch_timeout,
            source=f"macro_{currency.lower()}",
            headers={"Accept": "application/json"},
        )
        return extract_indicators(rows)

    def fetch_indicators(self) -> Dict[str, MacroIndicator]:
        """
        Fetch all countries in parallel and merge with the baseline.

        Fails only when no country returned any live indicator, so a fully
        static snapshot never overwrites a previous live one.
        """
        live: Dict[str, Dict[str, str]] = {}
        errors: List[UpstreamError] = []

        with ThreadPoolExecutor(max_workers=len(COUNTRIES)) as executor:
            futures = {ccy: executor.submit(self._fetch_country, ccy) for ccy in COUNTRIES}
            for currency, future in futures.items():
                try:
                    live[currency] = future.result()
                except UpstreamError as e:
                    logger.error(f"Failed to fetch {currency} data: {e.code}")
                    errors.append(e)

        if not any(live.values()):
            raise most_informative(errors) or MalformedResponse("macro_no_live_data")

        return merge_with_baseline(live)

    def get_indicators(self, force_refresh: bool = False) -> ReadResult:
        return self.cache.get_or_refresh(
            make_cache_key("macro_data"), self.fetch_indicators, force_refresh=force_refresh
        )

    @staticmethod
    def baseline() -> Dict[str, MacroIndicator]:
        return dict(STATIC_BASELINE)


def indicators_to_dict(indicators: Optional[Dict[str, MacroIndicator]]) -> dict:
    return {ccy: ind.to_dict() for ccy, ind in (indicators or {}).items()}
