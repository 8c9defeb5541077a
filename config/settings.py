"""Configuration management using pydantic-settings."""
from typing import List, Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Also export .env into os.environ, not only into Settings
load_dotenv()


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # OpenRouter (AI briefs)
    openrouter_api_key: Optional[str] = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "google/gemini-3-flash-preview"
    openrouter_fallback_models: List[str] = [
        "google/gemini-3-flash-preview",
        "google/gemini-2.0-flash-001",
        "meta-llama/llama-3.3-70b-instruct",
    ]
    public_base_url: str = "http://localhost:8000"
    app_title: str = "MarketDesk"

    # Economic calendar
    calendar_feed_url: str = "https://nfs.faireconomy.media/ff_calendar_thisweek.xml"
    calendar_default_timezone: str = "Asia/Kolkata"
    # Weekend detection for the quiet-period TTL
    calendar_quiet_timezone: str = "Asia/Kolkata"

    # Freshness windows (seconds)
    news_ttl_seconds: int = 120
    calendar_feed_ttl_seconds: int = 1800
    calendar_ttl_seconds: int = 1800
    calendar_extended_ttl_seconds: int = 7200
    calendar_cooldown_seconds: int = 600
    macro_data_ttl_seconds: int = 6 * 3600
    macro_desk_ttl_seconds: int = 3600
    macro_desk_fallback_ttl_seconds: int = 600
    day_overview_ttl_seconds: int = 24 * 3600
    reddit_ttl_seconds: int = 300
    default_cooldown_seconds: int = 600
    instruments_ttl_seconds: int = 3600
    instruments_fallback_ttl_seconds: int = 600

    # Stored keys per resource (least recently used evicted first)
    cache_max_entries: int = 256
    day_overview_max_entries: int = 128
    hourly_max_entries: int = 48

    # Fetch timeouts (seconds)
    feed_timeout_seconds: float = 8.0
    calendar_timeout_seconds: float = 12.0
    macro_timeout_seconds: float = 10.0
    ai_timeout_seconds: float = 30.0

    # Fallback chain / coalescing
    max_fallback_attempts: int = 6
    coalesce_timeout: float = 45.0
    revalidation_workers: int = 4

    # Inbound rate limiting for AI routes
    rate_limit_requests: int = 20
    rate_limit_window_seconds: int = 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
