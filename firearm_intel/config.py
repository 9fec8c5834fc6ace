"""
Configuration module for Firearm Auction Intelligence.

Loads environment variables and provides configuration constants.
All sensitive values should be in .env file (never commit to git).
"""

import os
from dataclasses import dataclass
from typing import Optional
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


@dataclass
class SupabaseConfig:
    """Supabase connection configuration."""
    url: str
    key: str  # Service role key for server-side operations

    @classmethod
    def from_env(cls) -> "SupabaseConfig":
        return cls(
            url=os.getenv("SUPABASE_URL", ""),
            key=os.getenv("SUPABASE_KEY", ""),
        )


@dataclass
class FirecrawlConfig:
    """Scrape/extract API configuration."""
    api_key: str
    base_url: str = "https://api.firecrawl.dev/v1"
    # Extract jobs are asynchronous on the provider side
    poll_interval: float = 3.0
    max_polls: int = 40

    @classmethod
    def from_env(cls) -> "FirecrawlConfig":
        return cls(
            api_key=os.getenv("FIRECRAWL_API_KEY", ""),
            base_url=os.getenv("FIRECRAWL_BASE_URL", "https://api.firecrawl.dev/v1").rstrip("/"),
            poll_interval=float(os.getenv("FIRECRAWL_POLL_INTERVAL", "3.0")),
            max_polls=int(os.getenv("FIRECRAWL_MAX_POLLS", "40")),
        )


@dataclass
class OpenAIConfig:
    """AI completion configuration used by the enrichment transform."""
    api_key: str
    model: str = "gpt-4o"
    temperature: float = 0.3

    @classmethod
    def from_env(cls) -> "OpenAIConfig":
        return cls(
            api_key=os.getenv("OPENAI_API_KEY") or os.getenv("OPENAI_API_KEY2", ""),
            model=os.getenv("OPENAI_MODEL", "gpt-4o"),
            temperature=float(os.getenv("ENRICHMENT_TEMPERATURE", "0.3")),
        )


@dataclass
class AppConfig:
    """Main application configuration."""
    # Scraping settings
    request_timeout: int = 60
    request_delay: float = 2.0  # Seconds between requests (be nice to servers)
    max_incremental_urls: int = 20

    # Enrichment queue
    queue_max_concurrent: int = 3
    queue_max_retries: int = 2
    queue_batch_delay: float = 1.0
    enrich_batch_concurrency: int = 5
    stale_processing_minutes: int = 30

    # Site cache
    cache_ttl_hours: int = 24

    # Price intelligence
    opportunity_threshold: float = 20.0
    min_comparables: int = 3

    # Alerts
    alert_lookback_hours: int = 24

    # HTTP rate limits (requests per window, per client)
    rate_limit_window_seconds: int = 60
    general_rate_limit: int = 300
    scrape_rate_limit: int = 10

    @classmethod
    def from_env(cls) -> "AppConfig":
        return cls(
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", "60")),
            request_delay=float(os.getenv("REQUEST_DELAY", "2.0")),
            max_incremental_urls=int(os.getenv("MAX_INCREMENTAL_URLS", "20")),
            queue_max_concurrent=int(os.getenv("QUEUE_MAX_CONCURRENT", "3")),
            queue_max_retries=int(os.getenv("QUEUE_MAX_RETRIES", "2")),
            queue_batch_delay=float(os.getenv("QUEUE_BATCH_DELAY", "1.0")),
            enrich_batch_concurrency=int(os.getenv("ENRICH_BATCH_CONCURRENCY", "5")),
            stale_processing_minutes=int(os.getenv("STALE_PROCESSING_MINUTES", "30")),
            cache_ttl_hours=int(os.getenv("CACHE_TTL_HOURS", "24")),
            opportunity_threshold=float(os.getenv("OPPORTUNITY_THRESHOLD", "20")),
            min_comparables=int(os.getenv("MIN_COMPARABLES", "3")),
            alert_lookback_hours=int(os.getenv("ALERT_LOOKBACK_HOURS", "24")),
            rate_limit_window_seconds=int(os.getenv("RATE_LIMIT_WINDOW_SECONDS", "60")),
            general_rate_limit=int(os.getenv("GENERAL_RATE_LIMIT", "300")),
            scrape_rate_limit=int(os.getenv("SCRAPE_RATE_LIMIT", "10")),
        )


# Global configuration instances (lazy loaded)
_supabase_config: Optional[SupabaseConfig] = None
_firecrawl_config: Optional[FirecrawlConfig] = None
_openai_config: Optional[OpenAIConfig] = None
_app_config: Optional[AppConfig] = None


def get_supabase_config() -> SupabaseConfig:
    """Get Supabase configuration (cached)."""
    global _supabase_config
    if _supabase_config is None:
        _supabase_config = SupabaseConfig.from_env()
    return _supabase_config


def get_firecrawl_config() -> FirecrawlConfig:
    """Get scrape API configuration (cached)."""
    global _firecrawl_config
    if _firecrawl_config is None:
        _firecrawl_config = FirecrawlConfig.from_env()
    return _firecrawl_config


def get_openai_config() -> OpenAIConfig:
    """Get AI completion configuration (cached)."""
    global _openai_config
    if _openai_config is None:
        _openai_config = OpenAIConfig.from_env()
    return _openai_config


def get_app_config() -> AppConfig:
    """Get app configuration (cached)."""
    global _app_config
    if _app_config is None:
        _app_config = AppConfig.from_env()
    return _app_config
