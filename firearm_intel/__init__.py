"""
Firearm Auction Intelligence

Scrapes firearm listings from auction houses and estate-sale sites across
Texas, Oklahoma and Louisiana, enriches them with AI-extracted attributes and
turns the result into price intelligence and user alerts.

Modules:
- config: Configuration and environment variables
- exceptions: Error hierarchy
- models: Canonical data models (dataclasses)
- db: Supabase integration for storage
- sources: Auction source registry and the Firecrawl client
- normalization: Map extracted candidates to the listing schema
- site_cache: Per-source URL cache for incremental scraping
- scraper: Scrape coordinator (ingestion)
- ai_client: JSON-schema chat completions
- enrichment: AI enrichment transform
- enrichment_queue: Priority queue with bounded concurrency and retries
- analytics: Price trends, comparables, opportunities, competitor metrics
- alerts: User alert matching and management
- pipeline: Main orchestration
- scheduler: APScheduler setup for recurring runs
- server: Flask HTTP API
"""

__version__ = "0.1.0"

# Convenient imports
from .exceptions import (
    FirearmIntelError,
    ConfigurationError,
    StoreError,
    ListingNotFoundError,
    ExternalServiceError,
    ScrapeError,
    AIServiceError,
    AIResponseError,
)
from .models import (
    AuctionListing,
    AuctionSource,
    ListingStatus,
    EnrichmentStatus,
    Priority,
    PriceHistoryRecord,
    CompetitorMetric,
    SiteCacheEntry,
    AlertCriteria,
    UserAlert,
)
from .normalization import CandidateNormalizer, canonicalize_url
from .site_cache import SiteCache
from .scraper import ScrapeCoordinator, ScraperStats, ScrapeProgress
from .enrichment import EnrichmentService, EnrichmentResult
from .enrichment_queue import EnrichmentQueue, QueueItem, ProcessingStats
from .analytics import PriceAnalytics, PriceAnalysis, PriceTrend, OpportunityItem, CompetitorSummary
from .alerts import AlertEngine, AlertMatch, match_criteria
from .pipeline import run_full_pipeline

__all__ = [
    # Errors
    "FirearmIntelError",
    "ConfigurationError",
    "StoreError",
    "ListingNotFoundError",
    "ExternalServiceError",
    "ScrapeError",
    "AIServiceError",
    "AIResponseError",
    # Models
    "AuctionListing",
    "AuctionSource",
    "ListingStatus",
    "EnrichmentStatus",
    "Priority",
    "PriceHistoryRecord",
    "CompetitorMetric",
    "SiteCacheEntry",
    "AlertCriteria",
    "UserAlert",
    # Ingestion
    "CandidateNormalizer",
    "canonicalize_url",
    "SiteCache",
    "ScrapeCoordinator",
    "ScraperStats",
    "ScrapeProgress",
    # Enrichment
    "EnrichmentService",
    "EnrichmentResult",
    "EnrichmentQueue",
    "QueueItem",
    "ProcessingStats",
    # Analytics
    "PriceAnalytics",
    "PriceAnalysis",
    "PriceTrend",
    "OpportunityItem",
    "CompetitorSummary",
    # Alerts
    "AlertEngine",
    "AlertMatch",
    "match_criteria",
    # Pipeline
    "run_full_pipeline",
]
