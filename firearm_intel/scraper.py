"""
Ingestion/scrape coordinator for Firearm Auction Intelligence.

Runs the configured auction sources one after another:
1. Extract candidate listings (incrementally when the site cache is valid)
2. Normalize each candidate and canonicalize its URL
3. Insert unseen URLs as pending listings and queue them for enrichment;
   for known URLs refresh only the current bid
4. Record per-source statistics and publish a progress snapshot

A failing source is logged and counted; the run always continues with the
next source.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Optional

from .config import AppConfig, get_app_config
from .db import Database, get_db
from .enrichment_queue import EnrichmentQueue, get_enrichment_queue
from .exceptions import ScrapeError
from .models import AuctionListing, AuctionSource, Priority, utcnow
from .normalization import CandidateNormalizer, canonicalize_url
from .site_cache import SiteCache
from .sources import AUCTION_SOURCES, FirecrawlClient, find_source

logger = logging.getLogger(__name__)


# =============================================================================
# EXTRACTION PROMPT AND SCHEMA
# =============================================================================

LISTING_EXTRACTION_PROMPT = (
    "Extract every firearm auction listing on these pages. For each lot return the title, "
    "description, the absolute URL of the lot page, the auction date, manufacturer, model, "
    "caliber, category (Handgun, Rifle, Shotgun, Machine Gun, Antique, Military), condition, "
    "lot number, starting bid, current bid, estimate range, and the location (city, state). "
    "Skip anything that is not a firearm."
)

LISTING_EXTRACTION_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "auctions": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {
                    "title": {"type": "string"},
                    "description": {"type": "string"},
                    "url": {"type": "string"},
                    "auction_date": {"type": "string"},
                    "manufacturer": {"type": "string"},
                    "model": {"type": "string"},
                    "caliber": {"type": "string"},
                    "category": {"type": "string"},
                    "condition": {"type": "string"},
                    "lot_number": {"type": "string"},
                    "starting_bid": {"type": "number"},
                    "current_bid": {"type": "number"},
                    "estimate_low": {"type": "number"},
                    "estimate_high": {"type": "number"},
                    "location": {"type": "string"},
                    "city": {"type": "string"},
                    "state": {"type": "string"},
                },
                "required": ["title", "url"],
            },
        },
    },
    "required": ["auctions"],
}


def parse_candidates(data: Any) -> list[dict]:
    """Candidate records of an extraction result; malformed results yield none."""
    if not isinstance(data, dict):
        return []
    auctions = data.get("auctions")
    if not isinstance(auctions, list):
        return []
    return [candidate for candidate in auctions if isinstance(candidate, dict)]


# =============================================================================
# RUN STATISTICS AND PROGRESS
# =============================================================================

@dataclass
class ScraperStats:
    """Outcome of scraping one source during one run."""
    scrape_id: str
    source_name: str
    discovered_urls: int = 0
    processed_urls: int = 0
    successful_saves: int = 0
    new_listings: int = 0
    failed_scrapes: int = 0
    failed_saves: int = 0
    duration: float = 0.0  # seconds
    timestamp: datetime = field(default_factory=utcnow)
    missing_urls: list[str] = field(default_factory=list)

    @property
    def coverage(self) -> float:
        """Share of processed candidates that were saved, in percent."""
        if not self.processed_urls:
            return 0.0
        return round(self.successful_saves / self.processed_urls * 100, 1)

    def to_dict(self) -> dict:
        return {
            "scrape_id": self.scrape_id,
            "source_name": self.source_name,
            "discovered_urls": self.discovered_urls,
            "processed_urls": self.processed_urls,
            "successful_saves": self.successful_saves,
            "new_listings": self.new_listings,
            "failed_scrapes": self.failed_scrapes,
            "failed_saves": self.failed_saves,
            "duration": round(self.duration, 2),
            "timestamp": self.timestamp.isoformat(),
            "missing_urls": list(self.missing_urls),
            "coverage": self.coverage,
        }


@dataclass(frozen=True)
class ScrapeProgress:
    """Immutable snapshot of a scrape run; a new one is published per change."""
    version: int = 0
    is_active: bool = False
    current_source: str = ""
    completed_sources: int = 0
    total_sources: int = 0

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "is_active": self.is_active,
            "current_source": self.current_source,
            "completed_sources": self.completed_sources,
            "total_sources": self.total_sources,
        }


# =============================================================================
# COORDINATOR
# =============================================================================

class ScrapeCoordinator:
    """
    Scrapes auction sources into the listing store.

    Usage:
        coordinator = ScrapeCoordinator()
        saved = coordinator.scrape_all_sources()
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        client: Optional[FirecrawlClient] = None,
        cache: Optional[SiteCache] = None,
        queue: Optional[EnrichmentQueue] = None,
        sources: Optional[list[AuctionSource]] = None,
        config: Optional[AppConfig] = None,
    ):
        self.db = db or get_db()
        self._client = client
        self.cache = cache or SiteCache(self.db)
        self._queue = queue
        self.sources = list(sources) if sources is not None else list(AUCTION_SOURCES)
        self.config = config or get_app_config()
        self.normalizer = CandidateNormalizer()

        self._progress = ScrapeProgress(total_sources=len(self.sources))
        self._last_stats: list[ScraperStats] = []

    @property
    def client(self) -> FirecrawlClient:
        if self._client is None:
            self._client = FirecrawlClient()
        return self._client

    @property
    def queue(self) -> EnrichmentQueue:
        if self._queue is None:
            self._queue = get_enrichment_queue()
        return self._queue

    @property
    def progress(self) -> ScrapeProgress:
        """Latest progress snapshot (safe to read from any thread)."""
        return self._progress

    def _publish(self, **changes) -> None:
        self._progress = replace(self._progress, version=self._progress.version + 1, **changes)

    def get_last_scrape_stats(self) -> list[ScraperStats]:
        """Per-source statistics of the most recent run."""
        return list(self._last_stats)

    # =========================================================================
    # FULL RUN
    # =========================================================================

    def scrape_all_sources(self) -> list[AuctionListing]:
        """
        Scrape every configured source sequentially.

        Never raises; per-source failures end up in the run statistics.

        Returns:
            Every listing saved during this run, newly inserted or refreshed
        """
        if self._progress.is_active:
            logger.warning("Scrape already in progress, not starting another run")
            return []

        scrape_id = uuid.uuid4().hex[:12]
        run_stats: list[ScraperStats] = []
        saved_listings: list[AuctionListing] = []

        logger.info(f"Starting scrape {scrape_id} of {len(self.sources)} sources")
        self._publish(is_active=True, current_source="", completed_sources=0, total_sources=len(self.sources))

        try:
            for index, source in enumerate(self.sources):
                self._publish(current_source=source.name)
                saved, stats = self.scrape_source(source, scrape_id)
                saved_listings.extend(saved)
                run_stats.append(stats)
                self._publish(completed_sources=index + 1)
        finally:
            self._last_stats = run_stats
            self._publish(is_active=False, current_source="")

        self._log_run_summary(scrape_id, run_stats)
        return saved_listings

    def scrape_source(self, source: AuctionSource, scrape_id: str = "") -> tuple[list[AuctionListing], ScraperStats]:
        """
        Scrape one source.

        Returns:
            Tuple of (saved listings, statistics)
        """
        stats = ScraperStats(scrape_id=scrape_id or uuid.uuid4().hex[:12], source_name=source.name)
        started = time.monotonic()
        saved: list[AuctionListing] = []

        logger.info(f"Scraping {source.name} ({source.url})")
        try:
            candidates = self._extract_candidates(source, stats)
        except Exception as e:
            logger.error(f"Scrape failed for {source.name}: {e}")
            stats.failed_scrapes += 1
            candidates = []

        stats.processed_urls = len(candidates)
        stats.discovered_urls = stats.discovered_urls or len(candidates)

        for raw in candidates:
            listing = self.normalizer.normalize(raw, source)
            if listing is None:
                stats.failed_saves += 1
                stats.missing_urls.append(str(raw.get("url") or raw.get("title") or "<no url>"))
                continue

            try:
                stored, created = self._save_listing(listing)
            except Exception as e:
                logger.error(f"Failed to save {listing.url}: {e}")
                stats.failed_saves += 1
                stats.missing_urls.append(listing.url)
                continue

            stats.successful_saves += 1
            if created:
                stats.new_listings += 1
            saved.append(stored)

        stats.duration = time.monotonic() - started
        logger.info(
            f"{source.name}: {stats.successful_saves}/{stats.processed_urls} saved "
            f"({stats.new_listings} new) in {stats.duration:.1f}s"
        )
        return saved, stats

    def _extract_candidates(self, source: AuctionSource, stats: ScraperStats) -> list[dict]:
        """
        Candidate records for a source.

        With a valid site cache only URLs not seen before are extracted (at
        most max_incremental_urls per run); otherwise the whole site is.
        """
        entry = self.cache.get_site_map(source.url)

        if entry is not None:
            current = [url for url in (canonicalize_url(u) for u in self.client.discover_links(source.url)) if url]
            stats.discovered_urls = len(current)
            new_urls = self.cache.get_new_urls(source.url, current)
            if not new_urls:
                logger.info(f"{source.name}: no new URLs since {entry.last_scraped.isoformat()}")
                return []

            batch = new_urls[:self.config.max_incremental_urls]
            candidates = parse_candidates(
                self.client.extract(batch, LISTING_EXTRACTION_PROMPT, LISTING_EXTRACTION_SCHEMA)
            )
            self._save_site_map(source, entry.discovered_urls + batch, len(candidates))
            return candidates

        candidates = parse_candidates(
            self.client.extract([source.crawl_url], LISTING_EXTRACTION_PROMPT, LISTING_EXTRACTION_SCHEMA)
        )
        discovered = [canonicalize_url(c.get("url"), base_url=source.url) for c in candidates]
        self._save_site_map(source, [url for url in discovered if url], len(candidates))
        return candidates

    def _save_site_map(self, source: AuctionSource, urls: list[str], firearms_found: int) -> None:
        try:
            self.cache.save_site_map(source.url, source.name, urls, firearms_found)
        except Exception as e:
            logger.warning(f"Could not cache site map of {source.name}: {e}")

    # =========================================================================
    # PERSISTENCE
    # =========================================================================

    def _save_listing(
        self,
        listing: AuctionListing,
        priority: Priority = Priority.NORMAL,
    ) -> tuple[AuctionListing, bool]:
        """
        Insert a listing or refresh the one already stored under its URL.

        Returns:
            Tuple of (stored listing, whether it was newly inserted)
        """
        existing = self.db.get_listing_by_url(listing.url)
        if existing is not None:
            return self._refresh_existing(existing, listing), False

        try:
            stored = self.db.insert_listing(listing)
        except Exception:
            # A concurrent insert of the same URL wins; treat ours as a re-discovery
            existing = self.db.get_listing_by_url(listing.url)
            if existing is None:
                raise
            return self._refresh_existing(existing, listing), False

        self.queue.add(stored.id, priority)
        return stored, True

    def _refresh_existing(self, existing: AuctionListing, scraped: AuctionListing) -> AuctionListing:
        """Update only the volatile fields of a re-discovered listing and return it as stored."""
        updates = {}
        if scraped.current_bid is not None:
            updates["current_bid"] = scraped.current_bid
        self.db.update_listing(existing.id, updates)
        logger.debug(f"Refreshed existing listing {existing.id}")
        return self.db.get_listing(existing.id) or existing

    # =========================================================================
    # SINGLE URL
    # =========================================================================

    def scrape_by_url(self, url: str) -> AuctionListing:
        """
        Ingest a single listing page.

        Raises:
            ScrapeError: If the URL is invalid or nothing could be extracted
        """
        canonical = canonicalize_url(url)
        if not canonical:
            raise ScrapeError(url, "Not an absolute http(s) URL")

        candidates = parse_candidates(
            self.client.extract([canonical], LISTING_EXTRACTION_PROMPT, LISTING_EXTRACTION_SCHEMA)
        )
        if not candidates:
            raise ScrapeError(url, "No auction data could be extracted")

        raw = dict(candidates[0], url=canonical)
        listing = self.normalizer.normalize(raw, find_source(canonical))
        if listing is None:
            raise ScrapeError(url, "Extracted data has no title")
        listing.source_website = "Manual Entry"

        stored, created = self._save_listing(listing, priority=Priority.HIGH)
        logger.info(f"Manual scrape of {canonical}: {'inserted' if created else 'refreshed'} listing {stored.id}")
        return stored

    def _log_run_summary(self, scrape_id: str, run_stats: list[ScraperStats]) -> None:
        failed_sources = [s.source_name for s in run_stats if s.failed_scrapes]
        saves = sum(s.successful_saves for s in run_stats)
        processed = sum(s.processed_urls for s in run_stats)
        logger.info(
            f"Scrape {scrape_id} complete: {saves}/{processed} candidates saved, "
            f"{sum(s.new_listings for s in run_stats)} new listings, {len(failed_sources)} failed sources"
        )
        for stats in run_stats:
            if stats.processed_urls and stats.coverage < 100:
                logger.warning(
                    f"{stats.source_name}: {stats.coverage}% coverage, missing {stats.missing_urls[:5]}"
                )
        if failed_sources:
            logger.warning(f"Failed sources: {', '.join(failed_sources)}")


# Global coordinator instance (lazy loaded)
_coordinator: Optional[ScrapeCoordinator] = None


def get_coordinator() -> ScrapeCoordinator:
    """Get scrape coordinator instance (singleton)."""
    global _coordinator
    if _coordinator is None:
        _coordinator = ScrapeCoordinator()
    return _coordinator
