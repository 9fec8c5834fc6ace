"""
Supabase database integration module.

Handles all record store operations:
- Inserting scraped auction listings and updating their volatile fields
- Tracking enrichment status transitions
- Appending price history and competitor metric snapshots
- Caching discovered site maps per source
- Managing user alerts

Tables required (see sql/setup_supabase.sql):
- firearms_auctions: Scraped and enriched listings (url is unique)
- price_history: Realized sales used as comparables
- competitor_metrics: Auction-house performance snapshots
- scraping_cache: Discovered URLs per source with a TTL
- user_alerts: Saved alert criteria per user
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Any, Callable, Optional
from supabase import create_client, Client

from .config import get_supabase_config
from .exceptions import ConfigurationError, StoreError
from .models import (
    AuctionListing,
    CompetitorMetric,
    EnrichmentStatus,
    ListingStatus,
    PriceHistoryRecord,
    SiteCacheEntry,
    UserAlert,
    utcnow,
)

logger = logging.getLogger(__name__)

LISTINGS_TABLE = "firearms_auctions"
PRICE_HISTORY_TABLE = "price_history"
COMPETITOR_METRICS_TABLE = "competitor_metrics"
SCRAPING_CACHE_TABLE = "scraping_cache"
USER_ALERTS_TABLE = "user_alerts"

# Rows per request for full-table reads; PostgREST caps unpaged selects
PAGE_SIZE = 1000


def _insert_payload(data: dict) -> dict:
    """Drop the store-assigned id from a row before inserting it."""
    payload = dict(data)
    if payload.get("id") is None:
        payload.pop("id", None)
    return payload


class Database:
    """
    Supabase database client wrapper.

    Provides methods for all store operations needed by the ingestion
    pipeline, the enrichment queue, analytics and alerts.
    """

    def __init__(self, client: Optional[Client] = None):
        """Initialize Supabase client (or wrap an existing one)."""
        if client is None:
            config = get_supabase_config()
            if not config.url or not config.key:
                raise ConfigurationError(
                    "Supabase URL and key must be set in environment variables",
                    setting="SUPABASE_URL",
                )
            client = create_client(config.url, config.key)
        self._client: Client = client

    @property
    def client(self) -> Client:
        """Get the Supabase client."""
        return self._client

    def _select_all(self, build_query: Callable[[], Any], page_size: int = PAGE_SIZE) -> list[dict]:
        """
        Rows of a query read page by page until an empty page comes back.

        build_query must return a fresh, stably ordered select each call. A
        server row cap below page_size only means more pages.
        """
        rows: list[dict] = []
        while True:
            result = build_query().range(len(rows), len(rows) + page_size - 1).execute()
            if not result.data:
                return rows
            rows.extend(result.data)

    # =========================================================================
    # LISTING OPERATIONS
    # =========================================================================

    def get_listing(self, auction_id: int) -> Optional[AuctionListing]:
        """Get a listing by ID."""
        result = self._client.table(LISTINGS_TABLE).select("*").eq("id", auction_id).execute()
        return AuctionListing.from_dict(result.data[0]) if result.data else None

    def get_listing_by_url(self, url: str) -> Optional[AuctionListing]:
        """Get a listing by its canonical URL (the dedup key)."""
        result = self._client.table(LISTINGS_TABLE).select("*").eq("url", url).execute()
        return AuctionListing.from_dict(result.data[0]) if result.data else None

    def insert_listing(self, listing: AuctionListing) -> AuctionListing:
        """
        Insert a new listing.

        Returns:
            The stored listing, including its store-assigned id
        """
        result = self._client.table(LISTINGS_TABLE).insert(_insert_payload(listing.to_dict())).execute()
        if not result.data:
            raise StoreError(f"Insert returned no row for {listing.url}", table=LISTINGS_TABLE)
        stored = AuctionListing.from_dict(result.data[0])
        logger.info(f"Inserted new listing {stored.id}: {stored.title[:60]}")
        return stored

    def update_listing(self, auction_id: int, updates: dict) -> None:
        """Apply a partial update to a listing; updated_at is always refreshed."""
        payload = dict(updates)
        payload.setdefault("updated_at", utcnow().isoformat())
        self._client.table(LISTINGS_TABLE).update(payload).eq("id", auction_id).execute()
        logger.debug(f"Updated listing {auction_id}: {sorted(payload)}")

    def set_enrichment_status(self, auction_id: int, status: EnrichmentStatus) -> None:
        """Move a listing to a new enrichment status."""
        self.update_listing(auction_id, {"enrichment_status": status.value})

    def get_listings(
        self,
        category: Optional[str] = None,
        manufacturer: Optional[str] = None,
        caliber: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        condition: Optional[str] = None,
        state: Optional[str] = None,
        auction_house: Optional[str] = None,
        estate_sales_only: bool = False,
        nfa_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[AuctionListing]:
        """
        Query active listings with optional filters, newest scraped first.

        Args:
            category: Exact category
            manufacturer: Case-insensitive substring
            caliber: Case-insensitive substring
            min_price: Minimum current bid
            max_price: Maximum current bid
            condition: Exact condition grade
            state: Exact state code
            auction_house: Exact auction house
            estate_sales_only: Only estate-sale listings
            nfa_only: Only NFA items
            limit: Page size
            offset: Page offset

        Returns:
            List of AuctionListing objects
        """
        query = self._client.table(LISTINGS_TABLE).select("*").eq("status", ListingStatus.ACTIVE.value)

        if category:
            query = query.eq("category", category)
        if manufacturer:
            query = query.ilike("manufacturer", f"%{manufacturer}%")
        if caliber:
            query = query.ilike("caliber", f"%{caliber}%")
        if min_price is not None:
            query = query.gte("current_bid", min_price)
        if max_price is not None:
            query = query.lte("current_bid", max_price)
        if condition:
            query = query.eq("condition", condition)
        if state:
            query = query.eq("state", state)
        if auction_house:
            query = query.eq("auction_house", auction_house)
        if estate_sales_only:
            query = query.eq("is_estate_sale", True)
        if nfa_only:
            query = query.eq("nfa_item", True)

        result = query.order("scraped_at", desc=True).range(offset, offset + limit - 1).execute()
        return [AuctionListing.from_dict(row) for row in result.data]

    def get_active_listings(self) -> list[AuctionListing]:
        """Get every active listing."""
        rows = self._select_all(
            lambda: self._client.table(LISTINGS_TABLE).select("*").eq("status", ListingStatus.ACTIVE.value).order("id")
        )
        return [AuctionListing.from_dict(row) for row in rows]

    def get_listings_scraped_since(self, since: datetime) -> list[AuctionListing]:
        """Get listings first scraped at or after the given time."""
        result = self._client.table(LISTINGS_TABLE).select("*").gte("scraped_at", since.isoformat()).execute()
        return [AuctionListing.from_dict(row) for row in result.data]

    def get_listings_ending_between(self, start: datetime, end: datetime) -> list[AuctionListing]:
        """Get active listings whose auction date falls within [start, end]."""
        result = (
            self._client.table(LISTINGS_TABLE)
            .select("*")
            .eq("status", ListingStatus.ACTIVE.value)
            .gte("auction_date", start.isoformat())
            .lte("auction_date", end.isoformat())
            .order("auction_date")
            .execute()
        )
        return [AuctionListing.from_dict(row) for row in result.data]

    def get_sold_listings(
        self,
        start: datetime,
        end: datetime,
        auction_house: Optional[str] = None,
        category: Optional[str] = None,
    ) -> list[AuctionListing]:
        """Get sold listings with an auction date inside the window."""
        query = (
            self._client.table(LISTINGS_TABLE)
            .select("*")
            .eq("status", ListingStatus.SOLD.value)
            .gte("auction_date", start.isoformat())
            .lte("auction_date", end.isoformat())
        )
        if auction_house:
            query = query.eq("auction_house", auction_house)
        if category:
            query = query.eq("category", category)
        result = query.execute()
        return [AuctionListing.from_dict(row) for row in result.data]

    # =========================================================================
    # ENRICHMENT BOOKKEEPING
    # =========================================================================

    def get_listing_ids_by_enrichment_status(self, status: EnrichmentStatus) -> list[int]:
        """IDs of listings currently in the given enrichment status."""
        rows = self._select_all(
            lambda: self._client.table(LISTINGS_TABLE).select("id").eq("enrichment_status", status.value).order("id")
        )
        return [row["id"] for row in rows]

    def get_all_listing_ids(self) -> list[int]:
        """IDs of every listing."""
        rows = self._select_all(lambda: self._client.table(LISTINGS_TABLE).select("id").order("id"))
        return [row["id"] for row in rows]

    def reset_enrichment_status(self) -> int:
        """Mark every listing pending again (forced re-enrichment)."""
        result = (
            self._client.table(LISTINGS_TABLE)
            .update({"enrichment_status": EnrichmentStatus.PENDING.value, "updated_at": utcnow().isoformat()})
            .neq("enrichment_status", EnrichmentStatus.PENDING.value)
            .execute()
        )
        count = len(result.data or [])
        logger.info(f"Reset {count} listings to pending")
        return count

    def reset_stale_processing(self, cutoff: datetime) -> int:
        """
        Reset listings stuck in processing since before the cutoff.

        A listing stays in processing only while an enrichment call is in
        flight, so anything older than the cutoff was abandoned by a crash.

        Returns:
            Number of listings moved back to pending
        """
        result = (
            self._client.table(LISTINGS_TABLE)
            .update({"enrichment_status": EnrichmentStatus.PENDING.value, "updated_at": utcnow().isoformat()})
            .eq("enrichment_status", EnrichmentStatus.PROCESSING.value)
            .lt("updated_at", cutoff.isoformat())
            .execute()
        )
        count = len(result.data or [])
        if count:
            logger.warning(f"Reset {count} stale processing listings to pending")
        return count

    def count_listings_by_enrichment_status(self) -> dict[str, int]:
        """Number of listings per enrichment status."""
        rows = self._select_all(lambda: self._client.table(LISTINGS_TABLE).select("id, enrichment_status").order("id"))
        counts = Counter(row.get("enrichment_status") for row in rows)
        return {status.value: counts.get(status.value, 0) for status in EnrichmentStatus}

    # =========================================================================
    # PRICE HISTORY OPERATIONS
    # =========================================================================

    def insert_price_record(self, record: PriceHistoryRecord) -> PriceHistoryRecord:
        """Append a realized sale."""
        result = self._client.table(PRICE_HISTORY_TABLE).insert(_insert_payload(record.to_dict())).execute()
        if not result.data:
            raise StoreError("Insert returned no price history row", table=PRICE_HISTORY_TABLE)
        return PriceHistoryRecord.from_dict(result.data[0])

    def get_price_history_since(self, since: datetime) -> list[PriceHistoryRecord]:
        """Price records with auction_date >= since, oldest first."""
        result = (
            self._client.table(PRICE_HISTORY_TABLE)
            .select("*")
            .gte("auction_date", since.isoformat())
            .order("auction_date")
            .execute()
        )
        return [PriceHistoryRecord.from_dict(row) for row in result.data]

    def get_comparable_sales(
        self,
        manufacturer_normalized: str,
        model_normalized: str,
        condition: Optional[str] = None,
        limit: int = 20,
    ) -> list[PriceHistoryRecord]:
        """Most recent sales for a normalized manufacturer/model (and condition)."""
        query = (
            self._client.table(PRICE_HISTORY_TABLE)
            .select("*")
            .eq("manufacturer_normalized", manufacturer_normalized)
            .eq("model_normalized", model_normalized)
        )
        if condition:
            query = query.eq("condition", condition)
        result = query.order("auction_date", desc=True).limit(limit).execute()
        return [PriceHistoryRecord.from_dict(row) for row in result.data]

    def get_all_price_history(self, page_size: int = PAGE_SIZE) -> list[PriceHistoryRecord]:
        """
        Every price record, most recent sale first.

        Used to build an in-memory comparable index, so every page is read.
        """
        rows = self._select_all(
            lambda: (
                self._client.table(PRICE_HISTORY_TABLE)
                .select("*")
                .order("auction_date", desc=True)
                .order("id")
            ),
            page_size=page_size,
        )
        records = [PriceHistoryRecord.from_dict(row) for row in rows]
        logger.debug(f"Loaded {len(records)} price records in pages of {page_size}")
        return records

    # =========================================================================
    # COMPETITOR METRIC OPERATIONS
    # =========================================================================

    def insert_competitor_metric(self, metric: CompetitorMetric) -> CompetitorMetric:
        """Append a competitor snapshot."""
        result = self._client.table(COMPETITOR_METRICS_TABLE).insert(_insert_payload(metric.to_dict())).execute()
        if not result.data:
            raise StoreError("Insert returned no competitor metric row", table=COMPETITOR_METRICS_TABLE)
        logger.info(f"Recorded competitor metric for {metric.auction_house} / {metric.category}")
        return CompetitorMetric.from_dict(result.data[0])

    def get_competitor_metrics(self, category: Optional[str] = None) -> list[CompetitorMetric]:
        """All competitor snapshots, optionally for one category."""
        query = self._client.table(COMPETITOR_METRICS_TABLE).select("*")
        if category:
            query = query.eq("category", category)
        result = query.execute()
        return [CompetitorMetric.from_dict(row) for row in result.data]

    # =========================================================================
    # SCRAPING CACHE OPERATIONS
    # =========================================================================

    def get_cache_entry(self, source_url: str) -> Optional[SiteCacheEntry]:
        """Cached site map for a source, whether or not it has expired."""
        result = self._client.table(SCRAPING_CACHE_TABLE).select("*").eq("source_url", source_url).execute()
        return SiteCacheEntry.from_dict(result.data[0]) if result.data else None

    def upsert_cache_entry(self, entry: SiteCacheEntry) -> None:
        """Insert or replace the cached site map of a source."""
        payload = _insert_payload(entry.to_dict())
        payload.pop("id", None)
        self._client.table(SCRAPING_CACHE_TABLE).upsert(payload, on_conflict="source_url").execute()
        logger.debug(f"Cached {len(entry.discovered_urls)} URLs for {entry.source_name}")

    def expire_cache_entry(self, source_url: str, expires_at: datetime) -> None:
        """Set a cache entry's expiry."""
        self._client.table(SCRAPING_CACHE_TABLE).update({
            "expires_at": expires_at.isoformat(),
        }).eq("source_url", source_url).execute()

    def get_cache_entries(self) -> list[SiteCacheEntry]:
        """Every cached site map."""
        result = self._client.table(SCRAPING_CACHE_TABLE).select("*").execute()
        return [SiteCacheEntry.from_dict(row) for row in result.data]

    # =========================================================================
    # USER ALERT OPERATIONS
    # =========================================================================

    def insert_user_alert(self, alert: UserAlert) -> UserAlert:
        """Create a user alert."""
        result = self._client.table(USER_ALERTS_TABLE).insert(_insert_payload(alert.to_dict())).execute()
        if not result.data:
            raise StoreError("Insert returned no user alert row", table=USER_ALERTS_TABLE)
        stored = UserAlert.from_dict(result.data[0])
        logger.info(f"Created alert {stored.id} for user {stored.user_id}")
        return stored

    def get_user_alert(self, alert_id: int) -> Optional[UserAlert]:
        """Get a user alert by ID."""
        result = self._client.table(USER_ALERTS_TABLE).select("*").eq("id", alert_id).execute()
        return UserAlert.from_dict(result.data[0]) if result.data else None

    def get_user_alerts(self, user_id: str) -> list[UserAlert]:
        """All alerts of a user, newest first."""
        result = (
            self._client.table(USER_ALERTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .order("created_at", desc=True)
            .execute()
        )
        return [UserAlert.from_dict(row) for row in result.data]

    def get_active_user_alerts(self) -> list[UserAlert]:
        """All active alerts across users."""
        result = self._client.table(USER_ALERTS_TABLE).select("*").eq("active", True).execute()
        return [UserAlert.from_dict(row) for row in result.data]

    def get_alerts_triggered_since(self, user_id: str, since: datetime) -> list[UserAlert]:
        """Alerts of a user that fired at or after the given time, newest first."""
        result = (
            self._client.table(USER_ALERTS_TABLE)
            .select("*")
            .eq("user_id", user_id)
            .gte("last_triggered", since.isoformat())
            .order("last_triggered", desc=True)
            .execute()
        )
        return [UserAlert.from_dict(row) for row in result.data]

    def update_user_alert(self, alert_id: int, updates: dict) -> Optional[UserAlert]:
        """Apply a partial update to a user alert."""
        result = self._client.table(USER_ALERTS_TABLE).update(updates).eq("id", alert_id).execute()
        return UserAlert.from_dict(result.data[0]) if result.data else None

    def delete_user_alert(self, alert_id: int) -> bool:
        """Delete a user alert. Returns False if it did not exist."""
        result = self._client.table(USER_ALERTS_TABLE).delete().eq("id", alert_id).execute()
        return bool(result.data)


# Global database instance (lazy loaded)
_db: Optional[Database] = None


def get_db() -> Database:
    """Get database instance (singleton)."""
    global _db
    if _db is None:
        _db = Database()
    return _db


def set_db(db: Optional[Database]) -> None:
    """Replace the global database instance (None resets it)."""
    global _db
    _db = db
