"""
Price analytics engine for Firearm Auction Intelligence.

Computes market intelligence over the structured data:
- Price trends: average realized price and volume per day
- Comparables: statistics over recent sales of the same manufacturer/model
- Opportunities: active listings bid well below their comparables
- Competitor comparison: auction-house volume, prices and market share
- Dashboard metrics, category breakdowns and estate-sale listings

Everything is computed on read from the store; nothing here is cached.
"""

import logging
import statistics
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterator, Optional, Protocol

from .config import AppConfig, get_app_config
from .db import Database, get_db
from .models import (
    AuctionListing,
    CompetitorMetric,
    EnrichmentStatus,
    ListingStatus,
    PriceHistoryRecord,
    normalize_key,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# RESULT TYPES
# =============================================================================

@dataclass
class PriceTrend:
    """Realized prices of one calendar day."""
    date: str  # YYYY-MM-DD
    avg_price: float
    volume: int

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ComparableSale:
    """A price history record as shown next to a price analysis."""
    id: Optional[int]
    manufacturer: str
    model: str
    condition: Optional[str]
    sale_price: float
    auction_date: str  # YYYY-MM-DD
    auction_house: Optional[str]

    @classmethod
    def from_record(cls, record: PriceHistoryRecord) -> "ComparableSale":
        return cls(
            id=record.id,
            manufacturer=record.manufacturer,
            model=record.model,
            condition=record.condition,
            sale_price=record.sale_price,
            auction_date=record.auction_date.date().isoformat(),
            auction_house=record.auction_house,
        )


@dataclass
class PriceAnalysis:
    """Statistics over the comparables of a manufacturer/model."""
    average_price: float = 0.0
    median_price: float = 0.0
    min_price: float = 0.0
    max_price: float = 0.0
    price_deviation: float = 0.0  # coefficient of variation, percent
    sample_size: int = 0
    comparables: list[ComparableSale] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class OpportunityItem:
    """An active listing bid materially below its comparables."""
    id: int
    title: str
    manufacturer: str
    model: str
    current_bid: float
    estimated_value: float
    deviation: float  # percent below the comparable average
    auction_date: Optional[str]
    url: str

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class CompetitorSummary:
    """Aggregated snapshots of one auction house in one category."""
    auction_house: str
    category: str
    avg_sale_price: float
    total_volume: int
    realization_rate: float
    market_share: float

    def to_dict(self) -> dict:
        return asdict(self)


def compute_price_statistics(prices: list[float]) -> PriceAnalysis:
    """
    Summary statistics of a list of sale prices.

    The median is the upper-middle element for even sample sizes, and the
    deviation is the population standard deviation relative to the mean.
    """
    if not prices:
        return PriceAnalysis()

    ordered = sorted(prices)
    mean = statistics.fmean(ordered)
    stddev = statistics.pstdev(ordered)

    return PriceAnalysis(
        average_price=round(mean, 2),
        median_price=round(ordered[len(ordered) // 2], 2),
        min_price=ordered[0],
        max_price=ordered[-1],
        price_deviation=round(stddev / mean * 100, 2) if mean else 0.0,
        sample_size=len(ordered),
    )


# =============================================================================
# COMPARABLE LOOKUP
# =============================================================================

class ComparableSource(Protocol):
    """Looks up recent sales of a normalized manufacturer/model."""

    def find(
        self,
        manufacturer: str,
        model: str,
        condition: Optional[str],
        limit: int,
    ) -> list[PriceHistoryRecord]:
        ...


class StoreComparableSource:
    """Queries the price history table on every lookup."""

    def __init__(self, db: Database):
        self.db = db

    def find(self, manufacturer: str, model: str, condition: Optional[str], limit: int) -> list[PriceHistoryRecord]:
        return self.db.get_comparable_sales(normalize_key(manufacturer), normalize_key(model), condition, limit)


class IndexedComparableSource:
    """
    In-memory index of price history, keyed by normalized manufacturer/model.

    Build one per batch of lookups (e.g. an opportunity scan) to avoid a
    store query per listing.
    """

    def __init__(self, records: list[PriceHistoryRecord]):
        self._index: dict[tuple[str, str], list[PriceHistoryRecord]] = defaultdict(list)
        for record in records:
            self._index[(record.manufacturer_normalized, record.model_normalized)].append(record)
        for bucket in self._index.values():
            bucket.sort(key=lambda r: r.auction_date, reverse=True)

    @classmethod
    def from_db(cls, db: Database) -> "IndexedComparableSource":
        return cls(db.get_all_price_history())

    def find(self, manufacturer: str, model: str, condition: Optional[str], limit: int) -> list[PriceHistoryRecord]:
        bucket = self._index.get((normalize_key(manufacturer), normalize_key(model)), [])
        if condition:
            bucket = [r for r in bucket if r.condition == condition]
        return bucket[:limit]


# =============================================================================
# ANALYTICS ENGINE
# =============================================================================

class PriceAnalytics:
    """
    Price intelligence over listings, price history and competitor snapshots.

    Usage:
        analytics = PriceAnalytics()
        analysis = analytics.find_comparables("Colt", "Python")
        opportunities = analytics.find_opportunities(threshold=20)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        comparables: Optional[ComparableSource] = None,
        config: Optional[AppConfig] = None,
    ):
        self.db = db or get_db()
        self.comparables = comparables or StoreComparableSource(self.db)
        self.config = config or get_app_config()

    # =========================================================================
    # PRICE TRENDS
    # =========================================================================

    def iter_price_trends(self, category: Optional[str] = None, days: int = 30) -> Iterator[PriceTrend]:
        """
        Daily average price and volume, oldest day first.

        Args:
            category: Only records of this category; None or "all" for every record
            days: Look-back window
        """
        cutoff = utcnow() - timedelta(days=days)
        records = self.db.get_price_history_since(cutoff)
        if category and category.lower() != "all":
            records = [r for r in records if r.category and r.category.lower() == category.lower()]

        by_day: dict[str, list[float]] = defaultdict(list)
        for record in records:
            by_day[record.auction_date.date().isoformat()].append(record.sale_price)

        for day in sorted(by_day):
            prices = by_day[day]
            yield PriceTrend(date=day, avg_price=round(statistics.fmean(prices), 2), volume=len(prices))

    def get_price_trends(self, category: Optional[str] = None, days: int = 30) -> list[PriceTrend]:
        """Materialized iter_price_trends()."""
        return list(self.iter_price_trends(category, days))

    # =========================================================================
    # COMPARABLES AND OPPORTUNITIES
    # =========================================================================

    def find_comparables(
        self,
        manufacturer: str,
        model: str,
        condition: Optional[str] = None,
        limit: int = 10,
        source: Optional[ComparableSource] = None,
    ) -> PriceAnalysis:
        """
        Statistics over recent sales of the same manufacturer/model.

        Statistics use up to 2 * limit of the most recent sales; the
        returned comparables are the limit most recent ones.

        Returns:
            PriceAnalysis (all zeros when there are no comparables)
        """
        records = (source or self.comparables).find(manufacturer, model, condition, limit * 2)
        analysis = compute_price_statistics([r.sale_price for r in records])
        analysis.comparables = [ComparableSale.from_record(r) for r in records[:limit]]
        return analysis

    def find_opportunities(self, threshold: Optional[float] = None) -> list[OpportunityItem]:
        """
        Active enriched listings bid at least threshold percent below the
        average of their comparables, best deals first.

        Listings with fewer than min_comparables sales are skipped.
        """
        threshold = self.config.opportunity_threshold if threshold is None else threshold
        candidates = [
            listing for listing in self.db.get_active_listings()
            if listing.enrichment_status == EnrichmentStatus.COMPLETED
            and listing.manufacturer and listing.model and listing.current_bid
        ]
        if not candidates:
            return []

        index = IndexedComparableSource.from_db(self.db)
        opportunities = []
        for listing in candidates:
            analysis = self.find_comparables(listing.manufacturer, listing.model, listing.condition, source=index)
            if analysis.sample_size < self.config.min_comparables or not analysis.average_price:
                continue

            deviation = (analysis.average_price - listing.current_bid) / analysis.average_price * 100
            if deviation >= threshold:
                opportunities.append(OpportunityItem(
                    id=listing.id,
                    title=f"{listing.manufacturer} {listing.model}",
                    manufacturer=listing.manufacturer,
                    model=listing.model,
                    current_bid=listing.current_bid,
                    estimated_value=analysis.average_price,
                    deviation=round(deviation, 1),
                    auction_date=listing.auction_date.isoformat() if listing.auction_date else None,
                    url=listing.url,
                ))

        opportunities.sort(key=lambda o: o.deviation, reverse=True)
        logger.info(f"Found {len(opportunities)} opportunities among {len(candidates)} listings")
        return opportunities

    # =========================================================================
    # COMPETITOR INTELLIGENCE
    # =========================================================================

    def get_competitor_comparison(self, category: Optional[str] = None) -> list[CompetitorSummary]:
        """
        Aggregate competitor snapshots per auction house and category.

        Market share is each group's share of the total volume; the result
        is ordered by volume, largest first.
        """
        groups: dict[tuple[str, str], list[CompetitorMetric]] = defaultdict(list)
        for metric in self.db.get_competitor_metrics(category):
            groups[(metric.auction_house, metric.category)].append(metric)

        total_volume = sum(m.total_volume for metrics in groups.values() for m in metrics)
        summaries = []
        for (house, cat), metrics in groups.items():
            volume = sum(m.total_volume for m in metrics)
            summaries.append(CompetitorSummary(
                auction_house=house,
                category=cat,
                avg_sale_price=round(statistics.fmean(m.avg_sale_price for m in metrics), 2),
                total_volume=volume,
                realization_rate=round(statistics.fmean(m.realization_rate for m in metrics), 2),
                market_share=round(volume / total_volume * 100, 2) if total_volume else 0.0,
            ))

        summaries.sort(key=lambda s: s.total_volume, reverse=True)
        return summaries

    def update_competitor_metrics(
        self,
        auction_house: str,
        category: str,
        start: datetime,
        end: datetime,
    ) -> Optional[CompetitorMetric]:
        """
        Append a snapshot for one auction house and category.

        Realization is the mean of sale price over estimate midpoint (100
        when a listing has no usable estimate).

        Returns:
            The stored snapshot, or None if nothing sold in the window
        """
        sold = self.db.get_sold_listings(start, end, auction_house=auction_house, category=category)
        if not sold:
            logger.info(f"No sold listings for {auction_house} / {category}, skipping snapshot")
            return None

        prices = [listing.current_bid for listing in sold if listing.current_bid is not None]
        realization = []
        for listing in sold:
            if listing.estimate_low is None or listing.current_bid is None:
                continue
            midpoint = (listing.estimate_low + (listing.estimate_high or 0)) / 2
            realization.append(listing.current_bid / midpoint * 100 if midpoint > 0 else 100.0)

        metric = CompetitorMetric(
            auction_house=auction_house,
            category=category,
            avg_sale_price=round(statistics.fmean(prices), 2) if prices else 0.0,
            total_volume=len(sold),
            realization_rate=round(statistics.fmean(realization), 2) if realization else 100.0,
            date_range_start=start,
            date_range_end=end,
        )
        return self.db.insert_competitor_metric(metric)

    def refresh_competitor_metrics(self, days: int = 30) -> int:
        """
        Snapshot every auction house/category pair with sales in the window.

        Returns:
            Number of snapshots written
        """
        end = utcnow()
        start = end - timedelta(days=days)
        pairs = sorted({
            (listing.auction_house, listing.category)
            for listing in self.db.get_sold_listings(start, end)
            if listing.auction_house and listing.category
        })

        written = 0
        for house, category in pairs:
            if self.update_competitor_metrics(house, category, start, end) is not None:
                written += 1
        logger.info(f"Refreshed {written} competitor snapshots over the last {days} days")
        return written

    def record_sale(
        self,
        manufacturer: str,
        model: str,
        sale_price: float,
        auction_date: datetime,
        caliber: Optional[str] = None,
        condition: Optional[str] = None,
        category: Optional[str] = None,
        auction_house: Optional[str] = None,
        source_url: Optional[str] = None,
    ) -> PriceHistoryRecord:
        """Append a realized sale to the price history."""
        record = PriceHistoryRecord(
            manufacturer=manufacturer.strip(),
            model=model.strip(),
            sale_price=sale_price,
            auction_date=auction_date,
            caliber=caliber,
            condition=condition,
            category=category,
            auction_house=auction_house,
            source_url=source_url,
        )
        return self.db.insert_price_record(record)

    # =========================================================================
    # DASHBOARD
    # =========================================================================

    def get_category_breakdown(self) -> list[dict]:
        """Active listings per category, largest first."""
        counts: dict[str, int] = defaultdict(int)
        for listing in self.db.get_active_listings():
            counts[listing.category or "Uncategorized"] += 1
        return [
            {"category": category, "count": count}
            for category, count in sorted(counts.items(), key=lambda item: (-item[1], item[0]))
        ]

    def get_trending_categories(self, days: int = 7, top: int = 10) -> list[dict]:
        """Categories with the most active listings scraped recently."""
        cutoff = utcnow() - timedelta(days=days)
        by_category: dict[str, list[AuctionListing]] = defaultdict(list)
        for listing in self.db.get_listings_scraped_since(cutoff):
            if listing.status == ListingStatus.ACTIVE and listing.category:
                by_category[listing.category].append(listing)

        trends = []
        for category, listings in by_category.items():
            bids = [listing.current_bid for listing in listings if listing.current_bid]
            trends.append({
                "category": category,
                "volume": len(listings),
                "avg_bid": round(statistics.fmean(bids), 2) if bids else 0.0,
            })
        trends.sort(key=lambda t: t["volume"], reverse=True)
        return trends[:top]

    def get_upcoming_estate_sales(self, limit: int = 50) -> list[dict]:
        """Active estate-sale listings, soonest auction first."""
        estate = [listing for listing in self.db.get_active_listings() if listing.is_estate_sale]
        estate.sort(key=lambda l: (l.auction_date is None, l.auction_date or utcnow()))
        return [
            {
                "id": listing.id,
                "title": listing.title,
                "url": listing.url,
                "manufacturer": listing.manufacturer,
                "model": listing.model,
                "collection_name": listing.collection_name,
                "estate_size": listing.estate_size,
                "city": listing.city,
                "state": listing.state,
                "auction_date": listing.auction_date.isoformat() if listing.auction_date else None,
                "current_bid": listing.current_bid,
            }
            for listing in estate[:limit]
        ]

    def get_dashboard_metrics(self) -> dict:
        """Headline numbers for the dashboard."""
        now = utcnow()
        active = self.db.get_active_listings()
        ending_soon = self.db.get_listings_ending_between(now, now + timedelta(hours=24))
        opportunities = self.find_opportunities()
        avg_deviation = statistics.fmean(o.deviation for o in opportunities) if opportunities else 0.0
        enrichment = self.db.count_listings_by_enrichment_status()

        return {
            "active_auctions": len(active),
            "ending_soon": len(ending_soon),
            "opportunities": len(opportunities),
            "avg_deviation": round(avg_deviation, 2),
            "estate_sales": sum(1 for listing in active if listing.is_estate_sale),
            "enrichment": {"total": sum(enrichment.values()), **enrichment},
        }


# Global analytics instance (lazy loaded)
_analytics: Optional[PriceAnalytics] = None


def get_analytics() -> PriceAnalytics:
    """Get analytics engine instance (singleton)."""
    global _analytics
    if _analytics is None:
        _analytics = PriceAnalytics()
    return _analytics
