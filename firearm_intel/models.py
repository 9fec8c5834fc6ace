"""
Data models for Firearm Auction Intelligence.

Defines the canonical dataclasses that scraped listings, enrichment output,
price history, competitor snapshots, cached site maps and user alerts are
stored as. Every model maps to one store table through to_dict()/from_dict().
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """
    Parse a stored timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing "Z")
    and None. Naive values are assumed to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class ListingStatus(str, Enum):
    """Lifecycle of the auction itself."""
    ACTIVE = "active"
    SOLD = "sold"
    CANCELLED = "cancelled"


class EnrichmentStatus(str, Enum):
    """Lifecycle of the AI enrichment of a listing."""
    PENDING = "pending"          # Inserted, waiting for the queue
    PROCESSING = "processing"    # Claimed by an enrichment call
    COMPLETED = "completed"
    FAILED = "failed"


class Priority(str, Enum):
    """Enrichment queue priority tiers."""
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.NORMAL: 1, Priority.LOW: 2}


class SourceCategory(str, Enum):
    """Kind of auction source being scraped."""
    ESTATE = "estate"
    COMPETITOR = "competitor"


# Ordered from least to most rare
RARITY_LEVELS = ["Common", "Scarce", "Rare", "Extremely Rare"]

FIREARM_CATEGORIES = ["Handgun", "Rifle", "Shotgun", "Machine Gun", "Antique", "Military"]
CONDITION_GRADES = ["NIB", "Excellent", "Very Good", "Good", "Fair", "Poor"]
TRANSFER_TYPES = ["Standard", "C&R", "NFA", "Antique"]
ESTATE_SIZES = ["Small", "Medium", "Large", "Collection"]


def rarity_level(rarity: Optional[str]) -> int:
    """Ordinal of a rarity label; unknown or missing labels count as Common."""
    if not rarity:
        return 0
    for index, level in enumerate(RARITY_LEVELS):
        if level.lower() == rarity.strip().lower():
            return index
    return 0


@dataclass(frozen=True)
class AuctionSource:
    """A configured auction-house or estate-sale website."""
    name: str
    url: str
    city: str
    state: str
    category: SourceCategory = SourceCategory.COMPETITOR
    # Overrides the default "<url>/*" crawl pattern for full extraction
    extract_url: Optional[str] = None

    @property
    def crawl_url(self) -> str:
        return self.extract_url or f"{self.url.rstrip('/')}/*"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "url": self.url,
            "city": self.city,
            "state": self.state,
            "category": self.category.value,
        }


@dataclass
class AuctionListing:
    """
    Canonical representation of a scraped firearms auction listing.

    Raw fields come from the scrape; the enrichable fields stay empty until
    the enrichment transform completes for the listing.
    """
    # Identity
    url: str
    title: str
    id: Optional[int] = None

    # Raw
    description: str = ""
    source_website: str = ""
    scraped_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Identification
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    caliber: Optional[str] = None
    serial_number: Optional[str] = None
    year_manufactured: Optional[int] = None
    category: Optional[str] = None
    sub_category: Optional[str] = None

    # Condition
    condition: Optional[str] = None
    bore_condition: Optional[str] = None
    finish_percentage: Optional[int] = None
    original_parts: Optional[bool] = None
    mechanical_function: Optional[str] = None

    # Value
    provenance: Optional[str] = None
    rarity: Optional[str] = None
    desirability: Optional[int] = None  # 1-10
    investment_grade: Optional[bool] = None

    # Legal
    transfer_type: Optional[str] = None
    nfa_item: Optional[bool] = None

    # Extras
    included_accessories: Optional[list[str]] = None
    original_box: Optional[bool] = None
    paperwork: Optional[bool] = None

    # Estate sale
    is_estate_sale: Optional[bool] = None
    estate_size: Optional[str] = None
    collection_name: Optional[str] = None

    # Auction economics
    auction_house: Optional[str] = None
    lot_number: Optional[str] = None
    starting_bid: Optional[float] = None
    current_bid: Optional[float] = None
    estimate_low: Optional[float] = None
    estimate_high: Optional[float] = None
    auction_date: Optional[datetime] = None

    # Geography
    city: Optional[str] = None
    state: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    # Lifecycle
    status: ListingStatus = ListingStatus.ACTIVE
    enrichment_status: EnrichmentStatus = EnrichmentStatus.PENDING
    enriched_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        """Manufacturer and model when known, otherwise the raw title."""
        name = " ".join(part for part in (self.manufacturer, self.model) if part)
        return name or self.title

    def to_dict(self) -> dict:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "url": self.url,
            "title": self.title,
            "description": self.description,
            "source_website": self.source_website,
            "scraped_at": _iso(self.scraped_at),
            "updated_at": _iso(self.updated_at),
            "manufacturer": self.manufacturer,
            "model": self.model,
            "caliber": self.caliber,
            "serial_number": self.serial_number,
            "year_manufactured": self.year_manufactured,
            "category": self.category,
            "sub_category": self.sub_category,
            "condition": self.condition,
            "bore_condition": self.bore_condition,
            "finish_percentage": self.finish_percentage,
            "original_parts": self.original_parts,
            "mechanical_function": self.mechanical_function,
            "provenance": self.provenance,
            "rarity": self.rarity,
            "desirability": self.desirability,
            "investment_grade": self.investment_grade,
            "transfer_type": self.transfer_type,
            "nfa_item": self.nfa_item,
            "included_accessories": self.included_accessories,
            "original_box": self.original_box,
            "paperwork": self.paperwork,
            "is_estate_sale": self.is_estate_sale,
            "estate_size": self.estate_size,
            "collection_name": self.collection_name,
            "auction_house": self.auction_house,
            "lot_number": self.lot_number,
            "starting_bid": self.starting_bid,
            "current_bid": self.current_bid,
            "estimate_low": self.estimate_low,
            "estimate_high": self.estimate_high,
            "auction_date": _iso(self.auction_date),
            "city": self.city,
            "state": self.state,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "status": self.status.value,
            "enrichment_status": self.enrichment_status.value,
            "enriched_at": _iso(self.enriched_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuctionListing":
        """Create from dictionary (e.g., from database)."""
        return cls(
            id=data.get("id"),
            url=data["url"],
            title=data.get("title") or "",
            description=data.get("description") or "",
            source_website=data.get("source_website") or "",
            scraped_at=parse_datetime(data.get("scraped_at")) or utcnow(),
            updated_at=parse_datetime(data.get("updated_at")) or utcnow(),
            manufacturer=data.get("manufacturer"),
            model=data.get("model"),
            caliber=data.get("caliber"),
            serial_number=data.get("serial_number"),
            year_manufactured=data.get("year_manufactured"),
            category=data.get("category"),
            sub_category=data.get("sub_category"),
            condition=data.get("condition"),
            bore_condition=data.get("bore_condition"),
            finish_percentage=data.get("finish_percentage"),
            original_parts=data.get("original_parts"),
            mechanical_function=data.get("mechanical_function"),
            provenance=data.get("provenance"),
            rarity=data.get("rarity"),
            desirability=data.get("desirability"),
            investment_grade=data.get("investment_grade"),
            transfer_type=data.get("transfer_type"),
            nfa_item=data.get("nfa_item"),
            included_accessories=data.get("included_accessories"),
            original_box=data.get("original_box"),
            paperwork=data.get("paperwork"),
            is_estate_sale=data.get("is_estate_sale"),
            estate_size=data.get("estate_size"),
            collection_name=data.get("collection_name"),
            auction_house=data.get("auction_house"),
            lot_number=data.get("lot_number"),
            starting_bid=data.get("starting_bid"),
            current_bid=data.get("current_bid"),
            estimate_low=data.get("estimate_low"),
            estimate_high=data.get("estimate_high"),
            auction_date=parse_datetime(data.get("auction_date")),
            city=data.get("city"),
            state=data.get("state"),
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            status=ListingStatus(data.get("status") or "active"),
            enrichment_status=EnrichmentStatus(data.get("enrichment_status") or "pending"),
            enriched_at=parse_datetime(data.get("enriched_at")),
        )


@dataclass
class PriceHistoryRecord:
    """
    A realized sale used as a comparable.

    manufacturer_normalized/model_normalized are lower-cased and trimmed;
    they are the comparability key. Records are append-only.
    """
    manufacturer: str
    model: str
    sale_price: float
    auction_date: datetime
    manufacturer_normalized: str = ""
    model_normalized: str = ""
    caliber: Optional[str] = None
    condition: Optional[str] = None
    category: Optional[str] = None
    auction_house: Optional[str] = None
    source_url: Optional[str] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        if not self.manufacturer_normalized:
            self.manufacturer_normalized = normalize_key(self.manufacturer)
        if not self.model_normalized:
            self.model_normalized = normalize_key(self.model)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "manufacturer": self.manufacturer,
            "manufacturer_normalized": self.manufacturer_normalized,
            "model": self.model,
            "model_normalized": self.model_normalized,
            "caliber": self.caliber,
            "condition": self.condition,
            "category": self.category,
            "sale_price": self.sale_price,
            "auction_date": _iso(self.auction_date),
            "auction_house": self.auction_house,
            "source_url": self.source_url,
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PriceHistoryRecord":
        return cls(
            id=data.get("id"),
            manufacturer=data.get("manufacturer") or "",
            manufacturer_normalized=data.get("manufacturer_normalized") or "",
            model=data.get("model") or "",
            model_normalized=data.get("model_normalized") or "",
            caliber=data.get("caliber"),
            condition=data.get("condition"),
            category=data.get("category"),
            sale_price=float(data["sale_price"]),
            auction_date=parse_datetime(data["auction_date"]),
            auction_house=data.get("auction_house"),
            source_url=data.get("source_url"),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )


def normalize_key(value: Optional[str]) -> str:
    """Comparability key for manufacturer/model strings."""
    return (value or "").strip().lower()


@dataclass
class CompetitorMetric:
    """Point-in-time performance snapshot of one auction house in one category."""
    auction_house: str
    category: str
    avg_sale_price: float
    total_volume: int
    realization_rate: float
    date_range_start: datetime
    date_range_end: datetime
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "auction_house": self.auction_house,
            "category": self.category,
            "avg_sale_price": self.avg_sale_price,
            "total_volume": self.total_volume,
            "realization_rate": self.realization_rate,
            "date_range_start": _iso(self.date_range_start),
            "date_range_end": _iso(self.date_range_end),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CompetitorMetric":
        return cls(
            id=data.get("id"),
            auction_house=data["auction_house"],
            category=data["category"],
            avg_sale_price=float(data.get("avg_sale_price") or 0.0),
            total_volume=int(data.get("total_volume") or 0),
            realization_rate=float(data.get("realization_rate") or 0.0),
            date_range_start=parse_datetime(data["date_range_start"]),
            date_range_end=parse_datetime(data["date_range_end"]),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )


@dataclass
class SiteCacheEntry:
    """URLs previously discovered for one source, valid until expires_at."""
    source_url: str
    source_name: str
    discovered_urls: list[str]
    last_scraped: datetime
    expires_at: datetime
    auction_count: int = 0
    firearms_found: int = 0
    id: Optional[int] = None

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "source_url": self.source_url,
            "source_name": self.source_name,
            "discovered_urls": list(self.discovered_urls),
            "last_scraped": _iso(self.last_scraped),
            "expires_at": _iso(self.expires_at),
            "auction_count": self.auction_count,
            "firearms_found": self.firearms_found,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SiteCacheEntry":
        return cls(
            id=data.get("id"),
            source_url=data["source_url"],
            source_name=data.get("source_name") or "",
            discovered_urls=list(data.get("discovered_urls") or []),
            last_scraped=parse_datetime(data.get("last_scraped")) or utcnow(),
            expires_at=parse_datetime(data["expires_at"]),
            auction_count=int(data.get("auction_count") or 0),
            firearms_found=int(data.get("firearms_found") or 0),
        )


@dataclass
class AlertCriteria:
    """Filters a user alert matches new listings against. Empty fields are ignored."""
    manufacturer: Optional[str] = None
    model: Optional[str] = None
    caliber: Optional[str] = None
    category: Optional[str] = None
    condition: Optional[str] = None
    max_price: Optional[float] = None
    min_rarity: Optional[str] = None
    nfa_only: bool = False
    estate_sales_only: bool = False

    def is_empty(self) -> bool:
        return not any((
            self.manufacturer, self.model, self.caliber, self.category,
            self.condition, self.max_price is not None, self.min_rarity,
            self.nfa_only, self.estate_sales_only,
        ))

    def to_dict(self) -> dict:
        return {
            "manufacturer": self.manufacturer,
            "model": self.model,
            "caliber": self.caliber,
            "category": self.category,
            "condition": self.condition,
            "max_price": self.max_price,
            "min_rarity": self.min_rarity,
            "nfa_only": self.nfa_only,
            "estate_sales_only": self.estate_sales_only,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "AlertCriteria":
        data = data or {}
        max_price = data.get("max_price", data.get("maxPrice"))
        return cls(
            manufacturer=data.get("manufacturer") or None,
            model=data.get("model") or None,
            caliber=data.get("caliber") or None,
            category=data.get("category") or None,
            condition=data.get("condition") or None,
            max_price=float(max_price) if max_price not in (None, "") else None,
            min_rarity=data.get("min_rarity") or data.get("minRarity") or None,
            nfa_only=bool(data.get("nfa_only", data.get("nfaOnly", False))),
            estate_sales_only=bool(data.get("estate_sales_only", data.get("estateSalesOnly", False))),
        )


@dataclass
class UserAlert:
    """A saved search that is matched against newly scraped listings."""
    user_id: str
    alert_type: str
    criteria: AlertCriteria = field(default_factory=AlertCriteria)
    active: bool = True
    last_triggered: Optional[datetime] = None
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "alert_type": self.alert_type,
            "criteria": self.criteria.to_dict(),
            "active": self.active,
            "last_triggered": _iso(self.last_triggered),
            "created_at": _iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "UserAlert":
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            alert_type=data.get("alert_type") or "custom",
            criteria=AlertCriteria.from_dict(data.get("criteria")),
            active=data.get("active", True),
            last_triggered=parse_datetime(data.get("last_triggered")),
            created_at=parse_datetime(data.get("created_at")) or utcnow(),
        )
