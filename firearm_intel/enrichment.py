"""
Enrichment transform for Firearm Auction Intelligence.

Turns a scraped listing into structured firearm attributes:
1. Load the listing and mark it processing
2. Send title, description and auction metadata to the AI capability,
   constrained by ENRICHMENT_SCHEMA
3. Parse the answer defensively into an EnrichmentResult
4. Write every enriched field in a single update and mark it completed

Any failure marks the listing failed and re-raises, so the enrichment queue
can do its retry bookkeeping.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .ai_client import AICompletionClient
from .config import AppConfig, get_app_config
from .db import Database, get_db
from .exceptions import ListingNotFoundError
from .models import (
    CONDITION_GRADES,
    ESTATE_SIZES,
    FIREARM_CATEGORIES,
    RARITY_LEVELS,
    TRANSFER_TYPES,
    AuctionListing,
    EnrichmentStatus,
    ListingStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# PROMPT AND SCHEMA
# =============================================================================

ENRICHMENT_PROMPT = """You are an expert firearms appraiser. Extract structured information
from the firearms auction listing you are given.

Identify the manufacturer, model, caliber, serial number (if visible) and year of
manufacture. Classify the category (Handgun, Rifle, Shotgun, Machine Gun, Antique,
Military) and sub-category (Revolver, Semi-Auto, Bolt-Action, Lever-Action, ...).

Grade the condition (NIB, Excellent, Very Good, Good, Fair, Poor), bore condition,
finish percentage (0-100), whether parts are original, and mechanical function.

Assess value: provenance, rarity (Common, Scarce, Rare, Extremely Rare),
desirability on a 1-10 scale, whether it is investment grade, and key features.

Legal: transfer type (Standard, C&R, NFA, Antique), whether it is an NFA item, and
any restrictions.

Auction: auction house, lot number, estimate range, starting bid, current bid.

Extras: included accessories, original box, paperwork, special features.

Estate sale: whether it comes from an estate or private collection, collection size
(Small <10, Medium 10-50, Large 50-100, Collection 100+) and collection name.

Sold status: "sold" if the text says it was sold or the auction closed, "active" if
it is still available, "unknown" if unclear.

Use null or empty arrays for anything the listing does not state."""

_STR = {"type": ["string", "null"]}
_NUM = {"type": ["number", "null"]}
_INT = {"type": ["integer", "null"]}
_BOOL = {"type": ["boolean", "null"]}
_STR_LIST = {"type": "array", "items": {"type": "string"}}

ENRICHMENT_SCHEMA: dict = {
    "type": "object",
    "properties": {
        "identification": {
            "type": "object",
            "properties": {
                "manufacturer": _STR,
                "model": _STR,
                "caliber": _STR,
                "serialNumber": _STR,
                "yearManufactured": _INT,
                "category": _STR,
                "subCategory": _STR,
            },
        },
        "condition": {
            "type": "object",
            "properties": {
                "grade": _STR,
                "boreCondition": _STR,
                "finishPercentage": _INT,
                "originalParts": _BOOL,
                "mechanicalFunction": _STR,
                "notableIssues": _STR_LIST,
            },
        },
        "value": {
            "type": "object",
            "properties": {
                "provenance": _STR,
                "rarity": _STR,
                "desirability": _INT,
                "investmentGrade": _BOOL,
                "keyFeatures": _STR_LIST,
            },
        },
        "legal": {
            "type": "object",
            "properties": {
                "transferType": _STR,
                "nfaItem": _BOOL,
                "restrictions": _STR_LIST,
            },
        },
        "auction": {
            "type": "object",
            "properties": {
                "auctionHouse": _STR,
                "lotNumber": _STR,
                "estimateRange": {
                    "type": ["object", "null"],
                    "properties": {"low": _NUM, "high": _NUM},
                },
                "startingBid": _NUM,
                "currentBid": _NUM,
            },
        },
        "extras": {
            "type": "object",
            "properties": {
                "includedAccessories": _STR_LIST,
                "originalBox": _BOOL,
                "paperwork": _BOOL,
                "specialFeatures": _STR_LIST,
            },
        },
        "estateSale": {
            "type": "object",
            "properties": {
                "isEstateSale": _BOOL,
                "collectionSize": _STR,
                "collectionName": _STR,
            },
        },
        "soldStatus": {"type": "string", "enum": ["sold", "active", "unknown"]},
        "soldIndicators": _STR,
    },
    "required": ["identification", "condition", "value", "legal", "auction", "extras", "estateSale", "soldStatus"],
}


# =============================================================================
# DEFENSIVE FIELD PARSING
# =============================================================================

def _section(data: dict, key: str) -> dict:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> Optional[str]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        value = value.strip()
        return value if value and value.lower() not in ("null", "none", "n/a") else None
    return None


def _int(value: Any, low: Optional[int] = None, high: Optional[int] = None) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = int(float(str(value).strip().rstrip("%")))
    except (ValueError, OverflowError):
        return None
    if (low is not None and number < low) or (high is not None and number > high):
        return None
    return number


def _money(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(str(value).replace("$", "").replace(",", "").strip())
    except ValueError:
        return None
    return number if number > 0 else None


def _bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
    return None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [text for text in (_text(item) for item in value) if text]


def _choice(value: Any, options: Iterable[str], strict: bool = False) -> Optional[str]:
    """Match a label onto known options case-insensitively."""
    text = _text(value)
    if text is None:
        return None
    for option in options:
        if option.lower() == text.lower():
            return option
    return None if strict else text


def resolve_status(current: ListingStatus, sold_status: str) -> ListingStatus:
    """
    Listing status after enrichment.

    Only a definite "sold" or "active" verdict changes the status; "unknown"
    never downgrades what is already known.
    """
    if sold_status == "sold":
        return ListingStatus.SOLD
    if sold_status == "active":
        return ListingStatus.ACTIVE
    return current


# =============================================================================
# ENRICHMENT RESULT
# =============================================================================

@dataclass
class EnrichmentResult:
    """Validated output of one enrichment call."""
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
    notable_issues: list[str] = field(default_factory=list)

    # Value
    provenance: Optional[str] = None
    rarity: Optional[str] = None
    desirability: Optional[int] = None
    investment_grade: Optional[bool] = None
    key_features: list[str] = field(default_factory=list)

    # Legal
    transfer_type: Optional[str] = None
    nfa_item: bool = False
    restrictions: list[str] = field(default_factory=list)

    # Auction
    auction_house: Optional[str] = None
    lot_number: Optional[str] = None
    estimate_low: Optional[float] = None
    estimate_high: Optional[float] = None
    starting_bid: Optional[float] = None
    current_bid: Optional[float] = None

    # Extras
    included_accessories: list[str] = field(default_factory=list)
    original_box: Optional[bool] = None
    paperwork: Optional[bool] = None
    special_features: list[str] = field(default_factory=list)

    # Estate sale
    is_estate_sale: bool = False
    estate_size: Optional[str] = None
    collection_name: Optional[str] = None

    # "sold", "active" or "unknown"
    sold_status: str = "unknown"

    @classmethod
    def from_response(cls, data: dict) -> "EnrichmentResult":
        """Build a result from the raw AI answer; bad fields become defaults."""
        ident = _section(data, "identification")
        cond = _section(data, "condition")
        value = _section(data, "value")
        legal = _section(data, "legal")
        auction = _section(data, "auction")
        extras = _section(data, "extras")
        estate = _section(data, "estateSale")
        estimate = auction.get("estimateRange") if isinstance(auction.get("estimateRange"), dict) else {}

        sold_status = _text(data.get("soldStatus"))
        sold_status = sold_status.lower() if sold_status else "unknown"
        if sold_status not in ("sold", "active"):
            sold_status = "unknown"

        return cls(
            manufacturer=_text(ident.get("manufacturer")),
            model=_text(ident.get("model")),
            caliber=_text(ident.get("caliber")),
            serial_number=_text(ident.get("serialNumber")),
            year_manufactured=_int(ident.get("yearManufactured"), low=1500, high=utcnow().year + 1),
            category=_choice(ident.get("category"), FIREARM_CATEGORIES),
            sub_category=_text(ident.get("subCategory")),
            condition=_choice(cond.get("grade"), CONDITION_GRADES),
            bore_condition=_text(cond.get("boreCondition")),
            finish_percentage=_int(cond.get("finishPercentage"), low=0, high=100),
            original_parts=_bool(cond.get("originalParts")),
            mechanical_function=_text(cond.get("mechanicalFunction")),
            notable_issues=_str_list(cond.get("notableIssues")),
            provenance=_text(value.get("provenance")),
            rarity=_choice(value.get("rarity"), RARITY_LEVELS, strict=True),
            desirability=_int(value.get("desirability"), low=1, high=10),
            investment_grade=_bool(value.get("investmentGrade")),
            key_features=_str_list(value.get("keyFeatures")),
            transfer_type=_choice(legal.get("transferType"), TRANSFER_TYPES),
            nfa_item=bool(_bool(legal.get("nfaItem"))),
            restrictions=_str_list(legal.get("restrictions")),
            auction_house=_text(auction.get("auctionHouse")),
            lot_number=_text(auction.get("lotNumber")),
            estimate_low=_money(estimate.get("low")),
            estimate_high=_money(estimate.get("high")),
            starting_bid=_money(auction.get("startingBid")),
            current_bid=_money(auction.get("currentBid")),
            included_accessories=_str_list(extras.get("includedAccessories")),
            original_box=_bool(extras.get("originalBox")),
            paperwork=_bool(extras.get("paperwork")),
            special_features=_str_list(extras.get("specialFeatures")),
            is_estate_sale=bool(_bool(estate.get("isEstateSale"))),
            estate_size=_choice(estate.get("collectionSize"), ESTATE_SIZES, strict=True),
            collection_name=_text(estate.get("collectionName")),
            sold_status=sold_status,
        )

    def to_updates(self, listing: AuctionListing) -> dict:
        """
        Column updates that apply this result to a listing.

        Auction economics fall back to the listing's current values when the
        AI did not report them.
        """
        now = utcnow().isoformat()
        return {
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
            "included_accessories": self.included_accessories or None,
            "original_box": self.original_box,
            "paperwork": self.paperwork,
            "is_estate_sale": self.is_estate_sale,
            "estate_size": self.estate_size,
            "collection_name": self.collection_name,
            "auction_house": self.auction_house or listing.auction_house,
            "lot_number": self.lot_number or listing.lot_number,
            "estimate_low": self.estimate_low or listing.estimate_low,
            "estimate_high": self.estimate_high or listing.estimate_high,
            "starting_bid": self.starting_bid or listing.starting_bid,
            "current_bid": self.current_bid or listing.current_bid,
            "status": resolve_status(listing.status, self.sold_status).value,
            "enrichment_status": EnrichmentStatus.COMPLETED.value,
            "enriched_at": now,
            "updated_at": now,
        }


def build_enrichment_input(listing: AuctionListing) -> dict:
    """Input document sent to the AI for one listing."""
    return {
        "title": listing.title,
        "description": listing.description,
        "url": listing.url,
        "sourceWebsite": listing.source_website,
        "currentBid": listing.current_bid,
        "startingBid": listing.starting_bid,
        "estimateLow": listing.estimate_low,
        "estimateHigh": listing.estimate_high,
        "lotNumber": listing.lot_number,
        "auctionDate": listing.auction_date.isoformat() if listing.auction_date else None,
    }


# =============================================================================
# ENRICHMENT SERVICE
# =============================================================================

class EnrichmentService:
    """
    Enriches stored listings through the AI capability.

    Usage:
        service = EnrichmentService()
        result = await service.enrich(auction_id)
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        ai: Optional[AICompletionClient] = None,
        config: Optional[AppConfig] = None,
    ):
        self.db = db or get_db()
        self._ai = ai
        self.config = config or get_app_config()

    @property
    def ai(self) -> AICompletionClient:
        if self._ai is None:
            self._ai = AICompletionClient()
        return self._ai

    async def enrich(self, auction_id: int) -> EnrichmentResult:
        """
        Enrich one listing and store the result.

        Raises:
            ListingNotFoundError: If the listing does not exist
            Exception: Whatever the AI call or the store raised (after
                marking the listing failed)
        """
        listing = self.db.get_listing(auction_id)
        if listing is None:
            raise ListingNotFoundError(auction_id)

        self.db.set_enrichment_status(auction_id, EnrichmentStatus.PROCESSING)

        try:
            data = await self.ai.complete_json(
                ENRICHMENT_PROMPT,
                build_enrichment_input(listing),
                ENRICHMENT_SCHEMA,
                schema_name="firearm_enrichment",
            )
            result = EnrichmentResult.from_response(data)
            self.db.update_listing(auction_id, result.to_updates(listing))
        except Exception as e:
            logger.error(f"Enrichment failed for auction {auction_id}: {e}")
            self._mark_failed(auction_id)
            raise

        logger.info(
            f"Enriched auction {auction_id}: {result.manufacturer or '?'} {result.model or '?'} "
            f"({result.category or 'uncategorized'}, sold status {result.sold_status})"
        )
        return result

    def _mark_failed(self, auction_id: int) -> None:
        try:
            self.db.set_enrichment_status(auction_id, EnrichmentStatus.FAILED)
        except Exception as e:
            # The enrichment error itself is re-raised by the caller
            logger.error(f"Could not mark auction {auction_id} failed: {e}")

    async def enrich_batch(self, auction_ids: list[int], concurrency: Optional[int] = None) -> dict:
        """
        Enrich listings in fixed-size concurrent chunks, without retries.

        Args:
            auction_ids: Listings to enrich
            concurrency: Chunk size (defaults to ENRICH_BATCH_CONCURRENCY)

        Returns:
            Summary dict with successful/failed counts and per-id errors
        """
        size = concurrency or self.config.enrich_batch_concurrency
        summary: dict = {"successful": 0, "failed": 0, "errors": []}

        for start in range(0, len(auction_ids), size):
            chunk = auction_ids[start:start + size]
            outcomes = await asyncio.gather(
                *(self.enrich(auction_id) for auction_id in chunk),
                return_exceptions=True,
            )
            for auction_id, outcome in zip(chunk, outcomes):
                if isinstance(outcome, BaseException):
                    summary["failed"] += 1
                    summary["errors"].append({"id": auction_id, "error": str(outcome)})
                else:
                    summary["successful"] += 1

            logger.info(f"Enrichment batch progress: {min(start + size, len(auction_ids))}/{len(auction_ids)}")

        logger.info(f"Batch enrichment complete: {summary['successful']} ok, {summary['failed']} failed")
        return summary

    def get_enrichment_stats(self) -> dict:
        """Number of listings per enrichment status, plus the total."""
        counts = self.db.count_listings_by_enrichment_status()
        return {"total": sum(counts.values()), **counts}


# Global service instance (lazy loaded)
_service: Optional[EnrichmentService] = None


def get_enrichment_service() -> EnrichmentService:
    """Get enrichment service instance (singleton)."""
    global _service
    if _service is None:
        _service = EnrichmentService()
    return _service
