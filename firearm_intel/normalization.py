"""
Normalization module for Firearm Auction Intelligence.

Maps candidate records returned by the extract capability into unsaved
AuctionListing objects. Candidates come in several shapes (snake_case and
camelCase keys, price strings, relative URLs, HTML fragments in the
description); this module handles all of that and canonicalizes the URL,
which is the dedup key of the listing store.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import parse_qsl, urlencode, urljoin, urlparse, urlunparse
from bs4 import BeautifulSoup

from .models import (
    FIREARM_CATEGORIES,
    AuctionListing,
    AuctionSource,
    EnrichmentStatus,
    ListingStatus,
    utcnow,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CITY COORDINATES (source cities for the map view)
# =============================================================================

CITY_COORDS: dict[str, tuple[float, float]] = {
    # Texas
    "Dallas": (32.7767, -96.7970),
    "Fort Worth": (32.7555, -97.3308),
    "Arlington": (32.7357, -97.1081),
    "Bedford": (32.8440, -97.1431),
    "Weatherford": (32.7593, -97.7973),
    "Chico": (33.2943, -97.7998),
    "Belton": (31.0560, -97.4642),
    "Temple": (31.0982, -97.3428),
    "Waco": (31.5493, -97.1467),
    "Henderson": (32.1532, -94.7994),
    "Trinity": (30.9452, -95.3755),
    "Houston": (29.7604, -95.3698),
    "Humble": (29.9988, -95.2622),
    "New Braunfels": (29.7030, -98.1245),
    "San Antonio": (29.4241, -98.4936),
    "Brownsville": (25.9017, -97.4975),
    "Lubbock": (33.5779, -101.8552),
    "Corpus Christi": (27.8006, -97.3964),
    "Amarillo": (35.2220, -101.8313),
    # Oklahoma
    "Tulsa": (36.1540, -95.9928),
    "Enid": (36.3956, -97.8784),
    "Woodward": (36.4337, -99.3904),
    "Oklahoma City": (35.4676, -97.5164),
    "Aline": (36.5103, -98.4498),
    "Stillwater": (36.1156, -97.0584),
    # Louisiana
    "Alexandria": (31.3113, -92.4451),
    "Shreveport": (32.5252, -93.7502),
    "Baton Rouge": (30.4515, -91.1871),
    "Lafayette": (30.2241, -92.0198),
}

# Query parameters that never identify a listing
TRACKING_PARAMS = {"fbclid", "gclid", "mc_cid", "mc_eid"}


# =============================================================================
# URL CANONICALIZATION
# =============================================================================

def canonicalize_url(url: str, base_url: Optional[str] = None) -> Optional[str]:
    """
    Canonical form of a listing URL.

    Resolves relative URLs against base_url, lower-cases scheme and host,
    drops the fragment, tracking parameters and a trailing slash.

    Returns:
        The canonical URL, or None if it is not an absolute http(s) URL
    """
    if not url or not isinstance(url, str):
        return None

    url = url.strip()
    if base_url:
        url = urljoin(base_url, url)

    parsed = urlparse(url)
    if parsed.scheme.lower() not in ("http", "https") or not parsed.netloc:
        return None

    query = [
        (key, value)
        for key, value in parse_qsl(parsed.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    path = parsed.path.rstrip("/") if parsed.path not in ("", "/") else ""

    return urlunparse((
        parsed.scheme.lower(),
        parsed.netloc.lower(),
        path,
        parsed.params,
        urlencode(query),
        "",
    ))


# =============================================================================
# NORMALIZER CLASS
# =============================================================================

class CandidateNormalizer:
    """
    Normalizes extracted candidate records into unsaved AuctionListing objects.

    Usage:
        normalizer = CandidateNormalizer()
        listing = normalizer.normalize(candidate, source)
    """

    def normalize(self, raw: dict, source: Optional[AuctionSource] = None) -> Optional[AuctionListing]:
        """
        Normalize a single candidate record.

        Args:
            raw: Candidate record from the extract capability
            source: The source it was extracted from (supplies defaults)

        Returns:
            AuctionListing (without id) or None if title or url are unusable
        """
        url = canonicalize_url(
            self._first(raw, "url", "auction_url", "auctionUrl", "link"),
            base_url=source.url if source else None,
        )
        title = self._clean_text(self._first(raw, "title", "name"))

        if not url or not title:
            logger.warning(f"Skipping candidate without usable title/url: {raw.get('url')!r}")
            return None

        city, state = self._resolve_location(raw, source)
        lat, lng = CITY_COORDS.get(city, (None, None)) if city else (None, None)
        now = utcnow()

        return AuctionListing(
            url=url,
            title=title,
            description=self._clean_text(raw.get("description")),
            source_website=source.name if source else "Manual Entry",
            scraped_at=now,
            updated_at=now,
            manufacturer=self._clean_text(raw.get("manufacturer")) or None,
            model=self._clean_text(raw.get("model")) or None,
            caliber=self._clean_text(raw.get("caliber")) or None,
            category=self._normalize_category(raw.get("category")),
            condition=self._clean_text(raw.get("condition")) or None,
            auction_house=self._clean_text(self._first(raw, "auction_house", "auctionHouse")) or (
                source.name if source else None
            ),
            lot_number=self._clean_text(self._first(raw, "lot_number", "lotNumber")) or None,
            starting_bid=self._parse_price(self._first(raw, "starting_bid", "startingBid")),
            current_bid=self._parse_price(self._first(raw, "current_bid", "currentBid")),
            estimate_low=self._parse_price(self._first(raw, "estimate_low", "estimateLow")),
            estimate_high=self._parse_price(self._first(raw, "estimate_high", "estimateHigh")),
            auction_date=self._parse_datetime(self._first(raw, "auction_date", "auctionDate", "date")),
            city=city,
            state=state,
            latitude=lat,
            longitude=lng,
            status=ListingStatus.ACTIVE,
            enrichment_status=EnrichmentStatus.PENDING,
        )

    @staticmethod
    def _first(raw: dict, *keys: str) -> Any:
        """Value of the first key present with a non-empty value."""
        for key in keys:
            value = raw.get(key)
            if value not in (None, ""):
                return value
        return None

    def _clean_text(self, text: Any) -> str:
        """Clean and normalize text, stripping any HTML markup."""
        if not text:
            return ""
        text = str(text)

        if "<" in text and ">" in text:
            text = BeautifulSoup(text, "html.parser").get_text(" ")

        # Remove leftover HTML entities and excessive whitespace
        text = re.sub(r"&[a-z]+;", " ", text)
        text = re.sub(r"\s+", " ", text)
        return text.strip()

    def _normalize_category(self, value: Any) -> Optional[str]:
        """Map a category label onto the known categories when possible."""
        text = self._clean_text(value)
        if not text:
            return None
        for category in FIREARM_CATEGORIES:
            if category.lower() == text.lower():
                return category
        return text

    def _parse_price(self, value: Any) -> Optional[float]:
        """Parse price from various formats."""
        if value is None or isinstance(value, bool):
            return None

        if isinstance(value, (int, float)):
            return float(value) if value > 0 else None

        if isinstance(value, str):
            # Remove currency symbols and commas
            cleaned = re.sub(r"[,$\s]", "", value)
            match = re.search(r"\d+(?:\.\d+)?", cleaned)
            if not match:
                return None
            price = float(match.group())
            return price if price > 0 else None

        return None

    def _parse_datetime(self, value: Any) -> Optional[datetime]:
        """Parse datetime from various formats (naive values are taken as UTC)."""
        if value is None:
            return None

        if isinstance(value, datetime):
            parsed = value
        elif isinstance(value, str):
            parsed = None
            text = value.strip()
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                formats = [
                    "%Y-%m-%d %H:%M:%S",
                    "%Y-%m-%d",
                    "%m/%d/%Y %H:%M",
                    "%m/%d/%Y",
                    "%B %d, %Y",
                    "%b %d, %Y",
                ]
                for fmt in formats:
                    try:
                        parsed = datetime.strptime(text, fmt)
                        break
                    except ValueError:
                        continue
            if parsed is None:
                return None
        else:
            return None

        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed

    def _resolve_location(self, raw: dict, source: Optional[AuctionSource]) -> tuple[Optional[str], Optional[str]]:
        """City/state from the candidate, its free-text location, or the source."""
        city = self._clean_text(raw.get("city")) or None
        state = self._clean_text(raw.get("state")) or None

        location = self._clean_text(raw.get("location"))
        if location and (not city or not state):
            parts = [part.strip() for part in location.split(",") if part.strip()]
            if len(parts) >= 2:
                city = city or parts[0]
                state = state or parts[1][:2].upper()

        if source:
            city = city or source.city
            state = state or source.state
        return city, state

