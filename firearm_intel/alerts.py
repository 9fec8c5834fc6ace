"""
Alert engine for Firearm Auction Intelligence.

Matches newly scraped listings against users' saved alert criteria and
records a notification for each match. Delivery channels (email, SMS) are
outside this system; notifications are written to the log and the alert's
last_triggered timestamp is stamped.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .config import AppConfig, get_app_config
from .db import Database, get_db
from .models import AlertCriteria, AuctionListing, UserAlert, rarity_level, utcnow

logger = logging.getLogger(__name__)


# =============================================================================
# NOTIFICATION TEMPLATE
# =============================================================================

ALERT_MESSAGE_TEXT = """Firearm alert for user {user_id} ({alert_type})

{title}
Current bid: {price_display}
Auction house: {auction_house}
Location: {location}
Auction date: {auction_date}

Matched on: {match_reasons}
View listing: {url}
"""


# =============================================================================
# MATCHING
# =============================================================================

@dataclass
class AlertMatch:
    """A listing that satisfied an alert's criteria."""
    alert: UserAlert
    listing: AuctionListing
    match_reasons: list[str]


def _contains(value: Optional[str], needle: str) -> bool:
    return bool(value) and needle.strip().lower() in value.lower()


def match_criteria(listing: AuctionListing, criteria: AlertCriteria) -> tuple[bool, list[str]]:
    """
    Check a listing against alert criteria.

    Criteria are evaluated in a fixed order and the first failing one ends
    the check. Criteria the alert leaves empty are skipped, and an alert
    with no criteria at all never matches.

    Returns:
        Tuple of (matches, reasons for each satisfied criterion)
    """
    reasons: list[str] = []

    if criteria.manufacturer:
        if not _contains(listing.manufacturer, criteria.manufacturer):
            return False, []
        reasons.append(f"Manufacturer: {listing.manufacturer}")

    if criteria.model:
        if not _contains(listing.model, criteria.model):
            return False, []
        reasons.append(f"Model: {listing.model}")

    if criteria.caliber:
        if not _contains(listing.caliber, criteria.caliber):
            return False, []
        reasons.append(f"Caliber: {listing.caliber}")

    if criteria.category:
        if listing.category != criteria.category:
            return False, []
        reasons.append(f"Category: {listing.category}")

    if criteria.condition:
        if listing.condition != criteria.condition:
            return False, []
        reasons.append(f"Condition: {listing.condition}")

    # A listing without a bid yet cannot violate the price ceiling
    if criteria.max_price is not None and listing.current_bid is not None:
        if listing.current_bid > criteria.max_price:
            return False, []
        reasons.append(f"Price: ${listing.current_bid:,.0f} (max ${criteria.max_price:,.0f})")

    if criteria.min_rarity:
        if rarity_level(listing.rarity) < rarity_level(criteria.min_rarity):
            return False, []
        reasons.append(f"Rarity: {listing.rarity or 'Common'}")

    if criteria.nfa_only:
        if not listing.nfa_item:
            return False, []
        reasons.append("NFA item")

    if criteria.estate_sales_only:
        if not listing.is_estate_sale:
            return False, []
        reasons.append("Estate sale")

    return bool(reasons), reasons


# =============================================================================
# ALERT ENGINE
# =============================================================================

class AlertEngine:
    """
    Matches recent listings against active user alerts.

    Usage:
        engine = AlertEngine()
        summary = engine.process_alerts()
    """

    def __init__(self, db: Optional[Database] = None, config: Optional[AppConfig] = None):
        self.db = db or get_db()
        self.config = config or get_app_config()

    def check_alerts(self) -> list[AlertMatch]:
        """Match every active alert against listings scraped in the look-back window."""
        alerts = self.db.get_active_user_alerts()
        if not alerts:
            return []

        since = utcnow() - timedelta(hours=self.config.alert_lookback_hours)
        listings = self.db.get_listings_scraped_since(since)

        matches = []
        for alert in alerts:
            for listing in listings:
                matched, reasons = match_criteria(listing, alert.criteria)
                if matched:
                    matches.append(AlertMatch(alert=alert, listing=listing, match_reasons=reasons))

        logger.info(f"Checked {len(alerts)} alerts against {len(listings)} listings: {len(matches)} matches")
        return matches

    def send_alert(self, match: AlertMatch) -> None:
        """Record a notification for one match and stamp the alert."""
        listing = match.listing
        message = ALERT_MESSAGE_TEXT.format(
            user_id=match.alert.user_id,
            alert_type=match.alert.alert_type,
            title=listing.title,
            price_display=f"${listing.current_bid:,.2f}" if listing.current_bid else "No bids yet",
            auction_house=listing.auction_house or listing.source_website or "Unknown",
            location=", ".join(part for part in (listing.city, listing.state) if part) or "Unknown",
            auction_date=listing.auction_date.strftime("%b %d, %Y") if listing.auction_date else "TBD",
            match_reasons="; ".join(match.match_reasons),
            url=listing.url,
        )
        logger.info(message)
        self.db.update_user_alert(match.alert.id, {"last_triggered": utcnow().isoformat()})

    def process_alerts(self) -> dict:
        """
        Check all alerts and notify every match.

        Returns:
            Summary dict with total_matches, alerts_sent and errors
        """
        summary = {"total_matches": 0, "alerts_sent": 0, "errors": 0}

        matches = self.check_alerts()
        summary["total_matches"] = len(matches)

        for match in matches:
            try:
                self.send_alert(match)
                summary["alerts_sent"] += 1
            except Exception as e:
                logger.error(f"Failed to send alert {match.alert.id} for listing {match.listing.id}: {e}")
                summary["errors"] += 1

        logger.info(f"Alert processing complete: {summary}")
        return summary

    # =========================================================================
    # ALERT MANAGEMENT
    # =========================================================================

    def create_alert(self, user_id: str, alert_type: str, criteria: AlertCriteria) -> UserAlert:
        """Save a new active alert for a user."""
        return self.db.insert_user_alert(UserAlert(user_id=user_id, alert_type=alert_type, criteria=criteria))

    def update_alert(
        self,
        alert_id: int,
        criteria: Optional[AlertCriteria] = None,
        active: Optional[bool] = None,
    ) -> Optional[UserAlert]:
        """Change an alert's criteria and/or active flag. Returns None if it does not exist."""
        updates: dict = {}
        if criteria is not None:
            updates["criteria"] = criteria.to_dict()
        if active is not None:
            updates["active"] = active
        if not updates:
            return self.db.get_user_alert(alert_id)
        return self.db.update_user_alert(alert_id, updates)

    def delete_alert(self, alert_id: int) -> bool:
        """Delete an alert. Returns False if it did not exist."""
        deleted = self.db.delete_user_alert(alert_id)
        if deleted:
            logger.info(f"Deleted alert {alert_id}")
        return deleted

    def get_user_alerts(self, user_id: str) -> list[UserAlert]:
        """All alerts of a user."""
        return self.db.get_user_alerts(user_id)

    def get_recently_triggered(self, user_id: str, days: int = 7) -> list[UserAlert]:
        """Alerts of a user that fired within the last days."""
        return self.db.get_alerts_triggered_since(user_id, utcnow() - timedelta(days=days))


# Global engine instance (lazy loaded)
_engine: Optional[AlertEngine] = None


def get_alert_engine() -> AlertEngine:
    """Get alert engine instance (singleton)."""
    global _engine
    if _engine is None:
        _engine = AlertEngine()
    return _engine
