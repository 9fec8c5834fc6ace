"""
Exception hierarchy for Firearm Auction Intelligence.

Every error raised by the package derives from FirearmIntelError so the
HTTP layer and the CLI entry points can handle them uniformly.

Usage:
    from firearm_intel.exceptions import ListingNotFoundError, ScrapeError

    try:
        listing = coordinator.scrape_by_url(url)
    except ScrapeError as e:
        logger.error(f"Manual scrape failed: {e}")
"""

from typing import Any, Dict, Optional


class FirearmIntelError(Exception):
    """
    Base exception for all Firearm Auction Intelligence errors.

    Carries a machine-readable code and optional details so errors can be
    returned from the API as-is.
    """

    def __init__(
        self,
        message: str,
        code: str = "FIREARM_INTEL_ERROR",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}
        self.cause = cause

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        result = {
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {self.cause})"
        return self.message


class ConfigurationError(FirearmIntelError):
    """Required configuration (API keys, store credentials) is missing."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"setting": setting} if setting else None,
        )


class StoreError(FirearmIntelError):
    """A record store operation returned nothing where a row was expected."""

    def __init__(self, message: str, table: str, cause: Optional[Exception] = None):
        super().__init__(message, code="STORE_ERROR", details={"table": table}, cause=cause)


class ListingNotFoundError(FirearmIntelError):
    """No auction listing exists for the given id."""

    def __init__(self, auction_id: int):
        super().__init__(
            f"Auction {auction_id} not found",
            code="LISTING_NOT_FOUND",
            details={"auction_id": auction_id},
        )
        self.auction_id = auction_id


# ============================================================
# External service errors
# ============================================================

class ExternalServiceError(FirearmIntelError):
    """Base class for failures of external collaborators."""

    def __init__(
        self,
        service: str,
        message: str,
        code: str = "EXTERNAL_SERVICE_ERROR",
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None,
    ):
        merged = {"service": service}
        merged.update(details or {})
        super().__init__(message, code, merged, cause)
        self.service = service


class ScrapeError(ExternalServiceError):
    """The scrape/extract capability failed or produced nothing usable."""

    def __init__(self, url: str, message: str, cause: Optional[Exception] = None):
        super().__init__(
            "firecrawl",
            message,
            code="SCRAPE_ERROR",
            details={"url": url},
            cause=cause,
        )
        self.url = url


class AIServiceError(ExternalServiceError):
    """The AI completion call failed."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        super().__init__("openai", message, code="AI_SERVICE_ERROR", cause=cause)


class AIResponseError(AIServiceError):
    """The AI completion returned something that is not a JSON object."""

    def __init__(self, message: str, raw: str = "", cause: Optional[Exception] = None):
        super().__init__(message, cause=cause)
        self.code = "AI_RESPONSE_ERROR"
        if raw:
            self.details["raw"] = raw[:500]
