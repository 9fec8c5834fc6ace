"""
Site cache for discovered listing URLs.

Remembers which page URLs were seen on each source so that repeated scrapes
within the TTL only extract pages that are new. Entries are never deleted;
an expired entry simply stops being returned.

Store failures on the read paths are logged and treated as a cache miss,
which makes the coordinator fall back to a full extraction.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .config import get_app_config
from .db import Database, get_db
from .models import SiteCacheEntry, utcnow

logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class SiteCache:
    """
    TTL cache of discovered URLs, keyed by source URL.

    Usage:
        cache = SiteCache()
        new_urls = cache.get_new_urls(source.url, current_urls)
    """

    def __init__(self, db: Optional[Database] = None, ttl_hours: Optional[int] = None):
        self.db = db or get_db()
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else get_app_config().cache_ttl_hours)

    def get_site_map(self, source_url: str) -> Optional[SiteCacheEntry]:
        """
        Get the cached site map of a source.

        Returns:
            The entry while it is valid, None when missing or expired
        """
        try:
            entry = self.db.get_cache_entry(source_url)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {source_url}: {e}")
            return None

        if entry is None or not entry.is_valid(utcnow()):
            return None
        return entry

    def save_site_map(
        self,
        source_url: str,
        source_name: str,
        urls: Iterable[str],
        firearms_found: int,
    ) -> SiteCacheEntry:
        """
        Store the discovered URLs of a source with a fresh expiry.

        Args:
            source_url: Source root URL (the cache key)
            source_name: Human-readable source name
            urls: URLs discovered on the source
            firearms_found: Listings extracted during this scrape

        Returns:
            The saved entry
        """
        unique_urls = list(dict.fromkeys(u for u in urls if u))
        now = utcnow()
        entry = SiteCacheEntry(
            source_url=source_url,
            source_name=source_name,
            discovered_urls=unique_urls,
            last_scraped=now,
            expires_at=now + self.ttl,
            auction_count=len(unique_urls),
            firearms_found=firearms_found,
        )
        self.db.upsert_cache_entry(entry)
        logger.info(f"Cached site map for {source_name}: {len(unique_urls)} URLs")
        return entry

    def get_new_urls(self, source_url: str, current_urls: Iterable[str]) -> list[str]:
        """
        URLs in current_urls that the cached site map has not seen.

        Without a valid cache every current URL is new.
        """
        current = list(dict.fromkeys(current_urls))
        entry = self.get_site_map(source_url)
        if entry is None:
            return current

        known = set(entry.discovered_urls)
        new_urls = [url for url in current if url not in known]
        logger.info(f"{entry.source_name}: {len(new_urls)} new of {len(current)} URLs")
        return new_urls

    def is_valid(self, source_url: str) -> bool:
        """Whether the source has an unexpired cache entry."""
        return self.get_site_map(source_url) is not None

    def invalidate(self, source_url: str) -> None:
        """Force the entry of a source to expire."""
        self.db.expire_cache_entry(source_url, EPOCH)
        logger.info(f"Invalidated cache for {source_url}")

    def get_stats(self) -> dict:
        """Summary of all cache entries."""
        entries = self.db.get_cache_entries()
        now = utcnow()
        valid = [e for e in entries if e.is_valid(now)]
        return {
            "total": len(entries),
            "valid": len(valid),
            "expired": len(entries) - len(valid),
            "total_urls": sum(e.auction_count for e in entries),
            "total_firearms": sum(e.firearms_found for e in entries),
            "sources": [
                {
                    "name": e.source_name,
                    "url": e.source_url,
                    "last_scraped": e.last_scraped.isoformat(),
                    "expires_at": e.expires_at.isoformat(),
                    "valid": e.is_valid(now),
                    "auction_count": e.auction_count,
                    "firearms_found": e.firearms_found,
                }
                for e in entries
            ],
        }
