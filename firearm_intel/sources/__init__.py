"""
Auction sources and the scrape/extract client.

Available:
- AUCTION_SOURCES: Configured competitor auction houses and estate-sale sites
- FirecrawlClient: Page scraping, URL discovery and structured extraction
"""

from .base import BaseHTTPClient
from .firecrawl import FirecrawlClient, extract_links
from .registry import AUCTION_SOURCES, find_source, get_sources

__all__ = [
    "BaseHTTPClient",
    "FirecrawlClient",
    "extract_links",
    "AUCTION_SOURCES",
    "find_source",
    "get_sources",
]
