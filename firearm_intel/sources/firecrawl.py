"""
Firecrawl client for page scraping, URL discovery and structured extraction.

Endpoints used:
- POST /scrape: Markdown/HTML of a single page
- POST /map: URLs discovered on a site
- POST /extract + GET /extract/{id}: LLM extraction against a JSON schema

Extraction jobs run asynchronously on the provider side, so extract()
polls the job until it completes or the poll budget runs out.
"""

import logging
import time
from typing import Optional
from urllib.parse import urldefrag, urljoin, urlparse
import requests
from bs4 import BeautifulSoup

from ..config import AppConfig, FirecrawlConfig, get_firecrawl_config
from ..exceptions import ConfigurationError, ScrapeError
from .base import BaseHTTPClient

logger = logging.getLogger(__name__)


def extract_links(html: str, base_url: str) -> list[str]:
    """
    Collect same-site links from an HTML page.

    Relative links are resolved against base_url and fragments dropped.

    Args:
        html: Raw page HTML
        base_url: URL the page was fetched from

    Returns:
        Unique absolute URLs in document order
    """
    soup = BeautifulSoup(html, "html.parser")
    host = urlparse(base_url).netloc.lower()

    links: list[str] = []
    seen: set[str] = set()
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href or href.startswith(("mailto:", "tel:", "javascript:")):
            continue
        absolute, _ = urldefrag(urljoin(base_url, href))
        parsed = urlparse(absolute)
        if parsed.scheme not in ("http", "https") or parsed.netloc.lower() != host:
            continue
        if absolute not in seen:
            seen.add(absolute)
            links.append(absolute)
    return links


class FirecrawlClient(BaseHTTPClient):
    """
    Thin client over the Firecrawl v1 API.

    Usage:
        client = FirecrawlClient()
        urls = client.discover_links("https://example-auction.com/")
        data = client.extract(urls[:20], prompt, schema)
    """

    def __init__(
        self,
        firecrawl_config: Optional[FirecrawlConfig] = None,
        config: Optional[AppConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        super().__init__(config=config, session=session)
        self.firecrawl_config = firecrawl_config or get_firecrawl_config()
        if not self.firecrawl_config.api_key:
            raise ConfigurationError("FIRECRAWL_API_KEY must be set", setting="FIRECRAWL_API_KEY")
        self.base_url = self.firecrawl_config.base_url
        self.session.headers.update({
            "Authorization": f"Bearer {self.firecrawl_config.api_key}",
            "Content-Type": "application/json",
        })

    def scrape_url(self, url: str) -> dict:
        """
        Fetch one page as Markdown and HTML.

        Returns:
            The "data" object of the response (markdown, html, metadata)
        """
        body = self._post(f"{self.base_url}/scrape", {
            "url": url,
            "formats": ["markdown", "html"],
            "onlyMainContent": True,
            "waitFor": 2000,
        })
        if not body.get("success"):
            raise ScrapeError(url, f"Scrape failed: {body.get('error', 'unknown error')}")
        return body.get("data") or {}

    def map_urls(self, url: str, search: Optional[str] = None, limit: int = 500) -> list[str]:
        """URLs the provider discovers on a site."""
        payload: dict = {"url": url, "limit": limit}
        if search:
            payload["search"] = search
        body = self._post(f"{self.base_url}/map", payload)
        if not body.get("success"):
            raise ScrapeError(url, f"Map failed: {body.get('error', 'unknown error')}")
        links = body.get("links") or []
        # Older responses return link objects instead of plain strings
        return [link["url"] if isinstance(link, dict) else link for link in links if link]

    def discover_links(self, url: str, search: Optional[str] = None) -> list[str]:
        """
        Discover page URLs of a source.

        Falls back to parsing anchors out of the scraped HTML when the map
        endpoint returns nothing.
        """
        links = self.map_urls(url, search=search)
        if links:
            return links

        logger.info(f"Map returned no links for {url}, parsing page HTML")
        page = self.scrape_url(url)
        return extract_links(page.get("html") or "", url)

    def extract(self, urls: list[str], prompt: str, schema: dict) -> dict:
        """
        Run a structured extraction over one or more URLs.

        Args:
            urls: Page URLs or crawl patterns (e.g. "https://site/*")
            prompt: Extraction instructions
            schema: JSON schema of the expected result

        Returns:
            The extracted data object (shape defined by schema)

        Raises:
            ScrapeError: If the job fails or does not finish in time
        """
        target = urls[0] if urls else ""
        body = self._post(f"{self.base_url}/extract", {
            "urls": urls,
            "prompt": prompt,
            "schema": schema,
        })
        if not body.get("success"):
            raise ScrapeError(target, f"Extract failed: {body.get('error', 'unknown error')}")

        # Synchronous responses carry the data directly
        if body.get("data") is not None:
            return body["data"]

        job_id = body.get("id")
        if not job_id:
            raise ScrapeError(target, "Extract response had neither data nor job id")
        return self._poll_extract(job_id, target)

    def _poll_extract(self, job_id: str, target: str) -> dict:
        """Wait for an extraction job to complete."""
        for attempt in range(self.firecrawl_config.max_polls):
            body = self._get(f"{self.base_url}/extract/{job_id}")
            status = body.get("status")

            if status == "completed":
                return body.get("data") or {}
            if status in ("failed", "cancelled"):
                raise ScrapeError(target, f"Extract job {job_id} {status}: {body.get('error', '')}")

            logger.debug(f"Extract job {job_id} is {status} (poll {attempt + 1})")
            time.sleep(self.firecrawl_config.poll_interval)

        raise ScrapeError(target, f"Extract job {job_id} did not finish in time")
