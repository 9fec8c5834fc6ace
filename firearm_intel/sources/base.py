"""
Base HTTP client for external scrape services.

Provides common functionality for every client that talks to a remote API:
- A shared requests session with default headers
- Rate limiting between requests
- Timeouts and uniform error reporting
"""

import logging
import time
from typing import Any, Optional
import requests

from ..config import AppConfig, get_app_config
from ..exceptions import ScrapeError

logger = logging.getLogger(__name__)


class BaseHTTPClient:
    """
    Rate-limited JSON client over a requests session.

    Subclasses set their own auth headers and call _get()/_post(), which
    raise ScrapeError on transport or HTTP failures.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        self.config = config or get_app_config()
        self.session = session or requests.Session()

        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) FirearmIntel/1.0",
            "Accept": "application/json",
        })

        self._last_request_time: float = 0

    def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.config.request_delay:
            time.sleep(self.config.request_delay - elapsed)
        self._last_request_time = time.time()

    def _request(self, method: str, url: str, **kwargs) -> Any:
        """
        Make a request with rate limiting and decode the JSON body.

        Args:
            method: HTTP method
            url: The URL to call
            **kwargs: Additional arguments to pass to session.request()

        Returns:
            The decoded JSON body

        Raises:
            ScrapeError: If the request fails or the body is not JSON
        """
        self._rate_limit()

        kwargs.setdefault("timeout", self.config.request_timeout)
        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"{method} {url} failed: {e}")
            raise ScrapeError(url, f"{method} request failed", cause=e) from e

        try:
            return response.json()
        except ValueError as e:
            raise ScrapeError(url, "Response body is not JSON", cause=e) from e

    def _get(self, url: str, **kwargs) -> Any:
        return self._request("GET", url, **kwargs)

    def _post(self, url: str, payload: dict, **kwargs) -> Any:
        return self._request("POST", url, json=payload, **kwargs)
