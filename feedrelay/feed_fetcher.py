"""
feed_fetcher.py - Module for fetching raw feed content over HTTP.
"""
import logging
import time
from typing import Optional

import requests

from feedrelay.errors import FetchError
from feedrelay.models import FeedSource
from feedrelay.utils.http_session import create_session

logger = logging.getLogger(__name__)


class FeedFetcher:
    """
    Fetches raw feed bytes for one FeedSource at a time.

    Every transport problem is reported as FetchError. Retrying is left to
    the orchestrator so a slow feed cannot stall the whole cycle.
    """

    def __init__(self, timeout: float = 20, session: Optional[requests.Session] = None):
        """
        Initialize the fetcher.

        Args:
            timeout: Connect and read timeout in seconds for each request
            session: requests session to use; a default one is created when omitted
        """
        self.timeout = timeout
        self.session = session or create_session()
        logger.debug(f"FeedFetcher initialized with timeout {timeout}s")

    def fetch(self, source: FeedSource) -> bytes:
        """
        Fetch the raw content of a feed.

        Args:
            source: Feed to fetch

        Returns:
            Response body as bytes (undecoded, the parser sniffs the encoding)

        Raises:
            FetchError: On connection failure, timeout or non-2xx status
        """
        logger.debug(f"Fetching feed '{source.id}' from {source.url}")
        start_time = time.time()

        try:
            response = self.session.get(source.url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            raise FetchError(source, f"timeout after {self.timeout}s: {e}", timeout=True) from e
        except requests.exceptions.RequestException as e:
            raise FetchError(source, f"connection failed: {e}") from e

        if not 200 <= response.status_code < 300:
            raise FetchError(source, f"HTTP {response.status_code} {response.reason or ''}".strip(),
                             status_code=response.status_code)

        content = response.content
        duration = time.time() - start_time
        logger.info(f"Fetched feed '{source.id}': {len(content)} bytes in {duration:.2f}s")
        return content
