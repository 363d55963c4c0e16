"""
Helper functions for Feed Relay.
Contains utility functions for text cleanup, date handling, hashing and retries.
"""
import hashlib
import logging
import random
import re
import time
import urllib.parse
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple, Type

from dateutil import parser as date_parser

logger = logging.getLogger(__name__)


def parse_date(date_string: str) -> Optional[datetime]:
    """
    Best-effort parse of a feed date string into an aware UTC datetime.

    Args:
        date_string: Raw date string from the feed

    Returns:
        Parsed datetime in UTC, or None if the string is empty or unparseable
    """
    if not date_string or not date_string.strip():
        return None

    try:
        parsed_date = date_parser.parse(date_string)
    except (ValueError, TypeError, OverflowError) as e:
        logger.debug(f"Failed to parse date '{date_string}': {e}")
        return None

    # Naive timestamps are assumed to be UTC
    if parsed_date.tzinfo is None:
        return parsed_date.replace(tzinfo=timezone.utc)
    return parsed_date.astimezone(timezone.utc)


def struct_time_to_datetime(value) -> Optional[datetime]:
    """Convert a feedparser ``*_parsed`` time tuple (always UTC) to a datetime."""
    if not value:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def clean_text(text: str, max_length: int = None) -> str:
    """
    Clean and normalize text content.

    Args:
        text: Raw text to clean
        max_length: Maximum length to truncate to (optional)

    Returns:
        Cleaned text string
    """
    if not text:
        return ""

    # Remove HTML tags
    cleaned = re.sub(r'<[^>]+>', ' ', text)

    # Normalize whitespace (replace multiple spaces/newlines with single space)
    cleaned = re.sub(r'\s+', ' ', cleaned).strip()

    if max_length and len(cleaned) > max_length:
        cleaned = cleaned[:max_length].rstrip() + "..."

    return cleaned


def create_item_hash(title: str, link: str, published: str) -> str:
    """
    Generate a SHA-256 hash from title, link and raw publish time.
    Used as the item identifier when the feed declares none.

    Args:
        title: Item title
        link: Item link
        published: Publish time exactly as it appeared in the feed

    Returns:
        SHA-256 hex digest
    """
    # Use a separator that is unlikely to appear in any of the fields
    content = f"{(title or '').strip()}|{(link or '').strip()}|{(published or '').strip()}"
    return hashlib.sha256(content.encode('utf-8')).hexdigest()


def retry_with_backoff(func: Callable, max_retries: int, initial_delay: float,
                       backoff_factor: float = 2.0,
                       retry_on: Tuple[Type[BaseException], ...] = (Exception,),
                       delay_hint: Callable[[BaseException], Optional[float]] = None,
                       give_up: Callable[[BaseException, float], bool] = None,
                       sleep: Callable[[float], None] = time.sleep):
    """
    Retry a function call with exponential backoff.

    Args:
        func: The function to call.
        max_retries: The maximum number of retries after the first attempt.
        initial_delay: The initial delay in seconds before the first retry.
        backoff_factor: The factor by which the delay increases each retry.
        retry_on: Exception types that trigger a retry; anything else propagates.
        delay_hint: Optional callable returning a minimum delay for a given error
                    (e.g. a server supplied Retry-After).
        give_up: Optional callable deciding, from the error and the planned delay,
                 that waiting is pointless; the error is then raised at once.
        sleep: Sleep function, replaceable in tests.

    Returns:
        The result of the function call if successful.

    Raises:
        The last exception if the function fails after max_retries.
    """
    for attempt in range(max_retries + 1):
        try:
            return func()
        except retry_on as e:
            if attempt == max_retries:
                raise
            delay = initial_delay * (backoff_factor ** attempt) + random.uniform(0, initial_delay * 0.5)
            if delay_hint is not None:
                hinted = delay_hint(e)
                if hinted:
                    delay = max(delay, hinted)
            if give_up is not None and give_up(e, delay):
                logger.warning(f"Attempt {attempt + 1} failed. Not waiting {delay:.2f}s: {e}")
                raise
            logger.warning(f"Attempt {attempt + 1} failed. Retrying in {delay:.2f}s: {e}")
            sleep(delay)


def validate_url(url: str) -> bool:
    """
    Validate if a string is a proper http(s) URL.

    Args:
        url: URL string to validate

    Returns:
        True if valid URL, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)
