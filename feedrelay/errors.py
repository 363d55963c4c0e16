"""
Error taxonomy for Feed Relay.
Every failure a feed can hit during a cycle maps onto one of these classes.
"""
from typing import Any, Optional


class FeedRelayError(Exception):
    """Base class for all Feed Relay errors."""


class FeedError(FeedRelayError):
    """
    An error tied to a single feed source.

    Args:
        source: The FeedSource (or feed id) the error belongs to
        cause: Human readable cause or the underlying exception
    """

    def __init__(self, source: Any, cause: Any):
        self.source = source
        self.cause = cause
        super().__init__(f"{self.feed_id}: {cause}")

    @property
    def feed_id(self) -> str:
        return getattr(self.source, 'id', str(self.source))


class FetchError(FeedError):
    """Transport level failure: connection error, timeout or non-2xx status."""

    def __init__(self, source: Any, cause: Any, status_code: Optional[int] = None, timeout: bool = False):
        self.status_code = status_code
        self.is_timeout = timeout
        super().__init__(source, cause)


class ParseError(FeedError):
    """Content could not be recognized as a feed of the expected format."""


class StoreError(FeedRelayError):
    """The dedup store is unavailable or returned an inconsistent result."""


class DeliveryError(FeedRelayError):
    """
    A message could not be delivered to the destination.

    Args:
        message: Description of the failure
        retry_after: Seconds the destination asked us to wait, if any
    """

    def __init__(self, message: str, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        super().__init__(message)


class TransientDeliveryError(DeliveryError):
    """Network failure or rate limiting; the same message may succeed later."""


class PermanentDeliveryError(DeliveryError):
    """The destination rejected the message; resending it would fail the same way."""
