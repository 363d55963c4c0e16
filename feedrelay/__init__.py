"""
Feed Relay Package

Polls RSS, Atom and RDF feeds on a schedule and relays every item that was
not delivered before to a Telegram chat, exactly once per (feed, guid).
"""

__version__ = "1.0.0"
__author__ = "Feed Relay Team"
__email__ = "team@example.com"

# Package-level imports for convenience
from .config_manager import ConfigManager
from .dedup_store import DedupStore
from .delivery_client import DeliveryClient
from .feed_fetcher import FeedFetcher
from .feed_parser import FeedParser
from .orchestrator import Orchestrator
from .scheduler import FeedScheduler

__all__ = [
    'ConfigManager',
    'DedupStore',
    'DeliveryClient',
    'FeedFetcher',
    'FeedParser',
    'Orchestrator',
    'FeedScheduler'
]
