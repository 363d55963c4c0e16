"""
Main entry point for Feed Relay.
Wires the configured collaborators together and runs or schedules cycles.
"""
import argparse
import json
import logging
import os
import sys
import time
from json.decoder import JSONDecodeError
from typing import Any, Dict, List, Optional

from feedrelay import __version__
from feedrelay.config_manager import ConfigManager
from feedrelay.dedup_store import DedupStore
from feedrelay.delivery_client import DeliveryClient
from feedrelay.errors import FetchError, ParseError, StoreError
from feedrelay.feed_fetcher import FeedFetcher
from feedrelay.feed_parser import FeedParser
from feedrelay.models import CycleReport
from feedrelay.orchestrator import Orchestrator
from feedrelay.scheduler import initialize_scheduler
from feedrelay.telegram_client import TelegramClient
from feedrelay.utils.http_session import ProxyConfig, create_session
from feedrelay.utils.logging_utils import setup_logging

logger = logging.getLogger(__name__)


class FeedRelay:
    """
    Builds every component from configuration.
    """

    def __init__(self, config_manager: ConfigManager, with_delivery: bool = True):
        """
        Args:
            config_manager: Loaded configuration
            with_delivery: Build the chat client; commands that never send can skip it

        Raises:
            StoreError: If the dedup store cannot be initialized
            ValueError: If configuration needed for delivery is missing
        """
        self.config_manager = config_manager
        get = config_manager.get_config_value

        self.sources = config_manager.get_feed_sources()

        session = create_session(
            user_agent=get("networking.user_agent", ""),
            proxy_config=ProxyConfig(get("networking.proxy", {})),
        )
        self.fetcher = FeedFetcher(timeout=get("networking.timeout_seconds", 20), session=session)
        self.parser = FeedParser()

        database_url = get("storage.database_url")
        self._ensure_sqlite_dir(database_url)
        self.store = DedupStore.from_url(database_url)
        self.store.init()

        self.delivery = None
        self.orchestrator = None
        if with_delivery:
            self.destination = get("delivery.chat_id")
            if not self.destination:
                raise ValueError("delivery.chat_id (or TELEGRAM_CHAT_ID) is not configured")

            chat_client = TelegramClient(
                bot_token=get("delivery.bot_token"),
                api_base=get("delivery.api_base"),
                timeout=get("delivery.timeout_seconds"),
                parse_mode=get("delivery.parse_mode"),
                disable_web_page_preview=get("delivery.disable_web_page_preview"),
            )
            self.delivery = DeliveryClient(
                chat_client,
                min_interval=get("delivery.min_interval_seconds"),
                max_retries=get("delivery.max_retries"),
                backoff_seconds=get("delivery.backoff_seconds"),
                max_retry_after=get("delivery.max_retry_after_seconds"),
            )
            self.orchestrator = Orchestrator(
                sources=self.sources,
                fetcher=self.fetcher,
                parser=self.parser,
                store=self.store,
                delivery=self.delivery,
                destination=self.destination,
                max_parallel_feeds=get("schedule.max_parallel_feeds"),
                feed_timeout=get("schedule.feed_timeout_seconds"),
                cycle_deadline=get("schedule.cycle_deadline_seconds"),
                fetch_attempts=get("networking.fetch_attempts"),
                backoff_factor=get("networking.backoff_factor"),
            )

        logger.info(f"Feed Relay initialized with {len(self.sources)} feeds")

    @staticmethod
    def _ensure_sqlite_dir(database_url: str):
        prefix = "sqlite:///"
        if database_url.startswith(prefix) and database_url != prefix + ":memory:":
            directory = os.path.dirname(database_url[len(prefix):])
            if directory:
                os.makedirs(directory, exist_ok=True)

    def run_cycle(self) -> Optional[CycleReport]:
        return self.orchestrator.run_cycle()

    def check_feeds(self) -> List[Dict[str, Any]]:
        """
        Fetch and parse every feed without delivering anything.

        Returns:
            One dictionary per feed with item counts or the error hit
        """
        results = []
        for source in self.sources:
            result = {"id": source.id, "url": source.url}
            try:
                items = self.parser.parse(self.fetcher.fetch(source), source)
                result["items"] = len(items)
                result["undelivered"] = len(self.store.filter_new(source.id, items))
                result["latest"] = items[0].title if items else None
            except FetchError as e:
                result["error"] = f"FetchError: {e.cause}"
                if e.status_code is not None:
                    result["status_code"] = e.status_code
            except ParseError as e:
                result["error"] = f"ParseError: {e.cause}"
            except StoreError as e:
                result["error"] = f"StoreError: {e}"
            results.append(result)

            if "error" in result:
                logger.warning(f"Feed '{source.id}' check failed: {result['error']}")
            else:
                logger.info(f"Feed '{source.id}' OK: {result['items']} items, {result['undelivered']} not yet delivered")
        return results

    def stats(self) -> Dict[str, int]:
        """Delivery record count per configured feed."""
        counts = self.store.counts_by_feed()
        return {source.id: counts.get(source.id, 0) for source in self.sources}


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Feed Relay - relay new feed items to a chat",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  feedrelay --run-now                     # Run one cycle immediately
  feedrelay --schedule                    # Start scheduler
  feedrelay --check                       # Fetch and parse feeds, deliver nothing
  feedrelay --config-dir custom --stats   # Delivery counts per feed
        """
    )
    parser.add_argument("--config-dir", default="config",
                        help="Path to configuration directory (default: config)")
    parser.add_argument("--run-now", action="store_true", help="Run one cycle immediately")
    parser.add_argument("--schedule", action="store_true", help="Start scheduler for periodic cycles")
    parser.add_argument("--check", action="store_true", help="Check every feed without delivering")
    parser.add_argument("--stats", action="store_true", help="Show delivery counts per feed")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"Feed Relay v{__version__}")
    return parser, parser.parse_args(argv)


def main(argv=None):
    """
    Main entry point for the script.
    """
    parser, args = parse_arguments(argv)

    if not (args.run_now or args.schedule or args.check or args.stats):
        parser.print_help()
        return 0

    settings_path = os.path.join(args.config_dir, 'settings.json')
    feeds_path = os.path.join(args.config_dir, 'feeds.json')

    try:
        config_manager = ConfigManager(settings_path, feeds_path)
    except FileNotFoundError as e:
        print(f"Configuration file not found: {e}", file=sys.stderr)
        return 1
    except JSONDecodeError as e:
        print(f"Error decoding JSON configuration file: {e}", file=sys.stderr)
        return 1
    except (ValueError, TypeError) as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 1

    log_level = 'DEBUG' if args.debug else config_manager.get_config_value("logging.level", "INFO")
    setup_logging(log_level=log_level, log_dir=config_manager.get_config_value("logging.log_dir", "./logs"))

    try:
        relay = FeedRelay(config_manager, with_delivery=args.run_now or args.schedule)
    except StoreError as e:
        logger.critical(f"Dedup store unavailable: {e}")
        return 1
    except ValueError as e:
        logger.critical(f"Invalid configuration: {e}")
        return 1

    if args.check:
        print(json.dumps(relay.check_feeds(), indent=2, ensure_ascii=False))

    if args.stats:
        print(json.dumps(relay.stats(), indent=2))

    if args.run_now:
        report = relay.run_cycle()
        if report is not None:
            logger.info(f"Cycle summary: {json.dumps(report.summary(), indent=2)}")

    if args.schedule:
        scheduler = initialize_scheduler(config_manager, relay.run_cycle)
        scheduler.start()
        logger.info("Scheduler started - Press Ctrl+C to stop")
        try:
            while True:
                time.sleep(1)
        except (KeyboardInterrupt, SystemExit):
            logger.info("Scheduler stopped by user or system signal")
        finally:
            scheduler.shutdown()

    return 0


if __name__ == "__main__":
    sys.exit(main())
