"""
Orchestrator for one polling cycle.

Each feed goes fetching -> parsing -> filtering -> delivering -> done, or stops
in FeedFailed(stage, cause). Feeds are independent: fetch and parse run as
separate futures, and whatever one feed does never ends another feed's work.
"""
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from feedrelay.dedup_store import CommitResult, DedupStore
from feedrelay.delivery_client import DeliveryClient
from feedrelay.errors import FetchError, ParseError, PermanentDeliveryError, StoreError, TransientDeliveryError
from feedrelay.feed_fetcher import FeedFetcher
from feedrelay.feed_parser import FeedParser
from feedrelay.models import CycleReport, FeedOutcome, FeedSource, FeedStage, Item
from feedrelay.utils.helpers import retry_with_backoff
from feedrelay.utils.logging_utils import (
    log_cycle_summary,
    log_deduplication_results,
    log_duplicate_risk,
    log_feed_failed,
    log_fetch_failure,
)

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Drives one cycle across all configured feeds.
    """

    def __init__(self, sources: Sequence[FeedSource], fetcher: FeedFetcher, parser: FeedParser,
                 store: DedupStore, delivery: DeliveryClient, destination: str,
                 max_parallel_feeds: int = 4, feed_timeout: float = 60,
                 cycle_deadline: float = 600, fetch_attempts: int = 1,
                 backoff_factor: float = 2.0, poll_interval: float = 0.5,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            sources: Feeds to visit every cycle
            fetcher: Fetches raw feed content
            parser: Turns raw content into items
            store: Dedup store, the single source of truth for deliveries
            delivery: Sends messages to the destination
            destination: Chat/channel identifier
            max_parallel_feeds: Upper bound on concurrent fetch+parse tasks
            feed_timeout: Seconds a feed may spend fetching and parsing
            cycle_deadline: Soft deadline for the whole cycle, in seconds
            fetch_attempts: Fetch attempts per feed per cycle (1 = no retry)
            backoff_factor: Multiplier between fetch retries
            poll_interval: How often pending feeds are checked against their timeouts
            clock: Monotonic clock, replaceable in tests
        """
        self.sources = list(sources)
        self.fetcher = fetcher
        self.parser = parser
        self.store = store
        self.delivery = delivery
        self.destination = destination
        self.max_parallel_feeds = max(1, max_parallel_feeds)
        self.feed_timeout = feed_timeout
        self.cycle_deadline = cycle_deadline
        self.fetch_attempts = max(1, fetch_attempts)
        self.backoff_factor = backoff_factor
        self.poll_interval = poll_interval
        self._clock = clock
        self._cycle_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._cycle_lock.locked()

    def run_cycle(self) -> Optional[CycleReport]:
        """
        Run one cycle over every configured feed.

        Returns:
            The cycle report, or None if another cycle was already running
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("A cycle is already running, skipping this one")
            return None
        try:
            return self._run_cycle()
        finally:
            self._cycle_lock.release()

    def _run_cycle(self) -> CycleReport:
        report = CycleReport(started_at=datetime.now(timezone.utc))
        deadline = self._clock() + self.cycle_deadline
        logger.info(f"Starting cycle over {len(self.sources)} feeds")

        # feed id -> (stage, monotonic start time); written by the worker threads
        progress: Dict[str, Tuple[FeedStage, float]] = {}

        pool = ThreadPoolExecutor(max_workers=self.max_parallel_feeds, thread_name_prefix="feedrelay-fetch")
        try:
            futures: Dict[Future, FeedSource] = {
                pool.submit(self._fetch_and_parse, source, progress): source for source in self.sources
            }
            pending = set(futures)

            while pending:
                done, pending = wait(pending, timeout=self.poll_interval, return_when=FIRST_COMPLETED)

                for future in done:
                    source = futures[future]
                    outcome, items = future.result()
                    if not outcome.failed:
                        self._process_items(source, items, outcome, deadline)
                    report.outcomes.append(outcome)

                for future in list(pending):
                    if future.done():
                        continue
                    cause = self._abandon_cause(futures[future], progress, deadline)
                    if cause is None:
                        continue
                    source = futures[future]
                    future.cancel()
                    pending.discard(future)
                    stage = progress.get(source.id, (FeedStage.FETCHING, 0))[0]
                    outcome = FeedOutcome(feed_id=source.id).fail(stage, cause)
                    log_feed_failed(logger, source.id, stage.value, cause)
                    report.outcomes.append(outcome)
        finally:
            # Abandoned fetches finish in the background; their results are dropped
            pool.shutdown(wait=False, cancel_futures=True)

        report.finished_at = datetime.now(timezone.utc)
        log_cycle_summary(logger, report.summary())
        return report

    def _abandon_cause(self, source: FeedSource, progress: Dict[str, Tuple[FeedStage, float]],
                       deadline: float) -> Optional[str]:
        now = self._clock()
        if now >= deadline:
            return "cycle deadline exceeded"
        if source.id in progress:
            started = progress[source.id][1]
            if now - started > self.feed_timeout:
                return f"timeout after {self.feed_timeout}s"
        return None

    def _fetch_and_parse(self, source: FeedSource,
                         progress: Dict[str, Tuple[FeedStage, float]]) -> Tuple[FeedOutcome, List[Item]]:
        """
        Fetch and parse one feed. Runs in a worker thread and never raises.
        """
        outcome = FeedOutcome(feed_id=source.id)
        started = self._clock()
        progress[source.id] = (FeedStage.FETCHING, started)

        try:
            raw = retry_with_backoff(
                func=lambda: self.fetcher.fetch(source),
                max_retries=self.fetch_attempts - 1,
                initial_delay=1,
                backoff_factor=self.backoff_factor,
                retry_on=(FetchError,),
            )
        except FetchError as e:
            log_fetch_failure(logger, source.id, str(e.cause), self.fetch_attempts)
            return outcome.fail(FeedStage.FETCHING, e.cause), []
        except Exception as e:
            logger.exception(f"Unexpected error fetching feed '{source.id}': {e}")
            return outcome.fail(FeedStage.FETCHING, e), []

        progress[source.id] = (FeedStage.PARSING, started)
        outcome.stage = FeedStage.PARSING
        try:
            items = self.parser.parse(raw, source)
        except ParseError as e:
            log_feed_failed(logger, source.id, FeedStage.PARSING.value, str(e.cause))
            return outcome.fail(FeedStage.PARSING, e.cause), []
        except Exception as e:
            logger.exception(f"Unexpected error parsing feed '{source.id}': {e}")
            return outcome.fail(FeedStage.PARSING, e), []

        outcome.items_seen = len(items)
        outcome.stage = FeedStage.FILTERING
        return outcome, items

    def _process_items(self, source: FeedSource, items: List[Item], outcome: FeedOutcome,
                       deadline: float) -> None:
        try:
            self._filter_and_deliver(source, items, outcome, deadline)
        except Exception as e:
            logger.exception(f"Unexpected error processing feed '{source.id}': {e}")
            outcome.fail(outcome.stage, e)

    def _filter_and_deliver(self, source: FeedSource, items: List[Item], outcome: FeedOutcome,
                            deadline: float) -> None:
        try:
            new_items = self.store.filter_new(source.id, items)
        except StoreError as e:
            log_feed_failed(logger, source.id, FeedStage.FILTERING.value, str(e))
            outcome.fail(FeedStage.FILTERING, e)
            return

        outcome.new_items = len(new_items)
        log_deduplication_results(logger, source.id, len(items), len(new_items))
        outcome.stage = FeedStage.DELIVERING

        for index, item in enumerate(new_items):
            if self._clock() >= deadline:
                cause = f"cycle deadline exceeded with {len(new_items) - index} items left"
                log_feed_failed(logger, source.id, FeedStage.DELIVERING.value, cause)
                outcome.fail(FeedStage.DELIVERING, cause)
                return

            try:
                self.delivery.deliver(self.destination, item, source.display_name,
                                      time_budget=deadline - self._clock())
            except PermanentDeliveryError as e:
                # Committed below like a successful send
                logger.error(f"Permanent delivery failure for '{item.guid}' of feed '{source.id}': {e}")
                outcome.permanent_failures += 1
            except TransientDeliveryError as e:
                # Remaining items wait for the next cycle
                cause = f"transient delivery failure: {e}"
                log_feed_failed(logger, source.id, FeedStage.DELIVERING.value, cause)
                outcome.fail(FeedStage.DELIVERING, cause)
                return
            else:
                outcome.delivered += 1

            if not self._commit(source, item, outcome):
                return

        outcome.stage = FeedStage.DONE

    def _commit(self, source: FeedSource, item: Item, outcome: FeedOutcome) -> bool:
        """
        Record a sent (or permanently rejected) item. The send is never repeated;
        the commit is attempted twice.
        """
        delivered_at = datetime.now(timezone.utc)
        for attempt in (1, 2):
            try:
                result = self.store.commit(source.id, item.guid, delivered_at)
            except StoreError as e:
                log_duplicate_risk(logger, source.id, item.guid, f"{e} (attempt {attempt}/2)")
                if attempt == 2:
                    outcome.fail(FeedStage.DELIVERING, f"could not record delivery of '{item.guid}': {e}")
                    log_feed_failed(logger, source.id, FeedStage.DELIVERING.value, outcome.error)
                    return False
                continue

            if result == CommitResult.ALREADY_RECORDED:
                logger.warning(f"Item '{item.guid}' of feed '{source.id}' was recorded by another run meanwhile")
            return True
        return False
