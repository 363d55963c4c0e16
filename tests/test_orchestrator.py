"""
Unit tests for the orchestrator: one cycle across several feeds.
"""

import threading
import unittest
from unittest.mock import patch

from feedrelay.dedup_store import CommitResult, DedupStore
from feedrelay.errors import FetchError, PermanentDeliveryError, StoreError, TransientDeliveryError
from feedrelay.feed_parser import FeedParser
from feedrelay.models import FeedSource, FeedStage
from feedrelay.orchestrator import Orchestrator


def rss(*guids):
    items = "".join(
        f"<item><title>Story {g}</title><link>https://example.com/{g}</link><guid>{g}</guid></item>"
        for g in guids
    )
    return (f'<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>'
            f'<link>https://example.com/</link>{items}</channel></rss>').encode("utf-8")


class FakeFetcher:
    """Serves scripted bodies per feed id; a value may be bytes, an exception or a callable."""

    def __init__(self, bodies):
        self.bodies = dict(bodies)
        self.calls = []

    def fetch(self, source):
        self.calls.append(source.id)
        body = self.bodies[source.id]
        if isinstance(body, Exception):
            raise body
        if callable(body):
            return body(source)
        return body


class FakeDelivery:
    """Records deliveries; ``failures`` maps guid -> exception to raise."""

    def __init__(self, failures=None):
        self.failures = dict(failures or {})
        self.sent = []
        self.attempted = []
        self.budgets = []

    def deliver(self, destination, item, feed_name=None, time_budget=None):
        self.attempted.append(item.guid)
        self.budgets.append(time_budget)
        if item.guid in self.failures:
            raise self.failures[item.guid]
        self.sent.append((destination, item.feed_id, item.guid))


class TestOrchestrator(unittest.TestCase):

    def setUp(self):
        self.release = threading.Event()
        self.store = DedupStore.from_url("sqlite:///:memory:")
        self.store.init()
        self.feed_a = FeedSource(id="a", url="https://a.example.com/rss")
        self.feed_b = FeedSource(id="b", url="https://b.example.com/rss")

    def tearDown(self):
        # Unblock abandoned fetch threads
        self.release.set()

    def make_orchestrator(self, fetcher, delivery, sources=None, **kwargs):
        kwargs.setdefault("feed_timeout", 5)
        kwargs.setdefault("cycle_deadline", 30)
        kwargs.setdefault("poll_interval", 0.05)
        return Orchestrator(
            sources=sources or [self.feed_a, self.feed_b],
            fetcher=fetcher,
            parser=FeedParser(),
            store=self.store,
            delivery=delivery,
            destination="@channel",
            **kwargs,
        )

    def blocking_fetch(self, source):
        self.release.wait(10)
        return rss()

    def test_slow_feed_does_not_block_others(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2", "a3"), "b": self.blocking_fetch})
        delivery = FakeDelivery()

        report = self.make_orchestrator(fetcher, delivery, feed_timeout=0.3).run_cycle()

        self.assertEqual([guid for _, _, guid in delivery.sent], ["a1", "a2", "a3"])
        self.assertEqual(report.outcome_for("a").stage, FeedStage.DONE)
        outcome_b = report.outcome_for("b")
        self.assertTrue(outcome_b.failed)
        self.assertEqual(outcome_b.stage, FeedStage.FETCHING)
        self.assertIn("timeout", outcome_b.error)
        self.assertEqual(self.store.count("a"), 3)
        self.assertEqual(self.store.count("b"), 0)

    def test_repeated_cycles_deliver_each_item_once(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2"), "b": rss("b1")})
        delivery = FakeDelivery()
        orchestrator = self.make_orchestrator(fetcher, delivery)

        for _ in range(3):
            orchestrator.run_cycle()

        self.assertEqual(sorted(delivery.sent), [("@channel", "a", "a1"), ("@channel", "a", "a2"),
                                                 ("@channel", "b", "b1")])
        self.assertEqual(self.store.count(), 3)

    def test_unchanged_feed_delivers_nothing(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2"), "b": rss()})
        orchestrator = self.make_orchestrator(fetcher, FakeDelivery())
        orchestrator.run_cycle()

        delivery = FakeDelivery()
        orchestrator.delivery = delivery
        report = orchestrator.run_cycle()

        self.assertEqual(delivery.attempted, [])
        self.assertEqual(report.total_delivered, 0)
        self.assertEqual(report.outcome_for("a").items_seen, 2)
        self.assertEqual(report.outcome_for("a").new_items, 0)
        self.assertEqual(report.outcome_for("b").stage, FeedStage.DONE)

    def test_only_new_items_are_delivered_in_feed_order(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2"), "b": rss()})
        delivery = FakeDelivery()
        orchestrator = self.make_orchestrator(fetcher, delivery)
        orchestrator.run_cycle()

        fetcher.bodies["a"] = rss("a4", "a3", "a1", "a2")
        orchestrator.run_cycle()

        self.assertEqual([guid for _, _, guid in delivery.sent], ["a1", "a2", "a4", "a3"])

    def test_permanent_rejection_is_recorded(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2", "a3"), "b": rss()})
        delivery = FakeDelivery({"a2": PermanentDeliveryError("Bad Request: message is too long")})
        orchestrator = self.make_orchestrator(fetcher, delivery)

        report = orchestrator.run_cycle()
        orchestrator.run_cycle()

        outcome = report.outcome_for("a")
        self.assertFalse(outcome.failed)
        self.assertEqual(outcome.delivered, 2)
        self.assertEqual(outcome.permanent_failures, 1)
        self.assertEqual(self.store.count("a"), 3)
        self.assertEqual(delivery.attempted.count("a2"), 1)

    def test_transient_failure_leaves_rest_for_next_cycle(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2", "a3"), "b": rss("b1")})
        delivery = FakeDelivery({"a2": TransientDeliveryError("rate limited", retry_after=30)})
        orchestrator = self.make_orchestrator(fetcher, delivery)

        report = orchestrator.run_cycle()

        outcome = report.outcome_for("a")
        self.assertTrue(outcome.failed)
        self.assertEqual(outcome.stage, FeedStage.DELIVERING)
        self.assertNotIn("a3", delivery.attempted)
        self.assertEqual(self.store.count("a"), 1)
        self.assertEqual(report.outcome_for("b").delivered, 1)

        delivery.failures.clear()
        orchestrator.run_cycle()

        self.assertEqual([guid for _, feed, guid in delivery.sent if feed == "a"], ["a1", "a2", "a3"])

    def test_fetch_failure_is_isolated(self):
        fetcher = FakeFetcher({"a": FetchError(self.feed_a, "HTTP 500 Internal Server Error", status_code=500),
                               "b": rss("b1")})
        delivery = FakeDelivery()

        report = self.make_orchestrator(fetcher, delivery).run_cycle()

        self.assertEqual(report.outcome_for("a").stage, FeedStage.FETCHING)
        self.assertIn("HTTP 500", report.outcome_for("a").error)
        self.assertEqual(delivery.sent, [("@channel", "b", "b1")])
        self.assertEqual(len(report.failed_feeds), 1)

    def test_fetch_is_retried_when_configured(self):
        attempts = []

        def flaky(source):
            attempts.append(source.id)
            if len(attempts) == 1:
                raise FetchError(source, "connection failed: reset")
            return rss("a1")

        fetcher = FakeFetcher({"a": flaky})
        delivery = FakeDelivery()

        with patch("feedrelay.utils.helpers.random.uniform", return_value=0):
            report = self.make_orchestrator(fetcher, delivery, sources=[self.feed_a], fetch_attempts=2,
                                            backoff_factor=1.0).run_cycle()

        self.assertEqual(len(attempts), 2)
        self.assertEqual(report.outcome_for("a").delivered, 1)

    def test_parse_failure_is_isolated(self):
        fetcher = FakeFetcher({"a": b"<html><body>Service unavailable</body></html>", "b": rss("b1")})
        delivery = FakeDelivery()

        report = self.make_orchestrator(fetcher, delivery).run_cycle()

        self.assertEqual(report.outcome_for("a").stage, FeedStage.PARSING)
        self.assertTrue(report.outcome_for("a").failed)
        self.assertEqual(report.outcome_for("b").delivered, 1)

    def test_commit_failure_is_retried_once(self):
        fetcher = FakeFetcher({"a": rss("a1")})
        delivery = FakeDelivery()
        orchestrator = self.make_orchestrator(fetcher, delivery, sources=[self.feed_a])

        with patch.object(self.store, "commit",
                          side_effect=[StoreError("database is locked"), CommitResult.RECORDED]) as commit:
            with self.assertLogs("feedrelay.orchestrator", level="CRITICAL"):
                report = orchestrator.run_cycle()

        self.assertEqual(commit.call_count, 2)
        self.assertEqual(len(delivery.sent), 1)
        self.assertFalse(report.outcome_for("a").failed)

    def test_commit_failure_stops_feed_without_resending(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2")})
        delivery = FakeDelivery()
        orchestrator = self.make_orchestrator(fetcher, delivery, sources=[self.feed_a])

        with patch.object(self.store, "commit", side_effect=StoreError("database is gone")):
            with self.assertLogs("feedrelay.orchestrator", level="CRITICAL") as logs:
                report = orchestrator.run_cycle()

        self.assertEqual(delivery.attempted, ["a1"])
        self.assertEqual(report.outcome_for("a").stage, FeedStage.DELIVERING)
        self.assertTrue(report.outcome_for("a").failed)
        self.assertTrue(any("POSSIBLE DUPLICATE RISK" in line for line in logs.output))

    def test_filter_failure_is_isolated(self):
        fetcher = FakeFetcher({"a": rss("a1")})
        orchestrator = self.make_orchestrator(fetcher, FakeDelivery(), sources=[self.feed_a])

        with patch.object(self.store, "filter_new", side_effect=StoreError("no such table")):
            report = orchestrator.run_cycle()

        self.assertEqual(report.outcome_for("a").stage, FeedStage.FILTERING)
        self.assertTrue(report.outcome_for("a").failed)

    def test_cycle_deadline_stops_delivery(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2")})
        delivery = FakeDelivery()

        report = self.make_orchestrator(fetcher, delivery, sources=[self.feed_a], cycle_deadline=0).run_cycle()

        self.assertEqual(delivery.sent, [])
        self.assertTrue(report.outcome_for("a").failed)
        self.assertIn("deadline", report.outcome_for("a").error)
        self.assertEqual(self.store.count(), 0)

    def test_delivery_budget_is_bounded_by_cycle_deadline(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2")})
        delivery = FakeDelivery()

        self.make_orchestrator(fetcher, delivery, sources=[self.feed_a], cycle_deadline=30).run_cycle()

        self.assertEqual(len(delivery.budgets), 2)
        self.assertTrue(all(0 < budget <= 30 for budget in delivery.budgets))

    def test_overlapping_cycle_is_skipped(self):
        started = threading.Event()

        def slow(source):
            started.set()
            self.release.wait(10)
            return rss("a1")

        fetcher = FakeFetcher({"a": slow})
        delivery = FakeDelivery()
        orchestrator = self.make_orchestrator(fetcher, delivery, sources=[self.feed_a])

        reports = []
        worker = threading.Thread(target=lambda: reports.append(orchestrator.run_cycle()))
        worker.start()
        self.assertTrue(started.wait(5))

        self.assertTrue(orchestrator.running)
        self.assertIsNone(orchestrator.run_cycle())

        self.release.set()
        worker.join(10)
        self.assertEqual(reports[0].total_delivered, 1)
        self.assertFalse(orchestrator.running)

    def test_summary(self):
        fetcher = FakeFetcher({"a": rss("a1", "a2"), "b": FetchError(self.feed_b, "connection failed")})

        report = self.make_orchestrator(fetcher, FakeDelivery()).run_cycle()
        summary = report.summary()

        self.assertEqual(summary["feeds_processed"], 2)
        self.assertEqual(summary["total_new_items"], 2)
        self.assertEqual(summary["total_delivered"], 2)
        self.assertEqual(summary["errors"], 1)
        self.assertGreaterEqual(summary["duration_seconds"], 0)


if __name__ == '__main__':
    unittest.main()
