"""
Tests for the command line entry point and component wiring.
"""

import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

import responses

from feedrelay.main import FeedRelay, main
from feedrelay.config_manager import ConfigManager


RSS_BODY = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>t</title><link>https://example.com/</link>
<item><title>Hello</title><link>https://example.com/1</link><guid>1</guid></item>
<item><title>World</title><link>https://example.com/2</link><guid>2</guid></item>
</channel></rss>"""


class TestFeedRelay(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        self.settings = {
            "delivery": {"chat_id": "@news", "bot_token": "123:ABC", "api_base": "https://api.telegram.test"},
            "storage": {"database_url": "sqlite:///:memory:"},
            "networking": {"user_agent": "FeedRelayTest/1.0"},
            "logging": {"log_dir": os.path.join(self.temp_dir, "logs")},
        }
        self.feeds = {"feeds": [
            {"id": "good", "url": "https://good.example.com/rss"},
            {"id": "down", "url": "https://down.example.com/rss"},
        ]}
        env_patcher = patch.dict(os.environ, {}, clear=True)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def write_configs(self):
        with open(os.path.join(self.temp_dir, 'settings.json'), 'w', encoding='utf-8') as f:
            json.dump(self.settings, f)
        with open(os.path.join(self.temp_dir, 'feeds.json'), 'w', encoding='utf-8') as f:
            json.dump(self.feeds, f)

    def config_manager(self):
        self.write_configs()
        return ConfigManager(os.path.join(self.temp_dir, 'settings.json'),
                             os.path.join(self.temp_dir, 'feeds.json'), load_env=False)

    def test_builds_full_pipeline(self):
        relay = FeedRelay(self.config_manager())

        self.assertEqual(relay.orchestrator.destination, "@news")
        self.assertEqual(len(relay.orchestrator.sources), 2)
        self.assertEqual(relay.fetcher.session.headers['User-Agent'], "FeedRelayTest/1.0")

    def test_delivery_requires_chat_id(self):
        self.settings["delivery"]["chat_id"] = ""

        with self.assertRaises(ValueError):
            FeedRelay(self.config_manager())

    def test_check_only_skips_delivery_setup(self):
        self.settings["delivery"] = {}

        relay = FeedRelay(self.config_manager(), with_delivery=False)

        self.assertIsNone(relay.orchestrator)

    @responses.activate
    def test_check_feeds_reports_each_feed(self):
        responses.add(responses.GET, "https://good.example.com/rss", body=RSS_BODY, status=200)
        responses.add(responses.GET, "https://down.example.com/rss", status=503)
        relay = FeedRelay(self.config_manager(), with_delivery=False)
        relay.store.commit("good", "1")

        results = relay.check_feeds()

        self.assertEqual(results[0]["items"], 2)
        self.assertEqual(results[0]["undelivered"], 1)
        self.assertEqual(results[0]["latest"], "Hello")
        self.assertIn("FetchError", results[1]["error"])
        self.assertEqual(results[1]["status_code"], 503)
        self.assertNotIn("status_code", results[0])
        self.assertEqual(relay.store.count(), 1)

    def test_stats_lists_every_configured_feed(self):
        relay = FeedRelay(self.config_manager(), with_delivery=False)
        relay.store.commit("good", "1")
        relay.store.commit("good", "2")
        relay.store.commit("removed-feed", "9")

        self.assertEqual(relay.stats(), {"good": 2, "down": 0})


class TestMain(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.mkdtemp()
        env_patcher = patch.dict(os.environ, {}, clear=True)
        env_patcher.start()
        self.addCleanup(env_patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir)

    def test_no_action_prints_help(self):
        with patch('sys.stdout') as stdout:
            self.assertEqual(main([]), 0)
        self.assertTrue(stdout.write.called)

    def test_missing_config_exits_with_error(self):
        with patch('sys.stderr'):
            self.assertEqual(main(["--config-dir", self.temp_dir, "--run-now"]), 1)

    @patch('feedrelay.main.setup_logging')
    def test_stats_command(self, mock_logging):
        with open(os.path.join(self.temp_dir, 'settings.json'), 'w', encoding='utf-8') as f:
            json.dump({"storage": {"database_url": "sqlite:///:memory:"}}, f)
        with open(os.path.join(self.temp_dir, 'feeds.json'), 'w', encoding='utf-8') as f:
            json.dump({"feeds": [{"id": "a", "url": "https://a.example.com/rss"}]}, f)

        with patch('builtins.print') as mock_print, patch('feedrelay.config_manager.load_dotenv'):
            self.assertEqual(main(["--config-dir", self.temp_dir, "--stats"]), 0)

        mock_logging.assert_called_once()
        self.assertEqual(json.loads(mock_print.call_args[0][0]), {"a": 0})

    @patch('feedrelay.main.setup_logging')
    def test_run_now_without_chat_id_fails(self, mock_logging):
        with open(os.path.join(self.temp_dir, 'settings.json'), 'w', encoding='utf-8') as f:
            json.dump({"storage": {"database_url": "sqlite:///:memory:"}}, f)
        with open(os.path.join(self.temp_dir, 'feeds.json'), 'w', encoding='utf-8') as f:
            json.dump({"feeds": [{"id": "a", "url": "https://a.example.com/rss"}]}, f)

        with patch('feedrelay.config_manager.load_dotenv'):
            self.assertEqual(main(["--config-dir", self.temp_dir, "--run-now"]), 1)


if __name__ == '__main__':
    unittest.main()
