"""
Configuration manager for Feed Relay.
Handles loading and validation of configuration settings.
"""
import json
import logging
import os
from json.decoder import JSONDecodeError
from typing import Any, Dict, List

from dotenv import load_dotenv
from pydantic import ValidationError

from feedrelay.dedup_store import MAX_FEED_ID_LENGTH
from feedrelay.models import FeedSource
from feedrelay.utils.helpers import validate_url
from feedrelay.utils.logging_utils import log_configuration_loaded

logger = logging.getLogger(__name__)

# Environment variables that take precedence over settings.json
ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": "delivery.bot_token",
    "TELEGRAM_CHAT_ID": "delivery.chat_id",
    "DATABASE_URL": "storage.database_url",
}


# Messages are rendered as MarkdownV2 or as plain text (empty parse mode)
SUPPORTED_PARSE_MODES = ("", "MarkdownV2")


class ConfigManager:
    """
    Manages configuration loading and feed source extraction.
    """

    def __init__(self, settings_path: str, feeds_path: str, load_env: bool = True):
        """
        Initialize configuration manager.

        Args:
            settings_path: Path to main settings file (settings.json)
            feeds_path: Path to feeds configuration file (feeds.json)
            load_env: Read a .env file and apply environment overrides
        """
        self.settings_path = settings_path
        self.feeds_path = feeds_path
        self.settings = None
        self.feeds_config = None

        logger.debug(f"ConfigManager initialized with settings: {settings_path}, feeds: {feeds_path}")

        try:
            self._load_all_configs(load_env)
        except FileNotFoundError as e:
            logger.critical(f"Fatal: Configuration file not found: {e}. Please ensure settings.json and feeds.json exist in the config directory.")
            raise

    def _load_all_configs(self, load_env: bool):
        """Load all configuration files."""
        self.settings = self._load_json_file(self.settings_path, "settings")
        self.feeds_config = self._load_json_file(self.feeds_path, "feeds")

        if load_env:
            load_dotenv()
            self._apply_env_overrides()

        self._validate_settings()
        self._validate_feeds_config()

    def _load_json_file(self, file_path: str, config_type: str) -> Dict[str, Any]:
        """
        Load a JSON configuration file.

        Args:
            file_path: Path to JSON file
            config_type: Type of config for error messages

        Returns:
            Configuration dictionary

        Raises:
            FileNotFoundError: If the file does not exist.
            json.JSONDecodeError: If the file contains invalid JSON.
        """
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except JSONDecodeError as e:
            logger.error(f"Invalid JSON in {config_type} configuration file '{file_path}': {e}")
            raise

        if not isinstance(config, dict):
            raise ValueError(f"{config_type} configuration in '{file_path}' must be a JSON object")

        log_configuration_loaded(logger, file_path, list(config.keys()))
        return config

    def _apply_env_overrides(self):
        for env_var, key_path in ENV_OVERRIDES.items():
            value = os.getenv(env_var)
            if not value:
                continue
            section, key = key_path.split('.')
            self.settings.setdefault(section, {})[key] = value
            logger.debug(f"Using {env_var} from environment for '{key_path}'")

    def _validate_settings(self):
        """Validate settings configuration."""
        required_sections = ("networking", "delivery", "storage", "schedule", "logging")

        for section in required_sections:
            if section not in self.settings:
                logger.warning(f"Missing configuration section: '{section}', using defaults")
                self.settings[section] = {}
            elif not isinstance(self.settings[section], dict):
                raise TypeError(f"Invalid type for configuration section '{section}'. Expected dict")

        self._set_default_settings()
        self._validate_specific_settings()

        logger.info("Settings configuration validated")

    def _validate_specific_settings(self):
        """Validate specific key values within settings."""
        numeric_keys = (
            "networking.timeout_seconds",
            "networking.backoff_factor",
            "delivery.timeout_seconds",
            "delivery.min_interval_seconds",
            "delivery.backoff_seconds",
            "delivery.max_retry_after_seconds",
            "schedule.interval_minutes",
            "schedule.feed_timeout_seconds",
            "schedule.cycle_deadline_seconds",
        )
        for key_path in numeric_keys:
            value = self.get_config_value(key_path)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise TypeError(f"Invalid type for '{key_path}'. Expected int or float.")
            if value < 0:
                raise ValueError(f"'{key_path}' must not be negative")

        for key_path in ("networking.fetch_attempts", "delivery.max_retries", "schedule.max_parallel_feeds"):
            value = self.get_config_value(key_path)
            if isinstance(value, bool) or not isinstance(value, int):
                raise TypeError(f"Invalid type for '{key_path}'. Expected int.")

        if self.get_config_value("schedule.interval_minutes") <= 0:
            raise ValueError("'schedule.interval_minutes' must be positive")
        if self.get_config_value("networking.fetch_attempts") < 1:
            raise ValueError("'networking.fetch_attempts' must be at least 1")
        if self.get_config_value("schedule.max_parallel_feeds") < 1:
            raise ValueError("'schedule.max_parallel_feeds' must be at least 1")

        for key_path in ("delivery.chat_id", "storage.database_url", "schedule.timezone", "logging.level"):
            if not isinstance(self.get_config_value(key_path), str):
                raise TypeError(f"Invalid type for '{key_path}'. Expected a string.")

        if not self.get_config_value("storage.database_url"):
            raise ValueError("'storage.database_url' must not be empty")

        parse_mode = self.get_config_value("delivery.parse_mode")
        if parse_mode not in SUPPORTED_PARSE_MODES:
            raise ValueError(f"'delivery.parse_mode' must be one of {SUPPORTED_PARSE_MODES}, got {parse_mode!r}")

        if not isinstance(self.get_config_value("schedule.run_on_start"), bool):
            raise TypeError("Invalid type for 'schedule.run_on_start'. Expected boolean.")

    def _validate_feeds_config(self):
        """Validate feeds configuration."""
        if "feeds" not in self.feeds_config:
            raise ValueError("Missing 'feeds' section in feeds configuration")

        feeds = self.feeds_config["feeds"]
        if not isinstance(feeds, list) or len(feeds) == 0:
            raise ValueError("Feeds must be a non-empty list")

        seen_ids = set()
        for i, entry in enumerate(feeds):
            if not isinstance(entry, dict):
                raise ValueError(f"Invalid feed entry at index {i}: Expected a dictionary.")
            feed_id = entry.get("id")
            if not isinstance(feed_id, str) or not feed_id.strip():
                raise ValueError(f"Invalid feed entry at index {i}: missing or invalid 'id'")
            if len(feed_id) > MAX_FEED_ID_LENGTH:
                raise ValueError(f"Feed id at index {i} is longer than {MAX_FEED_ID_LENGTH} characters")
            if feed_id in seen_ids:
                raise ValueError(f"Duplicate feed id '{feed_id}' at index {i}")
            seen_ids.add(feed_id)
            if not validate_url(entry.get("url")):
                raise ValueError(f"Invalid feed entry '{feed_id}': 'url' must be an http(s) URL")

        logger.info(f"Feeds configuration validated: {len(feeds)} feeds")

    def _set_default_settings(self):
        """Recursively set default values for missing settings."""
        defaults = {
            "networking": {
                "timeout_seconds": 20,
                "fetch_attempts": 1,
                "backoff_factor": 2.0,
                "user_agent": "",
                "proxy": {"enabled": False},
            },
            "delivery": {
                "chat_id": "",
                "bot_token": "",
                "api_base": "https://api.telegram.org",
                "parse_mode": "MarkdownV2",
                "timeout_seconds": 15,
                "min_interval_seconds": 1.0,
                "max_retries": 3,
                "backoff_seconds": 1.0,
                "max_retry_after_seconds": 60,
                "disable_web_page_preview": False,
            },
            "storage": {
                "database_url": "sqlite:///data/feedrelay.db",
            },
            "schedule": {
                "interval_minutes": 15,
                "run_on_start": True,
                "timezone": "UTC",
                "max_parallel_feeds": 4,
                "feed_timeout_seconds": 60,
                "cycle_deadline_seconds": 600,
            },
            "logging": {
                "level": "INFO",
                "log_dir": "./logs",
            },
        }

        def merge_dicts(source, default):
            """Recursively merges default dict into source dict."""
            for key, value in default.items():
                if key not in source:
                    source[key] = value
                elif isinstance(value, dict) and isinstance(source[key], dict):
                    merge_dicts(source[key], value)

        merge_dicts(self.settings, defaults)

    def get_feed_sources(self) -> List[FeedSource]:
        """
        Build the configured feed sources.

        Returns:
            FeedSource list in configuration order

        Raises:
            ValueError: If an entry cannot be turned into a FeedSource (e.g. unknown format)
        """
        sources = []
        for entry in self.feeds_config.get("feeds", []):
            try:
                sources.append(FeedSource(**entry))
            except ValidationError as e:
                raise ValueError(f"Invalid feed entry '{entry.get('id')}': {e}") from e
        logger.info(f"Loaded {len(sources)} feed sources")
        return sources

    def get_config_value(self, key_path: str, default=None):
        """
        Get configuration value using dot notation.

        Args:
            key_path: Dot-separated path to configuration value (e.g., "storage.database_url")
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        if not self.settings:
            logger.warning(f"Settings configuration not loaded when trying to get value for '{key_path}'. Returning default.")
            return default

        keys = key_path.split('.')
        value = self.settings

        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default

        return value
