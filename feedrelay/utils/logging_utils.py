"""
Logging utilities for Feed Relay.
Contains helper functions for consistent logging across modules.
"""
import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional


def log_fetch_failure(logger: logging.Logger, feed_id: str, error: str, attempts: int) -> None:
    """
    Log failed feed fetch.

    Args:
        logger: Logger instance to use
        feed_id: Feed that failed
        error: Error message
        attempts: Number of attempts made
    """
    logger.error(f"Failed to fetch feed '{feed_id}' after {attempts} attempt(s): {error}")


def log_deduplication_results(logger: logging.Logger, feed_id: str, total: int, new: int) -> None:
    """
    Log deduplication results in a consistent format.

    Args:
        logger: Logger instance to use
        feed_id: Feed the items came from
        total: Number of items parsed
        new: Number of items not delivered before
    """
    if total == 0:
        logger.info(f"Feed '{feed_id}': no items to process")
        return

    duplicates = total - new
    duplicate_percentage = duplicates / total * 100
    logger.info(f"Feed '{feed_id}': {total} items, {new} new, {duplicates} already delivered ({duplicate_percentage:.1f}%)")


def log_feed_failed(logger: logging.Logger, feed_id: str, stage: str, cause: str) -> None:
    """Log a feed that ended the cycle in a failed state."""
    logger.error(f"FeedFailed({stage}) for '{feed_id}': {cause}")


def log_duplicate_risk(logger: logging.Logger, feed_id: str, guid: str, error: str) -> None:
    """
    Log a message that reached the destination but could not be recorded.
    These lines are meant to be grepped by a human auditing duplicates.
    """
    logger.critical(f"POSSIBLE DUPLICATE RISK: item '{guid}' of feed '{feed_id}' was delivered "
                    f"but its delivery record could not be stored: {error}")


def log_scheduler_event(logger: logging.Logger, event: str, details: Optional[str] = None) -> None:
    """
    Log scheduler events.

    Args:
        logger: Logger instance to use
        event: Event type (started, stopped, tick_skipped, etc.)
        details: Optional additional details
    """
    message = f"Scheduler {event}"
    if details:
        message += f": {details}"

    logger.info(message)


def log_configuration_loaded(logger: logging.Logger, config_path: str, sections: list) -> None:
    """
    Log configuration loading results.

    Args:
        logger: Logger instance to use
        config_path: Path to configuration file
        sections: List of configuration sections loaded
    """
    logger.info(f"Configuration loaded from {config_path}: {len(sections)} sections ({', '.join(sections)})")


def log_cycle_summary(logger: logging.Logger, stats: dict) -> None:
    """
    Log cycle summary.

    Args:
        logger: Logger instance to use
        stats: Cycle statistics dictionary (see CycleReport.summary)
    """
    logger.info(f"Cycle completed in {format_duration(stats.get('duration_seconds', 0))}: "
                f"{stats.get('total_delivered', 0)}/{stats.get('total_new_items', 0)} new items delivered "
                f"from {stats.get('feeds_processed', 0)} feeds "
                f"({stats.get('errors', 0)} failed feeds, {stats.get('permanent_failures', 0)} rejected items)")


def format_duration(seconds: float) -> str:
    """
    Format duration in human-readable format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string (e.g., "2m 30s", "1h 5m")
    """
    if seconds < 60:
        return f"{seconds:.1f}s"

    minutes = int(seconds // 60)
    remaining_seconds = int(seconds % 60)

    if minutes < 60:
        return f"{minutes}m {remaining_seconds}s"

    hours = int(minutes // 60)
    remaining_minutes = int(minutes % 60)

    return f"{hours}h {remaining_minutes}m"


def setup_logging(log_level: str = "INFO", log_dir: str = "logs") -> logging.Logger:
    """
    Configure console and file logging.

    Args:
        log_level: Minimum logging level (e.g., "INFO", "DEBUG")
        log_dir: Directory to store log files

    Returns:
        The configured root logger instance.
    """
    os.makedirs(log_dir, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter('%(levelname)s: %(message)s'))
    root_logger.addHandler(console_handler)

    # File handler (daily rotation)
    file_handler = TimedRotatingFileHandler(os.path.join(log_dir, 'feedrelay.log'), when='midnight',
                                            interval=1, backupCount=7, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root_logger.addHandler(file_handler)

    # APScheduler is chatty at INFO (one line per job execution)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)

    root_logger.info(f"Logging configured to level {log_level.upper()}. Log files in {log_dir}")
    return root_logger
