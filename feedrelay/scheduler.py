"""
Scheduler for relay cycles.
Triggers the orchestrator on a fixed interval; at most one cycle runs at a time.
"""
import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import pytz
from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_MAX_INSTANCES, JobEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from feedrelay.config_manager import ConfigManager
from feedrelay.models import CycleReport
from feedrelay.utils.logging_utils import log_scheduler_event

logger = logging.getLogger(__name__)

JOB_ID = "relay_cycle"


class FeedScheduler:
    """
    Manages periodic execution of relay cycles.
    """

    def __init__(self, cycle_func: Callable[[], Optional[CycleReport]], interval_minutes: float = 15,
                 run_on_start: bool = True, timezone: str = "UTC"):
        """
        Initialize the scheduler.

        Args:
            cycle_func: Callable running one cycle; returns a CycleReport, or None when skipped
            interval_minutes: Minutes between cycle starts
            run_on_start: Also run one cycle right after start()
            timezone: Timezone for scheduling
        """
        self.cycle_func = cycle_func
        self.interval_minutes = interval_minutes
        self.run_on_start = run_on_start
        self.timezone = timezone
        self.skipped_ticks = 0

        try:
            self.tz = pytz.timezone(timezone)
        except pytz.exceptions.UnknownTimeZoneError:
            logger.warning(f"Unknown timezone: {timezone}, using UTC")
            self.tz = pytz.utc

        self.scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
                'misfire_grace_time': 60,
            },
            timezone=self.tz,
        )
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_MAX_INSTANCES | EVENT_JOB_ERROR)

        logger.debug(f"Scheduler initialized with interval {interval_minutes} minutes ({self.tz.zone})")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def _run_job_safely(self) -> Optional[CycleReport]:
        """
        Run the cycle function with error handling.
        """
        try:
            start_time = time.time()
            report = self.cycle_func()
            duration = time.time() - start_time

            if report is None:
                log_scheduler_event(logger, "tick_skipped", "previous cycle still running")
                return None

            summary = report.summary()
            logger.info(f"Scheduled cycle finished in {duration:.2f}s: {summary['total_delivered']} delivered "
                        f"from {summary['feeds_processed']} feeds ({summary['errors']} failed)")
            return report

        except Exception as e:
            logger.error(f"Error executing scheduled cycle: {e}", exc_info=True)
            return None

    def _on_job_event(self, event: JobEvent):
        if event.code == EVENT_JOB_MAX_INSTANCES:
            self.skipped_ticks += 1
            log_scheduler_event(logger, "tick_skipped", f"cycle still running at {getattr(event, 'scheduled_run_times', None)}")
        elif event.code == EVENT_JOB_ERROR:
            logger.error(f"Scheduled job {event.job_id} raised: {getattr(event, 'exception', None)}")

    def setup_schedule(self):
        """Register the interval job."""
        next_run_time = datetime.now(self.tz) if self.run_on_start else None
        kwargs = {}
        if next_run_time is not None:
            kwargs['next_run_time'] = next_run_time

        self.scheduler.add_job(
            self._run_job_safely,
            trigger=IntervalTrigger(minutes=self.interval_minutes, timezone=self.tz),
            id=JOB_ID,
            name="Relay new feed items",
            replace_existing=True,
            **kwargs,
        )
        logger.info(f"Scheduled relay cycle every {self.interval_minutes} minutes"
                    f"{' (first run now)' if self.run_on_start else ''}")

    def start(self):
        """
        Start the scheduler in a background thread.
        """
        if self.scheduler.running:
            logger.warning("Scheduler is already running")
            return

        if not self.scheduler.get_jobs():
            self.setup_schedule()

        self.scheduler.start()
        log_scheduler_event(logger, "started")

    def shutdown(self, wait: bool = True):
        """
        Stop the scheduler.

        Args:
            wait: Wait for a running cycle to finish
        """
        if not self.scheduler.running:
            logger.warning("Scheduler is not running")
            return

        self.scheduler.shutdown(wait=wait)
        log_scheduler_event(logger, "stopped")

    def run_now(self) -> Optional[CycleReport]:
        """
        Execute one cycle immediately (outside of schedule).
        """
        logger.info("Running relay cycle immediately...")
        return self._run_job_safely()

    def list_jobs(self) -> List[Dict[str, Any]]:
        """
        Returns:
            Id, name and next run time of every scheduled job
        """
        jobs = []
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, 'next_run_time', None)
            jobs.append({
                'id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
            })
        return jobs


def initialize_scheduler(config_manager: ConfigManager,
                         cycle_func: Callable[[], Optional[CycleReport]]) -> FeedScheduler:
    """
    Build the scheduler from application settings.

    Args:
        config_manager: The ConfigManager instance with loaded settings.
        cycle_func: The function to call for each scheduled cycle.

    Returns:
        A configured, not yet started FeedScheduler
    """
    return FeedScheduler(
        cycle_func=cycle_func,
        interval_minutes=config_manager.get_config_value("schedule.interval_minutes", 15),
        run_on_start=config_manager.get_config_value("schedule.run_on_start", True),
        timezone=config_manager.get_config_value("schedule.timezone", "UTC"),
    )
