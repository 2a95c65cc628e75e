"""Recurring poll trigger on an APScheduler BackgroundScheduler."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger(__name__)

JOB_ID = "booking_poll"


class PollScheduler:
    """Run ``job`` every ``interval_minutes``, first after ``startup_delay_seconds``.

    When ``enabled`` is False, ``start()`` does nothing and returns False.
    """

    def __init__(
        self,
        job: Callable[[], object],
        *,
        enabled: bool = True,
        interval_minutes: int = 5,
        startup_delay_seconds: float = 5.0,
        max_instances: int = 2,
    ) -> None:
        self._job = job
        self._enabled = enabled
        self._interval_minutes = interval_minutes
        self._startup_delay = startup_delay_seconds
        self._max_instances = max_instances
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        if not self._enabled:
            logger.info("Mailbox polling disabled; scheduler not started")
            return False
        if self._scheduler is not None:
            logger.warning("Poll scheduler already running")
            return True

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            self._run_guarded,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=JOB_ID,
            name="Mailbox poll",
            next_run_time=datetime.now(UTC) + timedelta(seconds=self._startup_delay),
            max_instances=self._max_instances,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self._scheduler = scheduler

        logger.info(
            "Poll scheduler started: every %d min, first run at %s",
            self._interval_minutes, self.next_run_time(),
        )
        return True

    def next_run_time(self) -> datetime | None:
        if self._scheduler is None:
            return None
        job = self._scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def shutdown(self, wait: bool = False) -> None:
        """Stop the trigger; a cycle already running is not interrupted."""
        if self._scheduler is None:
            return
        self._scheduler.shutdown(wait=wait)
        self._scheduler = None
        logger.info("Poll scheduler stopped")

    def _run_guarded(self) -> None:
        try:
            self._job()
        except Exception:
            logger.exception("Scheduled poll cycle failed")
