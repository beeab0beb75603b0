"""
Background Execution Policy

Platform seam for keep-alive resources and recurring timers. The tracking
service only talks to BackgroundExecutionPolicy; each host supplies an
implementation. The default one runs interval jobs on APScheduler's
AsyncIOScheduler.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler

logger = logging.getLogger(__name__)


class RecurringHandle(ABC):
    """Handle to one recurring timer."""

    @abstractmethod
    def reschedule(self, interval_seconds: float) -> None:
        """Change the interval; the next run is one new interval from now."""

    @abstractmethod
    def cancel(self) -> None:
        """Stop the timer. Safe to call twice."""


class BackgroundExecutionPolicy(ABC):
    """Keep-alive and recurring execution for the host platform."""

    @abstractmethod
    def acquire_keep_alive(self) -> bool:
        """Hold the platform's keep-awake resource. Returns True if held."""

    @abstractmethod
    def release(self) -> None:
        """Release the keep-awake resource if held."""

    @property
    @abstractmethod
    def has_keep_alive(self) -> bool:
        ...

    @abstractmethod
    def schedule_recurring(
        self,
        job_id: str,
        interval_seconds: float,
        fn: Callable[[], Any],
    ) -> RecurringHandle:
        """Run fn every interval_seconds until the handle is cancelled."""

    def shutdown(self) -> None:
        """Stop all timers owned by the policy."""


class _SchedulerJobHandle(RecurringHandle):
    def __init__(self, scheduler: AsyncIOScheduler, job_id: str):
        self.scheduler = scheduler
        self.job_id = job_id
        self.cancelled = False

    def reschedule(self, interval_seconds: float) -> None:
        if self.cancelled:
            return
        try:
            self.scheduler.reschedule_job(self.job_id, trigger="interval", seconds=interval_seconds)
        except JobLookupError:
            logger.debug(f"Job {self.job_id} is gone, not rescheduled")
            return
        logger.debug(f"Rescheduled {self.job_id} every {interval_seconds}s")

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        try:
            self.scheduler.remove_job(self.job_id)
        except JobLookupError:
            pass


class AsyncIOSchedulerPolicy(BackgroundExecutionPolicy):
    """
    Policy for hosts running an asyncio event loop.

    There is no OS wake lock to take here, so keep-alive is tracked as a
    flag for status reporting.
    """

    def __init__(self, scheduler: Optional[AsyncIOScheduler] = None):
        self.scheduler = scheduler or AsyncIOScheduler()
        self._keep_alive = False
        # AsyncIOScheduler defers shutdown to the loop, so scheduler.running
        # lags; this flag is the policy's own view
        self._started = self.scheduler.running
        self._retired = False

    def acquire_keep_alive(self) -> bool:
        if not self._keep_alive:
            self._keep_alive = True
            logger.info("Keep-alive acquired")
        return True

    def release(self) -> None:
        if self._keep_alive:
            self._keep_alive = False
            logger.info("Keep-alive released")

    @property
    def has_keep_alive(self) -> bool:
        return self._keep_alive

    def schedule_recurring(
        self,
        job_id: str,
        interval_seconds: float,
        fn: Callable[[], Any],
    ) -> RecurringHandle:
        if not self._started:
            if self._retired:
                # A stopped scheduler may still be winding down; use a new one
                self.scheduler = AsyncIOScheduler()
                self._retired = False
            self.scheduler.start()
            self._started = True
        self.scheduler.add_job(
            fn,
            "interval",
            seconds=interval_seconds,
            id=job_id,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        logger.debug(f"Scheduled {job_id} every {interval_seconds}s")
        return _SchedulerJobHandle(self.scheduler, job_id)

    @property
    def is_running(self) -> bool:
        return self._started

    def shutdown(self) -> None:
        self.release()
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            self._retired = True
            logger.debug("Background scheduler stopped")
