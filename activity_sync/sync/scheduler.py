"""Periodic and on-demand refresh scheduling."""

import logging
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import DEFAULT_DEBOUNCE_SECONDS, DEFAULT_REFRESH_TIMEOUT

__all__ = ["RefreshInterval", "RefreshScheduler", "RefreshTimeoutError"]

logger = logging.getLogger(__name__)

REFRESH_JOB_ID = "refresh_job"


class RefreshTimeoutError(Exception):
    """A refresh cycle exceeded its timeout."""

    def __init__(self, message: str = "Refresh timed out"):
        super().__init__(message)


class RefreshInterval(str, Enum):
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    THIRTY_MINUTES = "30m"
    ONE_HOUR = "1h"
    MANUAL = "manual"

    @property
    def seconds(self) -> Optional[int]:
        """Length of the interval, or None for manual refresh only."""
        return {
            RefreshInterval.FIVE_MINUTES: 5 * 60,
            RefreshInterval.FIFTEEN_MINUTES: 15 * 60,
            RefreshInterval.THIRTY_MINUTES: 30 * 60,
            RefreshInterval.ONE_HOUR: 60 * 60,
            RefreshInterval.MANUAL: None,
        }[self]

    @property
    def label(self) -> str:
        return {
            RefreshInterval.FIVE_MINUTES: "Every 5 minutes",
            RefreshInterval.FIFTEEN_MINUTES: "Every 15 minutes",
            RefreshInterval.THIRTY_MINUTES: "Every 30 minutes",
            RefreshInterval.ONE_HOUR: "Every hour",
            RefreshInterval.MANUAL: "Manual only",
        }[self]


class RefreshScheduler:
    """Runs refresh cycles on an interval and on request.

    At most one cycle runs at a time. Requested refreshes closer together
    than the debounce window are ignored unless forced. Each cycle gets a
    cancel event that is set when the cycle exceeds its timeout; ``on_timeout``
    is then called without waiting for the cycle to return.
    """

    def __init__(
        self,
        on_refresh: Callable[[threading.Event], object],
        interval: RefreshInterval = RefreshInterval.FIFTEEN_MINUTES,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        timeout_seconds: float = DEFAULT_REFRESH_TIMEOUT,
        scheduler: Optional[BackgroundScheduler] = None,
        clock: Callable[[], float] = time.monotonic,
        on_timeout: Optional[Callable[[], object]] = None,
    ):
        self._on_refresh = on_refresh
        self._on_timeout = on_timeout
        self.interval = RefreshInterval(interval)
        self.debounce_seconds = debounce_seconds
        self.timeout_seconds = timeout_seconds
        self.scheduler = scheduler or BackgroundScheduler()
        self._clock = clock

        self._lock = threading.Lock()
        self._idle = threading.Event()
        self._idle.set()
        self._in_flight = False
        self._last_trigger: Optional[float] = None
        self._last_error: Optional[Exception] = None
        self._last_success: Optional[float] = None

    # -- Lifecycle --------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler and the interval job."""
        if not self.scheduler.running:
            self.scheduler.start()
        self._schedule_job()
        logger.info(f"Refresh scheduler started ({self.interval.label})")

    def stop(self) -> None:
        """Shut down the scheduler if running."""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def set_interval(self, interval: RefreshInterval) -> None:
        """Change the interval; the next run is one full interval from now."""
        self.interval = RefreshInterval(interval)
        if self.scheduler.running:
            self._schedule_job()
        logger.info(f"Refresh interval set to {self.interval.label}")

    def _schedule_job(self) -> None:
        if self.interval.seconds is None:
            if self.scheduler.get_job(REFRESH_JOB_ID):
                self.scheduler.remove_job(REFRESH_JOB_ID)
            return
        self.scheduler.add_job(
            self._scheduled_refresh,
            trigger=IntervalTrigger(seconds=self.interval.seconds),
            id=REFRESH_JOB_ID,
            replace_existing=True,
        )

    # -- Triggers ---------------------------------------------------------

    def trigger_refresh(self) -> bool:
        """Request a refresh. Returns False if debounced or already running."""
        return self._begin(force=False)

    def force_refresh(self) -> bool:
        """Request a refresh ignoring the debounce window.

        Still returns False if a cycle is already running.
        """
        return self._begin(force=True)

    def _scheduled_refresh(self) -> None:
        if self._begin(force=True, background=False):
            logger.debug("Scheduled refresh completed")

    def _begin(self, force: bool, background: bool = True) -> bool:
        with self._lock:
            if self._in_flight:
                logger.debug("Refresh ignored: already running")
                return False
            now = self._clock()
            if (
                not force
                and self._last_trigger is not None
                and now - self._last_trigger < self.debounce_seconds
            ):
                logger.debug("Refresh ignored: debounced")
                return False
            self._in_flight = True
            self._last_trigger = now
            self._idle.clear()

        if background:
            threading.Thread(target=self._run_cycle, name="refresh-trigger", daemon=True).start()
        else:
            self._run_cycle()
        return True

    def _run_cycle(self) -> None:
        cancel_event = threading.Event()
        outcome: dict[str, Exception] = {}

        def work() -> None:
            try:
                self._on_refresh(cancel_event)
            except Exception as e:
                outcome["error"] = e

        # A fresh worker per cycle, so a hung cycle cannot hold up the next one
        worker = threading.Thread(target=work, name="refresh-cycle", daemon=True)
        error: Optional[Exception] = None
        try:
            worker.start()
            worker.join(self.timeout_seconds)
            if worker.is_alive():
                cancel_event.set()
                error = RefreshTimeoutError()
                logger.warning(f"Refresh timed out after {self.timeout_seconds}s")
                if self._on_timeout is not None:
                    self._on_timeout()
            else:
                error = outcome.get("error")
                if error is not None:
                    logger.error(f"Refresh failed: {error}")
        except Exception as e:
            error = error or e
            logger.exception("Refresh cycle could not be completed")
        finally:
            with self._lock:
                self._last_error = error
                if error is None:
                    self._last_success = self._clock()
                self._in_flight = False
            self._idle.set()

    # -- Status -----------------------------------------------------------

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._in_flight

    @property
    def last_error(self) -> Optional[Exception]:
        with self._lock:
            return self._last_error

    def seconds_since_last_success(self) -> Optional[float]:
        """Seconds since the last cycle that finished without error."""
        with self._lock:
            if self._last_success is None:
                return None
            return max(0.0, self._clock() - self._last_success)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cycle is running. Returns False on timeout."""
        return self._idle.wait(timeout)

    def time_until_next_refresh(self) -> Optional[float]:
        """Seconds until the next scheduled run, or None if none is scheduled."""
        if not self.scheduler.running:
            return None
        job = self.scheduler.get_job(REFRESH_JOB_ID)
        if job is None or job.next_run_time is None:
            return None
        now = datetime.now(job.next_run_time.tzinfo)
        return max(0.0, (job.next_run_time - now).total_seconds())

    def status_description(self) -> str:
        """One-line status: the running cycle, the last error, or the schedule.

        The age of the last successful update is prepended when known.
        """
        if self.is_refreshing:
            return "Refreshing..."
        error = self.last_error
        if error is not None:
            return f"Error: {error}"

        if self.interval is RefreshInterval.MANUAL:
            schedule = "Manual refresh only"
        else:
            remaining = self.time_until_next_refresh()
            if remaining is None:
                schedule = "Not scheduled"
            elif remaining < 60:
                schedule = "Next refresh in less than a minute"
            else:
                schedule = f"Next refresh in {int(remaining // 60)} min"

        age = self.seconds_since_last_success()
        if age is None:
            return schedule
        return f"Updated {_format_age(age)} | {schedule}"


def _format_age(seconds: float) -> str:
    if seconds < 60:
        return "just now"
    minutes = int(seconds // 60)
    if minutes < 60:
        return f"{minutes} min ago"
    return f"{minutes // 60} h ago"
