"""Day cache coordinator - decides which days to fetch and feeds the session."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Optional, TypeVar

from ..config import (
    DEFAULT_HEATMAP_RANGE,
    DEFAULT_MAX_DAYS_PER_BATCH,
    DEFAULT_MAX_WORKERS,
    HEATMAP_RANGES,
)
from ..dates import day_range, parse_date_key, start_of_day, end_of_day, today_key, utc_now
from ..models import Account, UnifiedActivity
from .day_cache import DayCacheStore
from .orchestrator import RefreshOrchestrator
from .session import ActivitySession

__all__ = ["DayCacheCoordinator", "RefreshCancelled", "RefreshStats", "contiguous_batches"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RefreshCancelled(Exception):
    """An account fetch was skipped because its cycle was cancelled."""


@dataclass
class RefreshStats:
    """Outcome of one refresh cycle."""

    days_fetched: int = 0
    accounts_succeeded: int = 0
    accounts_failed: int = 0
    backfill_batches: int = 0
    cancelled: bool = False
    errors: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled


@dataclass
class _Cycle:
    cancel_event: threading.Event
    loading_days: list[str] = field(default_factory=list)


def contiguous_batches(days: list[str], max_days: int) -> list[tuple[str, str]]:
    """Split date keys into contiguous (start, end) runs of at most ``max_days``.

    Runs are returned newest first.
    """
    if max_days < 1:
        raise ValueError("max_days must be positive")

    runs: list[list[str]] = []
    previous = None
    for day in sorted(set(days)):
        current = parse_date_key(day)
        if previous is not None and current - previous == timedelta(days=1) and len(runs[-1]) < max_days:
            runs[-1].append(day)
        else:
            runs.append([day])
        previous = current

    return [(run[0], run[-1]) for run in reversed(runs)]


class DayCacheCoordinator:
    """Keeps the session populated for the visible heatmap window.

    Today is always refetched. Any other day is fetched once and then
    served from the day cache, including days that had no activity.
    """

    def __init__(
        self,
        session: ActivitySession,
        orchestrator: RefreshOrchestrator,
        cache: Optional[DayCacheStore] = None,
        heatmap_range_days: int = DEFAULT_HEATMAP_RANGE,
        max_days_per_batch: int = DEFAULT_MAX_DAYS_PER_BATCH,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.session = session
        self.orchestrator = orchestrator
        self.cache = cache
        self.max_days_per_batch = max_days_per_batch
        self.max_workers = max_workers
        self._clock = clock
        self.heatmap_range_days = DEFAULT_HEATMAP_RANGE
        self.set_heatmap_range(heatmap_range_days)

        self._backfill_lock = threading.Lock()
        self._backfill_thread: Optional[threading.Thread] = None
        self._backfill_cancel = threading.Event()

        self._cycle_lock = threading.Lock()
        self._cycle: Optional[_Cycle] = None

    # -- Window -----------------------------------------------------------

    def set_heatmap_range(self, days: int) -> None:
        if days not in HEATMAP_RANGES:
            raise ValueError(f"Heatmap range must be one of {HEATMAP_RANGES}, got {days}")
        self.heatmap_range_days = days

    def today(self) -> str:
        return today_key(self._clock())

    def visible_days(self) -> list[str]:
        """The rolling window of date keys ending today, ascending."""
        today = parse_date_key(self.today())
        first = today - timedelta(days=self.heatmap_range_days - 1)
        return day_range(first.isoformat(), today.isoformat())

    def get_missing_days(self) -> list[str]:
        """Visible days that some enabled account has never fetched."""
        accounts = self.session.enabled_accounts()
        if not accounts:
            return []
        if self.cache is None:
            return self.visible_days()

        index = self.cache.load_day_index()
        return [
            day
            for day in self.visible_days()
            if any(day not in index.get(account.id, {}) for account in accounts)
        ]

    def needs_initial_fetch(self) -> bool:
        if self.cache is None:
            return True
        for account in self.session.enabled_accounts():
            if self.cache.is_today_cache_stale(account.id):
                return True
        return bool(self.get_missing_days())

    # -- Cache loading ----------------------------------------------------

    def load_from_cache(self) -> int:
        """Populate the session from cached slots of the visible window.

        A day is marked loaded only when every enabled account has a slot
        for it. Returns the number of days marked loaded.
        """
        if self.cache is None:
            return 0

        accounts = self.session.enabled_accounts()
        if not accounts:
            return 0

        index = self.cache.load_day_index()
        loaded = 0
        for day in self.visible_days():
            activities: list[UnifiedActivity] = []
            cached_ids: list[str] = []
            for account in accounts:
                if day not in index.get(account.id, {}):
                    continue
                cached = self.cache.load_activities_for_day(account.id, day)
                if cached is None:
                    continue
                activities.extend(cached)
                cached_ids.append(account.id)

            if not cached_ids:
                continue
            if len(cached_ids) == len(accounts):
                self.session.mark_day_loaded(day, activities, cached_ids)
                loaded += 1
            else:
                self.session.apply_day_activities(day, activities, cached_ids)

        logger.info(f"Loaded {loaded} days from cache")
        return loaded

    def load_day(self, day: str) -> bool:
        """Load a single day on demand (e.g. the user selected it).

        Cached slots are used for every day but today. Returns True if the
        day ended up loaded; a day that is already loaded or loading is a
        no-op.
        """
        if self.session.is_day_loaded(day):
            return True
        if not self.session.begin_loading(day):
            logger.debug(f"Day {day} is already loading")
            return False

        try:
            accounts = self.session.enabled_accounts()
            activities: list[UnifiedActivity] = []
            loaded_ids: list[str] = []
            to_fetch: list[Account] = []

            for account in accounts:
                cached = None
                if self.cache is not None and day != self.today():
                    cached = self.cache.load_activities_for_day(account.id, day)
                if cached is None:
                    to_fetch.append(account)
                else:
                    activities.extend(cached)
                    loaded_ids.append(account.id)

            results, failures = self._fetch_parallel(
                to_fetch, lambda account: self._fetch_day(account, day)
            )
            for account_id, fetched in results.items():
                activities.extend(fetched)
                loaded_ids.append(account_id)
        except Exception:
            self.session.cancel_day_loading(day)
            raise

        if failures:
            for account, error in failures:
                logger.warning(f"Failed to load {day} for {account.display_name}: {error}")
            self.session.apply_day_activities(day, activities, loaded_ids)
            self.session.cancel_day_loading(day)
            return False

        self.session.mark_day_loaded(day, activities, loaded_ids)
        return True

    # -- Refresh cycle ----------------------------------------------------

    def refresh(self, cancel_event: Optional[threading.Event] = None) -> Optional[RefreshStats]:
        """Run one refresh cycle.

        Today (and yesterday, if never fetched) are fetched before this
        returns. Older missing days are handed to a background backfill
        that is not bound by the caller's timeout. Returns None if a cycle
        is already running.
        """
        if not self.session.start_refresh():
            logger.info("Refresh already in progress, skipping")
            return None

        cycle = _Cycle(cancel_event or threading.Event())
        with self._cycle_lock:
            self._cycle = cycle

        stats = RefreshStats()
        try:
            accounts = self.session.enabled_accounts()
            if not accounts:
                self._end_cycle(cycle)
                return stats

            if self.cache is None:
                self._refresh_full_window(accounts, cycle, stats)
            else:
                self._refresh_days(accounts, cycle, stats)
        except Exception as e:
            logger.exception("Refresh cycle failed")
            self._end_cycle(cycle, error=str(e), offline=self.session.is_offline, completed=False)
            raise

        if stats.cancelled:
            logger.warning("Refresh cycle cancelled, results discarded")
            self._end_cycle(
                cycle, error="Refresh cancelled", offline=self.session.is_offline, completed=False
            )
        else:
            self._end_cycle(
                cycle,
                error=stats.errors[0] if stats.errors else None,
                offline=stats.accounts_succeeded == 0,
                errors=stats.errors,
            )
        logger.info(
            f"Refresh finished: {stats.days_fetched} days, "
            f"{stats.accounts_succeeded} ok, {stats.accounts_failed} failed, "
            f"{stats.backfill_batches} batches queued for backfill"
        )
        return stats

    def abort_refresh(self, error: str = "Refresh timed out") -> bool:
        """Give up on the running cycle without waiting for it to return.

        The cycle's cancel event is set, its claimed days are released and
        the session is finished as offline right away. Whatever the
        abandoned cycle does afterwards no longer reaches the session.
        Returns False if no cycle was running.
        """
        with self._cycle_lock:
            cycle = self._cycle
            if cycle is None:
                return False
            self._cycle = None
            cycle.cancel_event.set()
            days = list(cycle.loading_days)

        logger.warning(f"Refresh cycle aborted: {error}")
        for day in days:
            self.session.cancel_day_loading(day)
        self.session.finish_refresh(error=error, offline=True, completed=False)
        return True

    def _claim_days(self, cycle: _Cycle, days: list[str]) -> bool:
        with self._cycle_lock:
            if self._cycle is not cycle:
                return False
            cycle.loading_days = list(days)
            for day in days:
                self.session.mark_day_loading(day)
        return True

    def _end_cycle(self, cycle: _Cycle, **outcome) -> None:
        with self._cycle_lock:
            if self._cycle is not cycle:
                logger.debug("Abandoned refresh cycle returned, ignoring its outcome")
                return
            self._cycle = None
            days = list(cycle.loading_days)
        for day in days:
            if not self.session.is_day_loaded(day):
                self.session.cancel_day_loading(day)
        self.session.finish_refresh(**outcome)

    def _refresh_days(self, accounts: list[Account], cycle: _Cycle, stats: RefreshStats) -> None:
        index = self.cache.load_day_index()
        today = self.today()
        yesterday = (parse_date_key(today) - timedelta(days=1)).isoformat()
        visible = self.visible_days()

        priority: dict[str, list[str]] = {}
        backlog: dict[str, list[str]] = {}
        for account in accounts:
            known = index.get(account.id, {})
            days = sorted({d for d in visible if d not in known} | {today})
            priority[account.id] = [d for d in days if d >= yesterday]
            backlog[account.id] = [d for d in days if d < yesterday]

        priority_days = sorted({d for days in priority.values() for d in days})
        if not self._claim_days(cycle, priority_days):
            stats.cancelled = True
            return

        results, failures = self._fetch_parallel(
            accounts,
            lambda account: self.orchestrator.fetch_activities_for_date_range(
                account, priority[account.id][0], priority[account.id][-1]
            ),
            cycle.cancel_event,
        )

        if cycle.cancel_event.is_set():
            stats.cancelled = True
            return

        stats.days_fetched = len(priority_days)
        stats.accounts_succeeded = len(results)
        stats.accounts_failed = len(failures)
        stats.errors = [f"{account.display_name}: {error}" for account, error in failures]
        for account, error in failures:
            logger.warning(f"Refresh failed for {account.display_name}: {error}")

        failed_ids = {account.id for account, _ in failures}
        for day in priority_days:
            activities = [a for by_day in results.values() for a in by_day.get(day, [])]
            fetched_ids = [account_id for account_id, by_day in results.items() if day in by_day]
            needed_by_failed = any(day in priority[account_id] for account_id in failed_ids)
            if needed_by_failed:
                self.session.apply_day_activities(day, activities, fetched_ids)
                self.session.cancel_day_loading(day)
            else:
                self.session.mark_day_loaded(day, activities, fetched_ids)
        cycle.loading_days = []

        if results:
            # Accounts that just failed would fail the backfill too
            pending = {
                account.id: backlog[account.id]
                for account in accounts
                if account.id not in failed_ids and backlog[account.id]
            }
            stats.backfill_batches = self._start_backfill(accounts, pending, backlog)

    def _refresh_full_window(
        self, accounts: list[Account], cycle: _Cycle, stats: RefreshStats
    ) -> None:
        visible = self.visible_days()
        start, end = start_of_day(visible[0]), end_of_day(visible[-1])
        results, failures = self._fetch_parallel(
            accounts,
            lambda account: self.orchestrator.fetch_activities(account, start, end),
            cycle.cancel_event,
        )

        if cycle.cancel_event.is_set():
            stats.cancelled = True
            return

        stats.days_fetched = len(visible)
        stats.accounts_succeeded = len(results)
        stats.accounts_failed = len(failures)
        stats.errors = [f"{account.display_name}: {error}" for account, error in failures]
        for account, error in failures:
            logger.warning(f"Refresh failed for {account.display_name}: {error}")

        for account_id, activities in results.items():
            self.session.replace_account_activities(account_id, activities)
        if not failures:
            self.session.mark_days_loaded(visible)

    # -- Background backfill ----------------------------------------------

    def _start_backfill(
        self,
        accounts: list[Account],
        pending: dict[str, list[str]],
        missing: Optional[dict[str, list[str]]] = None,
    ) -> int:
        """Queue older missing days for fetching on a background thread.

        ``pending`` holds the days to fetch per account. ``missing`` holds
        every account's uncached days, including accounts that are not
        fetched now; a day is only marked loaded once no account misses it.
        """
        by_id = {account.id: account for account in accounts}
        jobs: list[tuple[Account, str, str]] = []
        for account_id, days in pending.items():
            for start, end in contiguous_batches(days, self.max_days_per_batch):
                jobs.append((by_id[account_id], start, end))
        if not jobs:
            return 0

        # Newest batches first, across accounts
        jobs.sort(key=lambda job: job[2], reverse=True)

        queued = {day for days in pending.values() for day in days}
        remaining: dict[str, set[str]] = {}
        for account_id, days in (missing or pending).items():
            for day in days:
                if day in queued:
                    remaining.setdefault(day, set()).add(account_id)

        with self._backfill_lock:
            self._backfill_cancel.set()
            cancel = threading.Event()
            self._backfill_cancel = cancel
            thread = threading.Thread(
                target=self._run_backfill,
                args=(jobs, remaining, cancel),
                name="day-backfill",
                daemon=True,
            )
            self._backfill_thread = thread
        thread.start()
        logger.info(f"Backfilling {len(jobs)} batches in background")
        return len(jobs)

    def _run_backfill(
        self,
        jobs: list[tuple[Account, str, str]],
        remaining: dict[str, set[str]],
        cancel: threading.Event,
    ) -> None:
        failed_days: set[str] = set()

        for day in remaining:
            self.session.mark_day_loading(day)

        try:
            for account, start, end in jobs:
                if cancel.is_set():
                    logger.info("Backfill cancelled")
                    break
                try:
                    by_day = self.orchestrator.fetch_activities_for_date_range(account, start, end)
                except Exception as e:
                    logger.warning(
                        f"Backfill of {start}..{end} failed for {account.display_name}: {e}"
                    )
                    failed_days.update(day_range(start, end))
                    continue

                if cancel.is_set():
                    break
                for day, activities in by_day.items():
                    waiting = remaining.get(day)
                    if waiting is None:
                        continue
                    self.session.apply_day_activities(day, activities, [account.id])
                    waiting.discard(account.id)
                    if not waiting and day not in failed_days:
                        self.session.mark_days_loaded([day])
        finally:
            for day, waiting in remaining.items():
                if waiting or day in failed_days:
                    self.session.cancel_day_loading(day)

    def cancel_background_fetch(self) -> None:
        with self._backfill_lock:
            self._backfill_cancel.set()

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Wait for the running backfill. Returns False if it is still running."""
        with self._backfill_lock:
            thread = self._backfill_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # -- Helpers ----------------------------------------------------------

    def _fetch_day(self, account: Account, day: str) -> list[UnifiedActivity]:
        return self.orchestrator.fetch_activities_for_day(account, day)

    def _fetch_parallel(
        self,
        accounts: list[Account],
        fetch: Callable[[Account], T],
        cancel_event: Optional[threading.Event] = None,
    ) -> tuple[dict[str, T], list[tuple[Account, Exception]]]:
        """Run ``fetch`` for each account on the worker pool.

        Failures are collected in account order rather than raised. Once
        ``cancel_event`` is set, accounts that have not started are skipped.
        """
        results: dict[str, T] = {}
        failures: list[tuple[Account, Exception]] = []
        if not accounts:
            return results, failures

        def guarded(account: Account) -> T:
            if cancel_event is not None and cancel_event.is_set():
                raise RefreshCancelled(f"Skipped {account.display_name}")
            return fetch(account)

        workers = max(1, min(self.max_workers, len(accounts)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fetch") as pool:
            futures = [(account, pool.submit(guarded, account)) for account in accounts]
            for account, future in futures:
                try:
                    results[account.id] = future.result()
                except Exception as e:
                    failures.append((account, e))
        return results, failures
