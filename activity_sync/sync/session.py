"""Observable in-memory session state consumed by the display layer.

All mutation goes through one re-entrant lock. Listeners are called
after the lock is released, with the session as their only argument.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Optional

from ..dates import utc_now
from ..models import Account, HeatMapBucket, UnifiedActivity
from ..transforms.heatmap import generate_buckets

__all__ = ["ActivitySession", "SessionSnapshot"]

logger = logging.getLogger(__name__)

Listener = Callable[["ActivitySession"], None]


@dataclass
class SessionSnapshot:
    """Point-in-time copy of the session, safe to read from any thread."""

    accounts: list[Account]
    activities_by_account: dict[str, list[UnifiedActivity]]
    heatmap_buckets: list[HeatMapBucket]
    day_activity_counts: dict[str, int]
    loaded_days: set[str]
    loading_days: set[str]
    last_refreshed: Optional[datetime]
    last_error: Optional[str]
    is_offline: bool
    is_refreshing: bool
    selected_date: Optional[str] = None
    errors: list[str] = field(default_factory=list)


def _safe_call(fn: Listener, *args) -> None:
    """Call a listener, catching and logging any exceptions."""
    try:
        fn(*args)
    except Exception:
        logger.exception(f"Error in session listener {getattr(fn, '__name__', fn)}")


class ActivitySession:
    """Merged activities, heatmap and refresh status for one running app."""

    def __init__(
        self,
        accounts: Optional[Iterable[Account]] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._lock = threading.RLock()
        self._clock = clock
        self._listeners: list[Listener] = []
        self._accounts: list[Account] = list(accounts or [])
        self._activities: dict[str, list[UnifiedActivity]] = {}
        self._heatmap: list[HeatMapBucket] = []
        self._loaded_days: set[str] = set()
        self._loading_days: set[str] = set()
        self._last_refreshed: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._errors: list[str] = []
        self._is_offline = False
        self._is_refreshing = False
        self.selected_date: Optional[str] = None

    # -- Observation ------------------------------------------------------

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener. Returns a function that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def remove() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def _notify(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            _safe_call(listener, self)

    # -- Read access ------------------------------------------------------

    @property
    def accounts(self) -> list[Account]:
        with self._lock:
            return list(self._accounts)

    def enabled_accounts(self) -> list[Account]:
        with self._lock:
            return [a for a in self._accounts if a.is_enabled]

    def account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            return next((a for a in self._accounts if a.id == account_id), None)

    def activities_for_account(self, account_id: str) -> list[UnifiedActivity]:
        with self._lock:
            return list(self._activities.get(account_id, []))

    @property
    def heatmap_buckets(self) -> list[HeatMapBucket]:
        with self._lock:
            return list(self._heatmap)

    @property
    def day_activity_counts(self) -> dict[str, int]:
        with self._lock:
            return {bucket.date: bucket.count for bucket in self._heatmap}

    @property
    def loaded_days(self) -> set[str]:
        with self._lock:
            return set(self._loaded_days)

    @property
    def loading_days(self) -> set[str]:
        with self._lock:
            return set(self._loading_days)

    def is_day_loaded(self, day: str) -> bool:
        with self._lock:
            return day in self._loaded_days

    def is_day_loading(self, day: str) -> bool:
        with self._lock:
            return day in self._loading_days

    @property
    def last_refreshed(self) -> Optional[datetime]:
        with self._lock:
            return self._last_refreshed

    @property
    def last_error(self) -> Optional[str]:
        with self._lock:
            return self._last_error

    @property
    def errors(self) -> list[str]:
        """Every per-account error of the last finished cycle."""
        with self._lock:
            return list(self._errors)

    @property
    def is_offline(self) -> bool:
        with self._lock:
            return self._is_offline

    @property
    def is_refreshing(self) -> bool:
        with self._lock:
            return self._is_refreshing

    def activities_for_day(self, day: str) -> list[UnifiedActivity]:
        """Activities of one day across enabled accounts, with display filters applied."""
        return self.activities_in_range(day, day)

    def activities_in_range(self, start_day: str, end_day: str) -> list[UnifiedActivity]:
        with self._lock:
            result = []
            for account in self._accounts:
                if not account.is_enabled:
                    continue
                for activity in self._activities.get(account.id, []):
                    if not start_day <= activity.date_key <= end_day:
                        continue
                    if not account.is_event_type_enabled(activity.type):
                        continue
                    if not account.is_calendar_enabled(activity.calendar_id):
                        continue
                    if not account.is_my_event(activity):
                        continue
                    result.append(activity)
        result.sort(key=lambda a: a.timestamp, reverse=True)
        return result

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                accounts=list(self._accounts),
                activities_by_account={k: list(v) for k, v in self._activities.items()},
                heatmap_buckets=list(self._heatmap),
                day_activity_counts={b.date: b.count for b in self._heatmap},
                loaded_days=set(self._loaded_days),
                loading_days=set(self._loading_days),
                last_refreshed=self._last_refreshed,
                last_error=self._last_error,
                is_offline=self._is_offline,
                is_refreshing=self._is_refreshing,
                selected_date=self.selected_date,
                errors=list(self._errors),
            )

    # -- Mutation ---------------------------------------------------------

    def set_accounts(self, accounts: Iterable[Account]) -> None:
        """Replace the account list, dropping data of removed accounts."""
        with self._lock:
            self._accounts = list(accounts)
            known = {a.id for a in self._accounts}
            for account_id in list(self._activities):
                if account_id not in known:
                    del self._activities[account_id]
            self._rebuild_heatmap()
        self._notify()

    def begin_loading(self, day: str) -> bool:
        """Claim a day for loading. False if it is already being loaded."""
        with self._lock:
            if day in self._loading_days:
                return False
            self._loading_days.add(day)
        self._notify()
        return True

    def mark_day_loading(self, day: str) -> None:
        self.begin_loading(day)

    def cancel_day_loading(self, day: str) -> None:
        """Release a claimed day without marking it loaded."""
        with self._lock:
            self._loading_days.discard(day)
        self._notify()

    def apply_day_activities(
        self,
        day: str,
        activities: Iterable[UnifiedActivity],
        account_ids: Optional[Iterable[str]] = None,
    ) -> None:
        """Replace the activities of ``day`` for the given accounts.

        ``account_ids`` limits which accounts' existing activities for the
        day are replaced; None replaces the day for every account.
        """
        with self._lock:
            self._replace_day(day, list(activities), account_ids)
            self._rebuild_heatmap()
        self._notify()

    def mark_day_loaded(
        self,
        day: str,
        activities: Iterable[UnifiedActivity],
        account_ids: Optional[Iterable[str]] = None,
    ) -> None:
        """Replace a day's activities and mark the day loaded.

        Calling this twice for the same day leaves only the second
        call's activities.
        """
        with self._lock:
            self._replace_day(day, list(activities), account_ids)
            self._loaded_days.add(day)
            self._loading_days.discard(day)
            self._rebuild_heatmap()
        self._notify()

    def replace_account_activities(
        self, account_id: str, activities: Iterable[UnifiedActivity]
    ) -> None:
        """Replace everything held for one account (full-window fetches)."""
        with self._lock:
            self._activities[account_id] = sorted(
                activities, key=lambda a: a.timestamp, reverse=True
            )
            self._rebuild_heatmap()
        self._notify()

    def start_refresh(self) -> bool:
        """Mark a refresh cycle as running. False if one already is."""
        with self._lock:
            if self._is_refreshing:
                return False
            self._is_refreshing = True
        self._notify()
        return True

    def finish_refresh(
        self,
        error: Optional[str] = None,
        offline: bool = False,
        errors: Optional[list[str]] = None,
        completed: bool = True,
    ) -> None:
        """End a refresh cycle.

        The last-refreshed timestamp only advances when the cycle ran to
        completion and was not fully offline, so stale data keeps its
        original age.
        """
        with self._lock:
            self._is_refreshing = False
            self._last_error = error
            self._errors = list(errors or ([error] if error else []))
            self._is_offline = offline
            if completed and not offline:
                self._last_refreshed = self._clock()
        self._notify()

    def mark_days_loaded(self, days: Iterable[str]) -> None:
        """Mark days loaded without touching their activities."""
        with self._lock:
            for day in days:
                self._loaded_days.add(day)
                self._loading_days.discard(day)
        self._notify()

    def clear_loaded_days(self) -> None:
        """Forget which days are loaded so they are reloaded on demand."""
        with self._lock:
            self._loaded_days.clear()
        self._notify()

    def _replace_day(
        self,
        day: str,
        activities: list[UnifiedActivity],
        account_ids: Optional[Iterable[str]],
    ) -> None:
        if account_ids is None:
            targets = set(self._activities) | {a.account_id for a in activities}
        else:
            targets = set(account_ids)
            activities = [a for a in activities if a.account_id in targets]

        for account_id in targets:
            kept = [a for a in self._activities.get(account_id, []) if a.date_key != day]
            kept.extend(a for a in activities if a.account_id == account_id)
            kept.sort(key=lambda a: a.timestamp, reverse=True)
            self._activities[account_id] = kept

    def _rebuild_heatmap(self) -> None:
        enabled = {a.id for a in self._accounts if a.is_enabled}
        self._heatmap = generate_buckets(
            activity
            for account_id, activities in self._activities.items()
            if account_id in enabled
            for activity in activities
        )
