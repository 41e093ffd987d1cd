"""Refresh orchestrator - routes fetches to adapters and recovers from expired tokens."""

import logging
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, TypeVar, Union

from ..auth.token_refresh import TokenRefreshService
from ..auth.token_store import TokenStore
from ..config import DEFAULT_DAYS_BACK
from ..dates import day_range, end_of_day, start_of_day, today_key, utc_now
from ..models import Account, HeatMapBucket, Provider, UnifiedActivity
from ..providers.base import ProviderAdapter
from ..providers.errors import AuthenticationFailed
from ..providers.registry import AdapterRegistry
from .day_cache import DayCacheStore

__all__ = ["RefreshOrchestrator"]

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RefreshOrchestrator:
    """Single place where "fetch, and recover from an expired token" lives.

    An authentication failure triggers at most one token refresh and one
    retry per call. Every other error propagates unchanged.
    """

    def __init__(
        self,
        adapters: Union[AdapterRegistry, Mapping[Provider, ProviderAdapter]],
        token_store: TokenStore,
        token_refresher: TokenRefreshService,
        cache: Optional[DayCacheStore] = None,
        days_back: int = DEFAULT_DAYS_BACK,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.adapters = adapters if isinstance(adapters, AdapterRegistry) else AdapterRegistry(adapters)
        self.token_store = token_store
        self.token_refresher = token_refresher
        self.cache = cache
        self.days_back = days_back
        self._clock = clock

    # -- Public fetch operations -----------------------------------------

    def fetch_activities(
        self,
        account: Account,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[UnifiedActivity]:
        """Activities in a window; defaults to the last ``days_back`` days."""
        if not account.is_enabled:
            return []
        start, end = self._window(start, end)
        adapter = self.adapters.get(account.provider)
        return self._fetch_with_auto_refresh(
            account, lambda token: adapter.fetch_activities(account, token, start, end)
        )

    def fetch_heatmap(
        self,
        account: Account,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[HeatMapBucket]:
        if not account.is_enabled:
            return []
        start, end = self._window(start, end)
        adapter = self.adapters.get(account.provider)
        return self._fetch_with_auto_refresh(
            account, lambda token: adapter.fetch_heatmap(account, token, start, end)
        )

    def fetch_activities_for_day(self, account: Account, day: str) -> list[UnifiedActivity]:
        """Fetch one UTC day and write it to the day cache."""
        if not account.is_enabled:
            return []
        adapter = self.adapters.get(account.provider)
        start, end = start_of_day(day), end_of_day(day)
        activities = self._fetch_with_auto_refresh(
            account, lambda token: adapter.fetch_activities(account, token, start, end)
        )
        activities = [a for a in activities if a.date_key == day]
        if self.cache is not None:
            self.cache.save_activities_for_day(activities, account.id, day)
        return activities

    def fetch_activities_for_date_range(
        self, account: Account, start_day: str, end_day: str
    ) -> dict[str, list[UnifiedActivity]]:
        """Fetch a contiguous range with one adapter call and split it by day.

        Every day in the range is written to the day cache, including days
        without activity, and appears in the returned mapping.
        """
        if not account.is_enabled:
            return {}
        if start_day > end_day:
            raise ValueError(f"Invalid date range {start_day}..{end_day}")
        adapter = self.adapters.get(account.provider)
        start, end = start_of_day(start_day), end_of_day(end_day)
        activities = self._fetch_with_auto_refresh(
            account, lambda token: adapter.fetch_activities(account, token, start, end)
        )

        by_day: dict[str, list[UnifiedActivity]] = defaultdict(list)
        for activity in activities:
            by_day[activity.date_key].append(activity)

        days = day_range(start_day, end_day)
        result = {day: by_day.get(day, []) for day in days}
        if self.cache is not None:
            for day in days:
                self.cache.save_activities_for_day(result[day], account.id, day)
        logger.info(
            f"Fetched {len(activities)} activities for {account.display_name} "
            f"({start_day} to {end_day}, {len(days)} days)"
        )
        return result

    # -- Internals --------------------------------------------------------

    def _window(
        self, start: Optional[datetime], end: Optional[datetime]
    ) -> tuple[datetime, datetime]:
        today = today_key(self._clock())
        end = end or end_of_day(today)
        start = start or start_of_day(today) - timedelta(days=self.days_back - 1)
        return start, end

    def _access_token(self, account: Account) -> str:
        token = self.token_store.get_token(account.id)
        if not token:
            raise AuthenticationFailed(f"No token found for account {account.id}")
        return token

    def _fetch_with_auto_refresh(self, account: Account, fetch: Callable[[str], T]) -> T:
        token = self._access_token(account)
        try:
            return fetch(token)
        except AuthenticationFailed:
            if not self.token_refresher.can_refresh(account):
                raise
            logger.info(f"Token rejected for {account.display_name}, attempting refresh")

        try:
            new_token = self.token_refresher.refresh_token(account)
        except Exception as e:
            logger.warning(f"Token refresh failed for {account.display_name}: {e}")
            raise AuthenticationFailed("Token refresh failed - please re-authenticate") from e

        # Exactly one retry, whatever its outcome
        return fetch(new_token)
