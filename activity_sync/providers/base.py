"""Provider adapter contract.

Adapters turn a provider's paginated API into unified activities for
one account and time window. They drain pagination before returning,
perform no caching, and report failures with the errors in
``providers.errors``.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from ..models import Account, HeatMapBucket, Provider, UnifiedActivity
from ..transforms.heatmap import generate_buckets
from .http_client import ProviderHttpClient

__all__ = ["ProviderAdapter", "BaseProviderAdapter"]


@runtime_checkable
class ProviderAdapter(Protocol):
    """Interface every provider adapter implements."""

    provider: Provider

    def fetch_activities(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[UnifiedActivity]: ...

    def fetch_heatmap(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[HeatMapBucket]: ...


class BaseProviderAdapter:
    """Shared plumbing: HTTP client injection and derived heatmaps."""

    provider: Provider

    def __init__(self, http: ProviderHttpClient):
        self.http = http

    def fetch_activities(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[UnifiedActivity]:
        raise NotImplementedError

    def fetch_heatmap(
        self, account: Account, token: str, start: datetime, end: datetime
    ) -> list[HeatMapBucket]:
        """Heatmap derived from the activities in the window."""
        return generate_buckets(self.fetch_activities(account, token, start, end))

    @staticmethod
    def _in_window(activity: UnifiedActivity, start: datetime, end: datetime) -> bool:
        return start <= activity.timestamp <= end
