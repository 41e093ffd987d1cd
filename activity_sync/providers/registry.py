"""Closed mapping from provider kind to adapter."""

from typing import Mapping, Optional

from ..models import Provider
from .azure_devops import AzureDevOpsAdapter
from .base import ProviderAdapter
from .errors import ProviderNotImplemented
from .gitlab import GitLabAdapter
from .google_calendar import GoogleCalendarAdapter
from .http_client import ProviderHttpClient

__all__ = ["ADAPTER_TYPES", "AdapterRegistry", "create_adapters"]

ADAPTER_TYPES = {
    Provider.GITLAB: GitLabAdapter,
    Provider.AZURE_DEVOPS: AzureDevOpsAdapter,
    Provider.GOOGLE_CALENDAR: GoogleCalendarAdapter,
}

_missing = set(Provider) - set(ADAPTER_TYPES)
if _missing:
    raise RuntimeError(f"No adapter registered for {sorted(p.value for p in _missing)}")


def create_adapters(http: Optional[ProviderHttpClient] = None) -> dict[Provider, ProviderAdapter]:
    """One adapter per provider, sharing a single HTTP client."""
    http = http or ProviderHttpClient()
    return {provider: adapter_type(http) for provider, adapter_type in ADAPTER_TYPES.items()}


class AdapterRegistry:
    """Dispatches on ``Provider``; unknown keys are rejected up front."""

    def __init__(self, adapters: Mapping[Provider, ProviderAdapter]):
        unknown = [key for key in adapters if not isinstance(key, Provider)]
        if unknown:
            raise TypeError(f"Adapter keys must be Provider members, got {unknown!r}")
        self._adapters = dict(adapters)

    @classmethod
    def default(cls, http: Optional[ProviderHttpClient] = None) -> "AdapterRegistry":
        return cls(create_adapters(http))

    def get(self, provider: Provider) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise ProviderNotImplemented(provider.value) from None

    def __contains__(self, provider: Provider) -> bool:
        return provider in self._adapters
