"""Tests for the provider adapter registry."""

import pytest
from unittest.mock import Mock

from activity_sync.models import Provider
from activity_sync.providers import AdapterRegistry, ProviderHttpClient
from activity_sync.providers.azure_devops import AzureDevOpsAdapter
from activity_sync.providers.base import ProviderAdapter
from activity_sync.providers.errors import ProviderNotImplemented
from activity_sync.providers.gitlab import GitLabAdapter
from activity_sync.providers.google_calendar import GoogleCalendarAdapter
from activity_sync.providers.registry import create_adapters


class TestAdapterRegistry:
    """Tests for AdapterRegistry."""

    def test_default_covers_every_provider(self):
        http = ProviderHttpClient()
        adapters = create_adapters(http)

        assert set(adapters) == set(Provider)
        assert isinstance(adapters[Provider.GITLAB], GitLabAdapter)
        assert isinstance(adapters[Provider.AZURE_DEVOPS], AzureDevOpsAdapter)
        assert isinstance(adapters[Provider.GOOGLE_CALENDAR], GoogleCalendarAdapter)
        assert all(isinstance(a, ProviderAdapter) for a in adapters.values())
        http.close()

    def test_missing_provider(self):
        registry = AdapterRegistry({Provider.GITLAB: Mock()})

        assert Provider.GITLAB in registry
        with pytest.raises(ProviderNotImplemented) as exc:
            registry.get(Provider.AZURE_DEVOPS)

        assert str(exc.value) == "This provider is not yet implemented"

    def test_rejects_string_keys(self):
        with pytest.raises(TypeError):
            AdapterRegistry({"gitlab": Mock()})
