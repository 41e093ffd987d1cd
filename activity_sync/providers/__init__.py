"""Provider module - adapters that fetch and normalize remote activity."""

from .azure_devops import AzureDevOpsAdapter
from .base import BaseProviderAdapter, ProviderAdapter
from .errors import (
    AuthenticationFailed,
    ConfigurationError,
    DecodingFailed,
    InvalidResponse,
    NetworkError,
    ProviderError,
    ProviderNotImplemented,
    RateLimited,
)
from .gitlab import GitLabAdapter
from .google_calendar import GoogleCalendarAdapter
from .http_client import ProviderHttpClient, RateLimitTracker, RetryPolicy
from .registry import AdapterRegistry, create_adapters

__all__ = [
    "AdapterRegistry",
    "AuthenticationFailed",
    "AzureDevOpsAdapter",
    "BaseProviderAdapter",
    "ConfigurationError",
    "DecodingFailed",
    "GitLabAdapter",
    "GoogleCalendarAdapter",
    "InvalidResponse",
    "NetworkError",
    "ProviderAdapter",
    "ProviderError",
    "ProviderHttpClient",
    "ProviderNotImplemented",
    "RateLimited",
    "RateLimitTracker",
    "RetryPolicy",
    "create_adapters",
]
