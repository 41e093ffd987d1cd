"""Error taxonomy for provider fetches and token refresh."""

from typing import Optional

__all__ = [
    "ProviderError",
    "NetworkError",
    "AuthenticationFailed",
    "RateLimited",
    "InvalidResponse",
    "DecodingFailed",
    "ConfigurationError",
    "ProviderNotImplemented",
]


class ProviderError(Exception):
    """Base class for provider errors.

    ``detail`` holds the raw reason, ``str(error)`` the user-facing message.
    """

    prefix = "Provider error"

    def __init__(self, detail: str = ""):
        self.detail = detail
        super().__init__(self.message)

    @property
    def message(self) -> str:
        return f"{self.prefix}: {self.detail}"


class NetworkError(ProviderError):
    """Transport failure or unexpected HTTP status."""

    prefix = "Network error"


class AuthenticationFailed(ProviderError):
    """Token rejected. The only error that triggers a token refresh."""

    prefix = "Authentication failed"


class RateLimited(ProviderError):
    """Provider asked us to back off."""

    def __init__(self, retry_after: Optional[int] = None):
        self.retry_after = retry_after
        super().__init__("" if retry_after is None else str(retry_after))

    @property
    def message(self) -> str:
        if self.retry_after is not None:
            return f"Rate limited. Retry after {self.retry_after} seconds"
        return "Rate limited. Please try again later"


class InvalidResponse(ProviderError):
    prefix = "Invalid response"


class DecodingFailed(ProviderError):
    prefix = "Failed to decode response"


class ConfigurationError(ProviderError):
    """Account is missing a required field or client setup is incomplete."""

    prefix = "Configuration error"


class ProviderNotImplemented(ProviderError):
    @property
    def message(self) -> str:
        return "This provider is not yet implemented"
