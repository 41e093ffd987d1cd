"""Auth module - token storage and OAuth token refresh."""

from .token_refresh import TokenGrant, TokenRefreshService
from .token_store import CredentialStoreError, KeyringTokenStore, TokenStore, refresh_key

__all__ = [
    "CredentialStoreError",
    "KeyringTokenStore",
    "TokenGrant",
    "TokenRefreshService",
    "TokenStore",
    "refresh_key",
]
