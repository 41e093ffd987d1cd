"""OAuth token refresh with one in-flight exchange per account.

Concurrent callers asking to refresh the same account wait for the
exchange already in progress and receive its outcome, so a burst of
401s across parallel fetches costs a single network round trip.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Mapping, Optional

import requests

from ..config import OAuthClientSettings
from ..models import Account, AuthMethod, Provider
from ..providers.errors import (
    AuthenticationFailed,
    ConfigurationError,
    DecodingFailed,
    NetworkError,
)
from .token_store import TokenStore, refresh_key

__all__ = ["TokenRefreshService", "TokenGrant", "GOOGLE_TOKEN_URL"]

logger = logging.getLogger(__name__)

GITLAB_DEFAULT_BASE_URL = "https://gitlab.com"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"


@dataclass
class TokenGrant:
    """Result of a refresh-token exchange."""

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    @classmethod
    def from_dict(cls, data: dict) -> "TokenGrant":
        if not isinstance(data, dict) or not data.get("access_token"):
            raise DecodingFailed("token response has no access_token")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            expires_in=data.get("expires_in"),
        )


class _PendingRefresh:
    """Outcome slot shared by every caller waiting on one exchange."""

    def __init__(self) -> None:
        self.done = threading.Event()
        self.token: Optional[str] = None
        self.error: Optional[BaseException] = None


class TokenRefreshService:
    """Exchanges stored refresh tokens for new access tokens."""

    def __init__(
        self,
        token_store: TokenStore,
        oauth_clients: Optional[Mapping[Provider, OAuthClientSettings]] = None,
        session: Optional[requests.Session] = None,
        timeout: int = 30,
    ):
        """Initialize the refresh service.

        Args:
            token_store: Where access and refresh tokens are read and written
            oauth_clients: OAuth application credentials per provider
            session: Optional requests session (for dependency injection/testing)
            timeout: Token endpoint request timeout in seconds
        """
        self.token_store = token_store
        self.oauth_clients = dict(oauth_clients or {})
        self.timeout = timeout
        self._session = session or requests.Session()
        self._lock = threading.Lock()
        self._in_flight: dict[str, _PendingRefresh] = {}

    @staticmethod
    def can_refresh(account: Account) -> bool:
        """Only OAuth accounts on providers that issue refresh tokens."""
        return account.auth_method == AuthMethod.OAUTH and account.provider != Provider.AZURE_DEVOPS

    def is_refreshing(self, account_id: str) -> bool:
        with self._lock:
            return account_id in self._in_flight

    def refresh_token(self, account: Account) -> str:
        """Return a fresh access token for the account.

        If a refresh for this account is already running, wait for it and
        share its result instead of starting another exchange.

        Raises:
            AuthenticationFailed: No refresh token stored, or it was rejected
            ConfigurationError: Provider doesn't support refresh, or no OAuth client
            DecodingFailed: The token endpoint returned an unreadable body
            NetworkError: The token endpoint could not be reached
        """
        with self._lock:
            pending = self._in_flight.get(account.id)
            leader = pending is None
            if leader:
                pending = _PendingRefresh()
                self._in_flight[account.id] = pending

        if not leader:
            logger.info(f"Token refresh for {account.id} already in progress, waiting")
            pending.done.wait()
            if pending.error is not None:
                raise pending.error
            return pending.token

        try:
            pending.token = self._perform_refresh(account)
            return pending.token
        except Exception as e:
            pending.error = e
            raise
        finally:
            with self._lock:
                self._in_flight.pop(account.id, None)
            pending.done.set()

    def _perform_refresh(self, account: Account) -> str:
        stored_refresh = self.token_store.get_token(refresh_key(account.id))
        if not stored_refresh:
            raise AuthenticationFailed("No refresh token stored - please re-authenticate")

        logger.info(f"Refreshing access token for {account.display_name}")
        grant = self._exchange(account, stored_refresh)

        self.token_store.set_token(grant.access_token, account.id)
        if grant.refresh_token:
            self.token_store.set_token(grant.refresh_token, refresh_key(account.id))
        logger.info(f"Token refreshed for {account.display_name}")
        return grant.access_token

    def _exchange(self, account: Account, stored_refresh: str) -> TokenGrant:
        """Call the provider's token endpoint."""
        url = self._token_url(account)
        client = self.oauth_clients.get(account.provider)
        if client is None or not client.is_configured:
            raise ConfigurationError(
                f"{account.provider.display_name} OAuth client credentials are not configured"
            )

        try:
            response = self._session.post(
                url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": stored_refresh,
                    "client_id": client.client_id,
                    "client_secret": client.client_secret,
                },
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise NetworkError(str(e)) from e

        if response.status_code != 200:
            raise AuthenticationFailed(f"Token refresh failed: {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as e:
            raise DecodingFailed(str(e)) from e
        return TokenGrant.from_dict(data)

    @staticmethod
    def _token_url(account: Account) -> str:
        if account.provider == Provider.GITLAB:
            host = (account.host or GITLAB_DEFAULT_BASE_URL).rstrip("/")
            if not host.startswith("http"):
                host = f"https://{host}"
            return f"{host}/oauth/token"
        if account.provider == Provider.GOOGLE_CALENDAR:
            return GOOGLE_TOKEN_URL
        raise ConfigurationError(f"{account.provider.display_name} does not support token refresh")
