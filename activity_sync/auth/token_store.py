"""Provider token storage using the system keychain."""

import json
import logging
import threading
from typing import Optional, Protocol, runtime_checkable

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = [
    "TokenStore",
    "KeyringTokenStore",
    "CredentialStoreError",
    "refresh_key",
    "REFRESH_SUFFIX",
]

logger = logging.getLogger(__name__)

SERVICE_NAME = "Activity Sync"
ACCOUNT_NAME = "provider_tokens"
REFRESH_SUFFIX = ":refresh"


def refresh_key(account_id: str) -> str:
    """Key under which an account's refresh token is stored."""
    return f"{account_id}{REFRESH_SUFFIX}"


def _split_key(key: str) -> tuple[str, str]:
    if key.endswith(REFRESH_SUFFIX):
        return key[: -len(REFRESH_SUFFIX)], "refresh"
    return key, "access"


class CredentialStoreError(Exception):
    """Writing to the credential store failed."""

    pass


@runtime_checkable
class TokenStore(Protocol):
    """Interface for reading and writing provider tokens."""

    def get_token(self, key: str) -> Optional[str]: ...

    def set_token(self, token: str, key: str) -> None: ...


class KeyringTokenStore:
    """All provider tokens in a single keychain entry.

    The entry holds JSON ``{account_id: {"access": ..., "refresh": ...}}``
    so that one keychain prompt unlocks every account. Keys ending in
    ``:refresh`` address the refresh token of the base account id.
    """

    def __init__(self, service_name: str = SERVICE_NAME, account_name: str = ACCOUNT_NAME):
        """Initialize token store.

        Args:
            service_name: Service name for the keychain entry
            account_name: Username slot of the keychain entry
        """
        self.service_name = service_name
        self.account_name = account_name
        self._lock = threading.Lock()
        self._tokens: Optional[dict[str, dict[str, str]]] = None

    def get_token(self, key: str) -> Optional[str]:
        account_id, kind = _split_key(key)
        with self._lock:
            return self._load().get(account_id, {}).get(kind)

    def set_token(self, token: str, key: str) -> None:
        """Store a token. An empty token removes the slot.

        Raises:
            CredentialStoreError: If the keychain rejects the write
        """
        account_id, kind = _split_key(key)
        with self._lock:
            tokens = self._load(for_write=True)
            pair = tokens.setdefault(account_id, {})
            if token:
                pair[kind] = token
            else:
                pair.pop(kind, None)
            if not pair:
                tokens.pop(account_id, None)
            self._persist(tokens)
        logger.debug(f"Stored {kind} token for {account_id}")

    def delete_token(self, key: str) -> None:
        self.set_token("", key)

    def delete_account(self, account_id: str) -> None:
        """Remove both tokens of an account."""
        with self._lock:
            tokens = self._load(for_write=True)
            if tokens.pop(account_id, None) is not None:
                self._persist(tokens)
                logger.info(f"Tokens deleted for {account_id}")

    def clear(self) -> None:
        """Delete the keychain entry entirely."""
        with self._lock:
            try:
                keyring.delete_password(self.service_name, self.account_name)
            except PasswordDeleteError:
                # Entry didn't exist
                pass
            except KeyringError as e:
                raise CredentialStoreError(f"Failed to delete tokens: {e}") from e
            self._tokens = {}
        logger.info("All tokens deleted")

    def _load(self, for_write: bool = False) -> dict[str, dict[str, str]]:
        """Read the keychain entry once and keep an in-process copy."""
        if self._tokens is not None:
            return self._tokens
        try:
            data = keyring.get_password(self.service_name, self.account_name)
        except KeyringError as e:
            if for_write:
                raise CredentialStoreError(f"Failed to load tokens: {e}") from e
            # Not cached: the next access retries the keychain
            logger.error(f"Failed to load tokens: {e}")
            return {}
        if not data:
            self._tokens = {}
            return self._tokens
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Invalid token store format: {e}")
            parsed = {}
        if not isinstance(parsed, dict):
            logger.error("Invalid token store format: expected an object")
            parsed = {}
        self._tokens = {
            account_id: {k: v for k, v in pair.items() if k in ("access", "refresh") and v}
            for account_id, pair in parsed.items()
            if isinstance(pair, dict)
        }
        return self._tokens

    def _persist(self, tokens: dict[str, dict[str, str]]) -> None:
        try:
            keyring.set_password(self.service_name, self.account_name, json.dumps(tokens))
        except KeyringError as e:
            # Drop the cached copy so it can't drift from the keychain
            self._tokens = None
            raise CredentialStoreError(f"Failed to store tokens: {e}") from e
        self._tokens = tokens
