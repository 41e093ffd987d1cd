"""HTTP transport shared by the provider adapters.

Maps HTTP failures onto the provider error taxonomy and retries
transient failures (5xx, connection errors, timeouts) with exponential
backoff. Authentication and rate-limit responses are never retried here.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import requests

from .. import __version__
from .errors import AuthenticationFailed, DecodingFailed, NetworkError, RateLimited

__all__ = [
    "ProviderHttpClient",
    "RetryPolicy",
    "RateLimitTracker",
    "backoff_delay",
]

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    """Backoff settings for transient transport failures."""

    max_retries: int = 2
    base_delay: float = 0.5  # seconds
    max_delay: float = 10.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True


def backoff_delay(attempt: int, policy: RetryPolicy) -> float:
    """Delay before retry number ``attempt`` (0-indexed).

    Exponential growth capped at ``max_delay``, with +/- 25% jitter.
    """
    delay = min(policy.base_delay * (policy.exponential_base ** attempt), policy.max_delay)
    if policy.jitter:
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


class RateLimitTracker:
    """Remembers per-host Retry-After windows announced by providers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._blocked_until: dict[str, float] = {}
        self._lock = threading.Lock()

    def block(self, host: str, seconds: int) -> None:
        with self._lock:
            self._blocked_until[host] = self._clock() + seconds

    def remaining(self, host: str) -> Optional[int]:
        """Seconds left in the host's window, or None if not limited."""
        with self._lock:
            until = self._blocked_until.get(host)
            if until is None:
                return None
            left = until - self._clock()
            if left <= 0:
                del self._blocked_until[host]
                return None
            return max(1, int(left + 0.999))

    def clear(self, host: Optional[str] = None) -> None:
        with self._lock:
            if host:
                self._blocked_until.pop(host, None)
            else:
                self._blocked_until.clear()


class _TransientError(Exception):
    """Internal: Marks an error as transient/retryable."""

    pass


def _parse_retry_after(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


class ProviderHttpClient:
    """JSON-over-HTTP client used by every provider adapter."""

    USER_AGENT = f"ActivitySync/{__version__}"

    def __init__(
        self,
        timeout: int = 30,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        rate_limits: Optional[RateLimitTracker] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the client.

        Args:
            timeout: Per-request timeout in seconds
            retry_policy: Backoff settings for transient failures
            session: Optional requests session (for dependency injection/testing)
            rate_limits: Shared per-host rate-limit tracker
            sleep: Sleep function used between retries
        """
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.rate_limits = rate_limits or RateLimitTracker()
        self._sleep = sleep
        self._session = session or requests.Session()
        self._owns_session = session is None

    def get_json(
        self,
        url: str,
        headers: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        return self.request("GET", url, headers=headers, params=params)

    def post_json(
        self,
        url: str,
        headers: Optional[dict] = None,
        json_body: Optional[dict] = None,
        params: Optional[dict] = None,
    ) -> Any:
        return self.request("POST", url, headers=headers, params=params, json_body=json_body)

    def request(
        self,
        method: str,
        url: str,
        headers: Optional[dict] = None,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> Any:
        """Perform a request and decode the JSON body.

        Raises:
            AuthenticationFailed: For 401/403 responses
            RateLimited: For 429 responses, or while the host's window is open
            NetworkError: For transport failures and other non-2xx statuses
            DecodingFailed: If the body is not valid JSON
        """
        host = urlparse(url).netloc
        remaining = self.rate_limits.remaining(host)
        if remaining is not None:
            logger.debug(f"Skipping request to {host}: rate limited for {remaining}s")
            raise RateLimited(remaining)

        all_headers = {"Accept": "application/json", "User-Agent": self.USER_AGENT}
        all_headers.update(headers or {})
        kwargs: dict = {"timeout": self.timeout, "headers": all_headers}
        if params:
            kwargs["params"] = params
        if json_body is not None:
            kwargs["json"] = json_body

        policy = self.retry_policy
        last_error: Optional[_TransientError] = None
        for attempt in range(policy.max_retries + 1):
            try:
                response = self._send(method, url, kwargs)
                return self._handle_response(response, host)
            except _TransientError as e:
                last_error = e
                if attempt >= policy.max_retries:
                    break
                delay = backoff_delay(attempt, policy)
                logger.warning(
                    f"{method} {host} attempt {attempt + 1} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                self._sleep(delay)

        raise NetworkError(str(last_error)) from last_error

    def _send(self, method: str, url: str, kwargs: dict) -> requests.Response:
        try:
            return self._session.request(method, url, **kwargs)
        except requests.exceptions.ConnectionError as e:
            raise _TransientError(f"Cannot connect to {urlparse(url).netloc}") from e
        except requests.exceptions.Timeout as e:
            raise _TransientError("Request timed out") from e
        except requests.exceptions.RequestException as e:
            raise NetworkError(str(e)) from e

    def _handle_response(self, response: requests.Response, host: str) -> Any:
        status = response.status_code
        if status in (401, 403):
            raise AuthenticationFailed(f"HTTP {status}")
        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            if retry_after:
                self.rate_limits.block(host, retry_after)
            logger.warning(f"Rate limited by {host} (retry after: {retry_after})")
            raise RateLimited(retry_after)
        if status >= 500:
            raise _TransientError(f"HTTP {status}")
        if not 200 <= status < 300:
            raise NetworkError(f"HTTP {status}: {response.text[:100]}")

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise DecodingFailed(str(e)) from e

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "ProviderHttpClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
