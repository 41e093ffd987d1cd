"""Tests for the provider HTTP client."""

import pytest
import requests
from unittest.mock import Mock

import responses

from activity_sync.providers.errors import (
    AuthenticationFailed,
    DecodingFailed,
    NetworkError,
    RateLimited,
)
from activity_sync.providers.http_client import (
    ProviderHttpClient,
    RateLimitTracker,
    RetryPolicy,
    backoff_delay,
)

URL = "https://gitlab.example.com/api/v4/user"


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_exponential_without_jitter(self):
        policy = RetryPolicy(base_delay=1.0, exponential_base=2.0, max_delay=100, jitter=False)

        assert backoff_delay(0, policy) == 1.0
        assert backoff_delay(1, policy) == 2.0
        assert backoff_delay(3, policy) == 8.0

    def test_capped_at_max_delay(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert backoff_delay(10, policy) == 5.0

    def test_jitter_stays_within_quarter(self):
        policy = RetryPolicy(base_delay=4.0, jitter=True)

        for _ in range(20):
            assert 3.0 <= backoff_delay(0, policy) <= 5.0


class TestRateLimitTracker:
    """Tests for RateLimitTracker."""

    def test_block_and_expire(self):
        now = [100.0]
        tracker = RateLimitTracker(clock=lambda: now[0])

        tracker.block("api.example.com", 30)
        assert tracker.remaining("api.example.com") == 30

        now[0] = 120.0
        assert tracker.remaining("api.example.com") == 10

        now[0] = 131.0
        assert tracker.remaining("api.example.com") is None

    def test_hosts_are_independent(self):
        tracker = RateLimitTracker(clock=lambda: 0.0)
        tracker.block("a.example.com", 10)

        assert tracker.remaining("b.example.com") is None

    def test_clear(self):
        tracker = RateLimitTracker(clock=lambda: 0.0)
        tracker.block("a.example.com", 10)
        tracker.clear()

        assert tracker.remaining("a.example.com") is None


class TestProviderHttpClient:
    """Tests for ProviderHttpClient."""

    def setup_method(self):
        """Set up test fixtures."""
        self.sleep = Mock()
        self.client = ProviderHttpClient(
            retry_policy=RetryPolicy(max_retries=2, jitter=False),
            sleep=self.sleep,
        )

    def teardown_method(self):
        """Clean up."""
        self.client.close()

    @responses.activate
    def test_get_json_success(self):
        responses.add(responses.GET, URL, json={"id": 7, "username": "dev"}, status=200)

        assert self.client.get_json(URL) == {"id": 7, "username": "dev"}

    @responses.activate
    def test_sends_accept_and_user_agent(self):
        responses.add(responses.GET, URL, json={}, status=200)

        self.client.get_json(URL, headers={"PRIVATE-TOKEN": "abc"})

        sent = responses.calls[0].request.headers
        assert sent["Accept"] == "application/json"
        assert sent["User-Agent"].startswith("ActivitySync/")
        assert sent["PRIVATE-TOKEN"] == "abc"

    @responses.activate
    def test_empty_body_returns_empty_dict(self):
        responses.add(responses.GET, URL, body="", status=204)

        assert self.client.get_json(URL) == {}

    @responses.activate
    def test_401_raises_auth_failed_without_retry(self):
        responses.add(responses.GET, URL, status=401)

        with pytest.raises(AuthenticationFailed) as exc:
            self.client.get_json(URL)

        assert str(exc.value) == "Authentication failed: HTTP 401"
        assert len(responses.calls) == 1

    @responses.activate
    def test_403_raises_auth_failed(self):
        responses.add(responses.GET, URL, status=403)

        with pytest.raises(AuthenticationFailed):
            self.client.get_json(URL)

    @responses.activate
    def test_429_with_retry_after(self):
        responses.add(responses.GET, URL, status=429, headers={"Retry-After": "60"})

        with pytest.raises(RateLimited) as exc:
            self.client.get_json(URL)

        assert exc.value.retry_after == 60
        assert str(exc.value) == "Rate limited. Retry after 60 seconds"
        assert len(responses.calls) == 1

    @responses.activate
    def test_429_blocks_following_requests_to_host(self):
        responses.add(responses.GET, URL, status=429, headers={"Retry-After": "60"})

        with pytest.raises(RateLimited):
            self.client.get_json(URL)
        with pytest.raises(RateLimited):
            self.client.get_json(URL)

        assert len(responses.calls) == 1

    @responses.activate
    def test_429_without_retry_after(self):
        responses.add(responses.GET, URL, status=429)

        with pytest.raises(RateLimited) as exc:
            self.client.get_json(URL)

        assert exc.value.retry_after is None
        assert str(exc.value) == "Rate limited. Please try again later"

    @responses.activate
    def test_5xx_retried_then_succeeds(self):
        responses.add(responses.GET, URL, status=503)
        responses.add(responses.GET, URL, json={"ok": True}, status=200)

        assert self.client.get_json(URL) == {"ok": True}
        assert len(responses.calls) == 2
        self.sleep.assert_called_once_with(0.5)

    @responses.activate
    def test_5xx_exhausts_retries(self):
        responses.add(responses.GET, URL, status=500)

        with pytest.raises(NetworkError) as exc:
            self.client.get_json(URL)

        assert "HTTP 500" in str(exc.value)
        assert len(responses.calls) == 3
        assert self.sleep.call_count == 2

    @responses.activate
    def test_connection_error_becomes_network_error(self):
        responses.add(responses.GET, URL, body=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(NetworkError) as exc:
            self.client.get_json(URL)

        assert "Cannot connect to gitlab.example.com" in str(exc.value)

    @responses.activate
    def test_404_is_not_retried(self):
        responses.add(responses.GET, URL, body="not found", status=404)

        with pytest.raises(NetworkError) as exc:
            self.client.get_json(URL)

        assert str(exc.value) == "Network error: HTTP 404: not found"
        assert len(responses.calls) == 1

    @responses.activate
    def test_invalid_json_raises_decoding_failed(self):
        responses.add(responses.GET, URL, body="<html>", status=200)

        with pytest.raises(DecodingFailed):
            self.client.get_json(URL)

    @responses.activate
    def test_post_json_sends_body(self):
        responses.add(responses.POST, URL, json={"workItems": []}, status=200)

        self.client.post_json(URL, json_body={"query": "SELECT"})

        assert responses.calls[0].request.body == b'{"query": "SELECT"}'

    def test_injected_session_is_not_closed(self):
        session = Mock()
        client = ProviderHttpClient(session=session)

        client.close()

        session.close.assert_not_called()
