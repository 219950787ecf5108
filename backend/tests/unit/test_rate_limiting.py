"""Tests for rate limiting behavior.

Security: slowapi endpoint limits plus the in-process sliding-window
throttle that guards punch submission.
"""

import json
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from limits.storage import MemoryStorage
from pydantic import SecretStr
from starlette.requests import Request as StarletteRequest

from app.core.config import Settings, settings
from app.core.rate_limiting import (
    SlidingWindowRateLimiter,
    _rate_limit_key_func,
    build_punch_rate_limiter,
    rate_limit_exceeded_handler,
)
from tests.conftest import (
    TEST_AUTH_SECRET,
    TEST_USER_ID,
    create_test_jwt,
    make_rate_limiter,
)


class TestRateLimitExceededHandler:
    """Tests for rate limit exceeded response format."""

    def _request(self) -> StarletteRequest:
        scope = {"type": "http", "method": "POST", "path": "/api/v1/timeclock/punch-tokens"}
        return StarletteRequest(scope)

    def test_rate_limit_returns_429_with_envelope(self):
        """Rate limit exceeded returns 429 with the standard error envelope."""
        exc = MagicMock()
        exc.detail = "20 per 1 hour"

        response = rate_limit_exceeded_handler(self._request(), exc)
        body = json.loads(response.body.decode())

        assert response.status_code == 429
        assert body["error"]["code"] == "RATE_LIMITED"
        assert "Rate limit exceeded" in body["error"]["message"]

    def test_rate_limit_retry_after_fallback_on_invalid_detail(self):
        """Retry-After falls back to 60 if parsing fails."""
        exc = MagicMock()
        exc.detail = "unexpected format"

        response = rate_limit_exceeded_handler(self._request(), exc)

        assert response.headers.get("Retry-After") == "60"

    def test_rate_limit_retry_after_handles_none_detail(self):
        """Retry-After falls back to 60 if detail is None."""
        exc = MagicMock()
        exc.detail = None

        response = rate_limit_exceeded_handler(self._request(), exc)

        assert response.headers.get("Retry-After") == "60"


class TestRateLimitKeyFunction:
    """Endpoint limit key: per-user in hosted mode, per-IP otherwise."""

    @pytest.fixture
    def auth_enabled_settings(self):
        """Enable auth with test secret, restore after test."""
        original_auth = settings.auth_enabled
        original_secret = settings.auth_secret
        settings.auth_enabled = True
        settings.auth_secret = SecretStr(TEST_AUTH_SECRET)
        yield
        settings.auth_enabled = original_auth
        settings.auth_secret = original_secret

    def _make_request(
        self, *, client_host: str = "192.168.1.1", cookies: dict | None = None
    ) -> MagicMock:
        """Create a mock request with client and cookies."""
        request = MagicMock()
        request.client.host = client_host
        request.cookies = cookies or {}
        return request

    def test_returns_ip_when_auth_disabled(self):
        original = settings.auth_enabled
        settings.auth_enabled = False
        try:
            key = _rate_limit_key_func(self._make_request(client_host="10.0.0.1"))
            assert key == "10.0.0.1"
        finally:
            settings.auth_enabled = original

    def test_returns_user_sub_with_valid_jwt(
        self,
        auth_enabled_settings,  # noqa: ARG002
    ):
        token = create_test_jwt()
        request = self._make_request(cookies={settings.auth_cookie_name: token})
        assert _rate_limit_key_func(request) == f"user:{TEST_USER_ID}"

    def test_returns_unauth_ip_without_cookie(
        self,
        auth_enabled_settings,  # noqa: ARG002
    ):
        request = self._make_request(client_host="203.0.113.5")
        assert _rate_limit_key_func(request) == "unauth:203.0.113.5"

    def test_returns_unauth_ip_with_expired_jwt(
        self,
        auth_enabled_settings,  # noqa: ARG002
    ):
        token = create_test_jwt(expires_delta=timedelta(hours=-1))
        request = self._make_request(
            client_host="198.51.100.20",
            cookies={settings.auth_cookie_name: token},
        )
        assert _rate_limit_key_func(request) == "unauth:198.51.100.20"


class TestSlidingWindowRateLimiter:
    """Per-key trailing-window counter."""

    def test_allows_up_to_limit_then_rejects(self, limiter_time):
        """N hits pass; hit N+1 inside the window is rejected with retry > 0."""
        limiter = SlidingWindowRateLimiter(5, 10)

        decisions = [limiter.hit("user:a") for _ in range(5)]
        assert all(d.allowed for d in decisions)
        assert decisions[-1].remaining == 0

        rejected = limiter.hit("user:a")
        assert rejected.allowed is False
        assert rejected.retry_after_seconds > 0

    def test_allows_again_after_window_passes(self, limiter_time):
        limiter = SlidingWindowRateLimiter(2, 10)
        limiter.hit("k")
        limiter.hit("k")
        assert limiter.hit("k").allowed is False

        limiter_time.advance(10.5)

        assert limiter.hit("k").allowed is True

    def test_retry_after_counts_down_to_oldest_hit(self, limiter_time):
        limiter = SlidingWindowRateLimiter(1, 10)
        limiter.hit("k")
        limiter_time.advance(7)

        assert limiter.hit("k").retry_after_seconds == 3

    def test_rejected_hits_are_not_recorded(self, limiter_time):
        """Hammering while blocked does not extend the block."""
        limiter = SlidingWindowRateLimiter(1, 10)
        limiter.hit("k")
        for _ in range(5):
            limiter_time.advance(1)
            limiter.hit("k")

        limiter_time.advance(5.5)

        assert limiter.hit("k").allowed is True

    def test_keys_are_independent(self, limiter_time):
        limiter = SlidingWindowRateLimiter(1, 10)
        assert limiter.hit("user:a").allowed is True
        assert limiter.hit("user:b").allowed is True
        assert limiter.hit("user:a").allowed is False

    def test_namespaces_share_storage_without_colliding(self, limiter_time):
        storage = MemoryStorage()
        first = SlidingWindowRateLimiter(1, 10, namespace="a", storage=storage)
        second = SlidingWindowRateLimiter(1, 10, namespace="b", storage=storage)

        assert first.hit("k").allowed is True
        assert second.hit("k").allowed is True
        assert first.hit("k").allowed is False

    def test_rejects_non_positive_configuration(self):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(0, 10)
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(5, 0)


class TestCompositeRateLimiter:
    """Burst + sustained windows applied to user and IP identities."""

    def test_burst_window_trips_first(self, limiter_time):
        limiter = make_rate_limiter(burst=3, sustained=30)
        for _ in range(3):
            assert limiter.hit(["user:a", "ip:1.2.3.4"]).allowed is True

        decision = limiter.hit(["user:a", "ip:1.2.3.4"])

        assert decision.allowed is False
        assert decision.retry_after_seconds >= 1
        assert "burst:user:a" in decision.tripped

    def test_sustained_window_trips_after_burst_clears(self, limiter_time):
        limiter = make_rate_limiter(burst=2, burst_window=10, sustained=3)
        limiter.hit(["user:a"])
        limiter.hit(["user:a"])
        limiter_time.advance(11)
        limiter.hit(["user:a"])

        decision = limiter.hit(["user:a"])

        assert decision.allowed is False
        assert decision.tripped == ("sustained:user:a",)
        assert decision.retry_after_seconds > 500

    def test_shared_ip_limits_different_users(self, limiter_time):
        """Two users behind one address share the per-IP budget."""
        limiter = make_rate_limiter(burst=2)
        limiter.hit(["user:a", "ip:10.0.0.1"])
        limiter.hit(["user:b", "ip:10.0.0.1"])

        decision = limiter.hit(["user:c", "ip:10.0.0.1"])

        assert decision.allowed is False
        assert decision.tripped == ("burst:ip:10.0.0.1",)

    def test_empty_identities_are_skipped(self, limiter_time):
        limiter = make_rate_limiter(burst=1)
        assert limiter.hit(["user:a", ""]).allowed is True
        assert limiter.hit(["user:b", ""]).allowed is True

    def test_build_from_settings_uses_configured_limits(self, limiter_time):
        config = Settings(punch_burst_limit=1, punch_sustained_limit=10)
        limiter = build_punch_rate_limiter(config)

        assert limiter.hit(["user:a"]).allowed is True
        assert limiter.hit(["user:a"]).allowed is False

    def test_equal_limits_in_one_storage_stay_separate(self, limiter_time):
        """Burst and sustained share storage; equal limits must not merge keys."""
        config = Settings(
            punch_burst_limit=2,
            punch_burst_window_seconds=10,
            punch_sustained_limit=2,
            punch_sustained_window_seconds=10,
        )
        limiter = build_punch_rate_limiter(config)

        assert limiter.hit(["user:a"]).allowed is True
        assert limiter.hit(["user:a"]).allowed is True

    def test_clear_resets_every_window(self, limiter_time):
        limiter = make_rate_limiter(burst=1)
        limiter.hit(["user:a"])
        limiter.clear()
        assert limiter.hit(["user:a"]).allowed is True
