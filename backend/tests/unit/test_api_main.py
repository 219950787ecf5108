"""Tests for FastAPI application and exception handlers.

REST API with consistent error handling and security headers.
"""

from unittest.mock import patch

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotEligibleError,
    NotFoundError,
    PunchBlockedError,
    PunchRateLimitedError,
    ValidationError,
)
from app.core.rate_limiting import CompositeRateLimiter
from app.main import create_app
from app.services.verification import VerificationEvaluator


@pytest.fixture
def app():
    """Create test application instance."""
    return create_app()


@pytest.fixture
async def client(app):
    """Create async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoint:
    """Tests for health check endpoint."""

    async def test_health_returns_healthy_status(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestAppState:
    """Process-wide collaborators are built once by the factory."""

    def test_punch_rate_limiter_on_state(self, app):
        assert isinstance(app.state.punch_rate_limiter, CompositeRateLimiter)

    def test_verification_evaluator_on_state(self, app):
        assert isinstance(app.state.verification_evaluator, VerificationEvaluator)

    async def test_v1_router_mounted(self, client):
        # 404 means router is mounted but route doesn't exist
        response = await client.get("/api/v1/nonexistent")
        assert response.status_code == 404


class TestExceptionHandlers:
    """Custom exceptions become HTTP responses with the error envelope."""

    @pytest.mark.parametrize(
        ("error", "status_code", "code"),
        [
            (ValidationError("Invalid input", details=[{"field": "x"}]), 400, "VALIDATION_ERROR"),
            (ForbiddenError("Not yours"), 403, "FORBIDDEN"),
            (NotEligibleError(), 403, "NOT_ELIGIBLE"),
            (NotFoundError("AttendanceEvent", "123"), 404, "NOT_FOUND"),
            (
                ConflictError("SIGNATURE_ALREADY_ATTACHED", "Already signed"),
                409,
                "SIGNATURE_ALREADY_ATTACHED",
            ),
            (InvalidStateError("Only clock-outs"), 422, "INVALID_STATE_TRANSITION"),
        ],
    )
    async def test_api_errors_map_to_status(self, app, client, error, status_code, code):
        @app.get("/test/api-error")
        async def raise_error():
            raise error

        response = await client.get("/test/api-error")
        assert response.status_code == status_code
        data = response.json()
        assert data["error"]["code"] == code
        assert "message" in data["error"]
        assert "data" not in data

    async def test_blocked_punch_carries_reason_and_event_id(self, app, client):
        @app.get("/test/blocked")
        async def raise_blocked():
            raise PunchBlockedError("OUT_OF_RANGE", "2.10 mi from site", "evt-1")

        response = await client.get("/test/blocked")
        assert response.status_code == 403
        error = response.json()["error"]
        assert error["code"] == "OUT_OF_RANGE"
        assert error["message"] == "2.10 mi from site"
        assert error["details"] == [{"event_id": "evt-1"}]

    async def test_rate_limited_punch_sets_retry_after(self, app, client):
        @app.get("/test/throttled")
        async def raise_throttled():
            raise PunchRateLimitedError(7, "evt-2")

        response = await client.get("/test/throttled")
        assert response.status_code == 429
        assert response.headers["retry-after"] == "7"
        assert response.json()["error"]["code"] == "RATE_LIMITED"

    async def test_request_validation_returns_400(self, app, client):
        @app.get("/test/typed")
        async def typed(count: int):
            return {"count": count}

        response = await client.get("/test/typed", params={"count": "many"})
        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "VALIDATION_ERROR"
        assert error["details"][0]["loc"] == ["query", "count"]

    async def test_unhandled_exception_is_generic_500(self, app):
        @app.get("/test/boom")
        async def boom():
            raise RuntimeError("prod-db-01 unreachable")

        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            response = await ac.get("/test/boom")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_ERROR"
        assert "prod-db-01" not in error["message"]


class TestCORSMiddleware:
    """Tests for CORS middleware configuration."""

    async def test_cors_allows_configured_origin(self, client):
        response = await client.options(
            "/health",
            headers={
                "Origin": "http://localhost:3000",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "X-Punch-Token",
            },
        )
        assert response.status_code == 200
        assert (
            response.headers.get("access-control-allow-origin")
            == "http://localhost:3000"
        )

    async def test_cors_denies_unconfigured_origin(self):
        with patch("app.main.settings.allowed_origins", ["http://allowed-origin.com"]):
            test_app = create_app()
            transport = ASGITransport(app=test_app)
            async with AsyncClient(transport=transport, base_url="http://test") as ac:
                response = await ac.options(
                    "/health",
                    headers={
                        "Origin": "http://malicious-site.com",
                        "Access-Control-Request-Method": "GET",
                    },
                )
                allowed_origin = response.headers.get("access-control-allow-origin")
                assert allowed_origin != "http://malicious-site.com"


class TestSecurityHeadersMiddleware:
    """Tests for security headers middleware."""

    async def test_baseline_headers(self, client):
        response = await client.get("/health")
        assert response.headers.get("x-frame-options") == "DENY"
        assert response.headers.get("x-content-type-options") == "nosniff"
        assert response.headers.get("x-xss-protection") == "1; mode=block"
        assert (
            response.headers.get("referrer-policy") == "strict-origin-when-cross-origin"
        )

    async def test_content_security_policy_header(self, client):
        csp = (await client.get("/health")).headers.get("content-security-policy")
        assert csp is not None
        assert "default-src 'none'" in csp
        assert "frame-ancestors 'none'" in csp

    async def test_cache_control_on_api_endpoints(self, client):
        """API responses (even errors) are never cached."""
        response = await client.get("/api/v1/timeclock/me/state")
        assert "no-store" in response.headers.get("cache-control", "")

    async def test_cache_control_not_on_health(self, client):
        response = await client.get("/health")
        assert "no-store" not in response.headers.get("cache-control", "")

    async def test_spectre_headers(self, client):
        response = await client.get("/api/v1/timeclock/me/state")
        assert response.headers.get("cross-origin-opener-policy") == "same-origin"
        assert response.headers.get("cross-origin-embedder-policy") == "require-corp"
        assert response.headers.get("cross-origin-resource-policy") == "same-origin"

    async def test_hsts_header_not_in_development(self, client):
        response = await client.get("/health")
        assert response.headers.get("strict-transport-security") is None

    async def test_hsts_header_in_production(self, client, monkeypatch):
        from app.core.config import settings

        monkeypatch.setattr(settings, "environment", "production")
        response = await client.get("/health")
        hsts = response.headers.get("strict-transport-security")
        assert hsts is not None
        assert "max-age=31536000" in hsts
