"""Rate limiting: slowapi endpoint limits and in-process punch throttling.

Two layers:
- slowapi ``limiter`` decorates individual endpoints (e.g. punch token
  issuance) and returns the standard 429 envelope.
- ``SlidingWindowRateLimiter`` / ``CompositeRateLimiter`` throttle punch
  submissions inside the punch gate, where a rejection must still be
  written to the audit log rather than short-circuited by middleware.

Both are in-memory and best-effort: state is per process and is lost on
restart. They are a first line of defense, not the only one.

Usage in routers:
    from app.core.rate_limiting import limiter

    @router.post("/punch-tokens")
    @limiter.limit(lambda: settings.rate_limit_token_issue)
    async def issue_punch_token(request: Request, ...):
        ...
"""

import math
import time
from collections.abc import Iterable
from dataclasses import dataclass

import jwt
from fastapi import Request, Response
from limits import RateLimitItemPerSecond
from limits.storage import MemoryStorage, Storage
from limits.strategies import MovingWindowRateLimiter
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import JSONResponse

from app.core.config import Settings, settings


def _rate_limit_key_func(request: Request) -> str:
    """Get rate limit key from request.

    When auth is enabled, extracts user ID from the JWT cookie for per-user
    rate limiting. Falls back to IP-based keying when auth is disabled, no
    cookie is present, or the JWT is invalid.

    Key format:
    - Auth disabled: "{ip}" (local dev mode)
    - Auth enabled + valid JWT: "user:{sub}"
    - Auth enabled + no/invalid JWT: "unauth:{ip}"

    Args:
        request: The incoming request.

    Returns:
        Rate limit key string.
    """
    if not settings.auth_enabled:
        return get_remote_address(request)

    # Only the sub claim is needed for keying; full validation is in deps.py.
    token = request.cookies.get(settings.auth_cookie_name)
    if token:
        try:
            payload = jwt.decode(
                token,
                settings.auth_secret.get_secret_value(),
                algorithms=["HS256"],
                audience=settings.auth_audience,
                issuer=settings.auth_issuer,
            )
            sub = payload["sub"]
            if len(sub) <= 36:
                return f"user:{sub}"
        except (jwt.InvalidTokenError, KeyError):
            pass

    return f"unauth:{get_remote_address(request)}"


# Global limiter instance
# Configured with in-memory storage (suitable for single-instance deployment)
# For multi-instance, configure Redis storage via RATELIMIT_STORAGE_URL
limiter = Limiter(
    key_func=_rate_limit_key_func,
    enabled=settings.rate_limit_enabled,
)


def rate_limit_exceeded_handler(
    _request: Request,
    exc: RateLimitExceeded,
) -> Response:
    """Handle slowapi rate limit exceeded errors.

    Returns 429 Too Many Requests with standard error envelope.

    Args:
        request: The incoming request.
        exc: The rate limit exception.

    Returns:
        JSONResponse with 429 status and retry-after header.
    """
    # Parse retry-after from exception detail (e.g., "10 per 1 minute")
    # Fallback to 60 seconds if parsing fails
    try:
        retry_after = str(exc.detail.split()[-1])
        int(retry_after.rstrip("s"))
    except (ValueError, AttributeError, IndexError):
        retry_after = "60"

    return JSONResponse(
        status_code=429,
        content={
            "error": {
                "code": "RATE_LIMITED",
                "message": f"Rate limit exceeded: {exc.detail}",
            }
        },
        headers={"Retry-After": retry_after},
    )


# =============================================================================
# Moving-window punch throttle
# =============================================================================


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single limiter hit.

    Attributes:
        allowed: True if the hit was counted and is within the limit.
        remaining: Hits left in the current window after this one.
        retry_after_seconds: Seconds until the oldest hit leaves the
            window (0 when allowed).
    """

    allowed: bool
    remaining: int
    retry_after_seconds: int


class SlidingWindowRateLimiter:
    """Per-key hit counter over a trailing window.

    Backed by the ``limits`` moving-window strategy (the same library
    slowapi uses), so a hit is allowed while fewer than ``max_hits`` hits
    fall inside the last ``window_seconds``. Rejected hits are not recorded.

    Args:
        max_hits: Hits allowed per window.
        window_seconds: Window length in whole seconds.
        namespace: Key prefix, so limiters may share one storage.
        storage: ``limits`` storage; a private MemoryStorage by default.
    """

    def __init__(
        self,
        max_hits: int,
        window_seconds: int,
        *,
        namespace: str = "punch",
        storage: Storage | None = None,
    ) -> None:
        if max_hits <= 0 or window_seconds <= 0:
            raise ValueError("max_hits and window_seconds must be positive")
        self.max_hits = max_hits
        self.window_seconds = window_seconds
        self._item = RateLimitItemPerSecond(max_hits, window_seconds, namespace=namespace)
        self._storage = storage if storage is not None else MemoryStorage()
        self._strategy = MovingWindowRateLimiter(self._storage)

    def hit(self, key: str) -> RateLimitDecision:
        """Record a hit for ``key`` if the window has room.

        Args:
            key: Caller identity, e.g. "user:<uuid>" or "ip:<addr>".

        Returns:
            RateLimitDecision for this hit.
        """
        allowed = self._strategy.hit(self._item, key)
        stats = self._strategy.get_window_stats(self._item, key)
        if allowed:
            return RateLimitDecision(
                allowed=True,
                remaining=max(0, stats.remaining),
                retry_after_seconds=0,
            )
        return RateLimitDecision(
            allowed=False,
            remaining=0,
            retry_after_seconds=math.ceil(max(0.0, stats.reset_time - time.time())),
        )

    def clear(self) -> None:
        """Drop all recorded hits (for testing)."""
        self._storage.reset()


@dataclass(frozen=True)
class CompositeDecision:
    """Aggregate outcome across composed limiters.

    Attributes:
        allowed: False if any limiter rejected.
        retry_after_seconds: Max retry-after across rejecting limiters,
            never below 1 when rejected; 0 when allowed.
        tripped: Names of the limiters that rejected, as "name:key".
    """

    allowed: bool
    retry_after_seconds: int
    tripped: tuple[str, ...] = ()


class CompositeRateLimiter:
    """Applies several named limiters to several caller identities.

    Every (limiter, identity) pair is hit; the request is rejected if any
    pair rejects.

    Args:
        limiters: Mapping of limiter name to limiter.
    """

    def __init__(self, limiters: dict[str, SlidingWindowRateLimiter]) -> None:
        self._limiters = dict(limiters)

    def hit(self, identities: Iterable[str]) -> CompositeDecision:
        """Hit every limiter once per identity.

        Args:
            identities: Caller keys (falsy entries are skipped).

        Returns:
            CompositeDecision for the request.
        """
        keys = [key for key in identities if key]
        tripped: list[str] = []
        retry_after = 0
        for name, window in self._limiters.items():
            for key in keys:
                decision = window.hit(key)
                if not decision.allowed:
                    tripped.append(f"{name}:{key}")
                    retry_after = max(retry_after, decision.retry_after_seconds)

        if tripped:
            return CompositeDecision(
                allowed=False,
                retry_after_seconds=max(1, retry_after),
                tripped=tuple(tripped),
            )
        return CompositeDecision(allowed=True, retry_after_seconds=0)

    def clear(self) -> None:
        """Reset every composed limiter (for testing)."""
        for window in self._limiters.values():
            window.clear()


def build_punch_rate_limiter(config: Settings = settings) -> CompositeRateLimiter:
    """Create the burst + sustained limiter pair used by the punch gate.

    Both windows share one in-memory storage, separated by namespace.

    Args:
        config: Settings supplying limits and windows.

    Returns:
        CompositeRateLimiter with "burst" and "sustained" windows.
    """
    storage = MemoryStorage()
    return CompositeRateLimiter(
        {
            "burst": SlidingWindowRateLimiter(
                config.punch_burst_limit,
                config.punch_burst_window_seconds,
                namespace="punch-burst",
                storage=storage,
            ),
            "sustained": SlidingWindowRateLimiter(
                config.punch_sustained_limit,
                config.punch_sustained_window_seconds,
                namespace="punch-sustained",
                storage=storage,
            ),
        }
    )
