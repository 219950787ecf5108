"""Shared dependencies for API endpoints.

Caller identity, stores, and the services built on them. Local mode uses
DEFAULT_USER_ID / DEFAULT_SITE_ID; hosted mode validates the session JWT
from its cookie.

WHY DEPENDENCY INJECTION:
- Consistent auth across all endpoints
- Stores are swapped for in-memory implementations in tests
- Services never reach for module-level state
"""

import secrets
import uuid
from dataclasses import dataclass
from typing import Annotated
from zoneinfo import ZoneInfo

import jwt
from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.database import get_db
from app.core.rate_limiting import CompositeRateLimiter
from app.services.clock_state import ClockStateService
from app.services.punch_gate import GatePolicy, PunchGate
from app.services.punch_tokens import PunchTokenService, hash_user_agent
from app.services.signatures import SignatureService
from app.services.verification import VerificationEvaluator, resolve_client_ip
from app.services.weekly_timecard import WeeklyTimecardService
from app.stores import (
    AttendanceEventStore,
    ContractorProfileStore,
    PunchTokenStore,
    SqlAttendanceEventStore,
    SqlContractorProfileStore,
    SqlPunchTokenStore,
)

# Generic 401 detail, vague to prevent information leakage.
_UNAUTHORIZED_DETAIL = {
    "code": "UNAUTHORIZED",
    "message": "Authentication required",
}

_BEARER_PREFIX = "bearer "


def _unauthorized() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=_UNAUTHORIZED_DETAIL,
    )


# =============================================================================
# Caller identity
# =============================================================================


@dataclass(frozen=True)
class CallerContext:
    """Authenticated caller plus site context.

    Attributes:
        user_id: Worker id.
        site_id: Site the session was issued for, if any.
    """

    user_id: uuid.UUID
    site_id: str | None = None


def get_caller(request: Request) -> CallerContext:
    """Resolve the caller from the session.

    Validation steps (hosted mode):
    1. Read JWT from cookie
    2. Decode + verify signature (HS256)
    3. Verify exp, aud, iss claims
    4. Extract sub as UUID and the optional site claim

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        CallerContext for the request.

    Raises:
        HTTPException: 401 for any auth failure.
    """
    if not settings.auth_enabled:
        if settings.default_user_id is None:
            raise _unauthorized()
        return CallerContext(
            user_id=settings.default_user_id,
            site_id=settings.default_site_id,
        )

    token = request.cookies.get(settings.auth_cookie_name)
    if not token:
        raise _unauthorized()

    try:
        payload = jwt.decode(
            token,
            settings.auth_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_audience,
            issuer=settings.auth_issuer,
        )
        user_id = uuid.UUID(payload["sub"])
    except (jwt.InvalidTokenError, KeyError, ValueError, TypeError) as exc:
        raise _unauthorized() from exc

    site = payload.get("site")
    return CallerContext(
        user_id=user_id,
        site_id=str(site) if site else settings.default_site_id,
    )


def get_current_user_id(
    caller: Annotated[CallerContext, Depends(get_caller)],
) -> uuid.UUID:
    """Just the caller's id, for endpoints that do not need the site."""
    return caller.user_id


def get_client_ip(request: Request) -> str | None:
    """Caller address: first X-Forwarded-For hop, else the socket peer."""
    peer = request.client.host if request.client else None
    return resolve_client_ip(request.headers.get("x-forwarded-for"), peer)


def get_user_agent_hash(request: Request) -> str | None:
    """SHA-256 of the User-Agent header, if present."""
    return hash_user_agent(request.headers.get("user-agent"))


# Reusable type aliases for dependency injection
CurrentCaller = Annotated[CallerContext, Depends(get_caller)]
CurrentUserId = Annotated[uuid.UUID, Depends(get_current_user_id)]
DbSession = Annotated[AsyncSession, Depends(get_db)]
ClientIp = Annotated[str | None, Depends(get_client_ip)]
UserAgentHash = Annotated[str | None, Depends(get_user_agent_hash)]


# =============================================================================
# Stores
# =============================================================================


def get_event_store(db: DbSession) -> AttendanceEventStore:
    return SqlAttendanceEventStore(db)


def get_punch_token_store(db: DbSession) -> PunchTokenStore:
    return SqlPunchTokenStore(db)


def get_contractor_profile_store(db: DbSession) -> ContractorProfileStore:
    return SqlContractorProfileStore(db)


EventStore = Annotated[AttendanceEventStore, Depends(get_event_store)]
TokenStore = Annotated[PunchTokenStore, Depends(get_punch_token_store)]
ProfileStore = Annotated[ContractorProfileStore, Depends(get_contractor_profile_store)]


# =============================================================================
# Process-wide collaborators (built once in create_app)
# =============================================================================


def get_punch_rate_limiter(request: Request) -> CompositeRateLimiter:
    """The composite punch limiter held on app.state."""
    limiter: CompositeRateLimiter = request.app.state.punch_rate_limiter
    return limiter


def get_verification_evaluator(request: Request) -> VerificationEvaluator:
    """The evaluator held on app.state (config snapshotted at startup)."""
    evaluator: VerificationEvaluator = request.app.state.verification_evaluator
    return evaluator


# =============================================================================
# Services
# =============================================================================


def _site_timezone() -> ZoneInfo:
    return ZoneInfo(settings.timeclock_timezone)


def get_punch_token_service(tokens: TokenStore) -> PunchTokenService:
    return PunchTokenService(tokens, ttl_hours=settings.punch_token_ttl_hours)


def get_clock_state_service(events: EventStore) -> ClockStateService:
    return ClockStateService(
        events,
        replay_depth=settings.state_replay_depth,
        lunch_minutes=settings.timeclock_lunch_minutes,
        timezone=_site_timezone(),
    )


def get_weekly_timecard_service(events: EventStore) -> WeeklyTimecardService:
    return WeeklyTimecardService(
        events,
        timezone=_site_timezone(),
        lunch_minutes=settings.timeclock_lunch_minutes,
    )


def get_signature_service(events: EventStore) -> SignatureService:
    return SignatureService(events, max_bytes=settings.signature_max_bytes)


TokenService = Annotated[PunchTokenService, Depends(get_punch_token_service)]
StateService = Annotated[ClockStateService, Depends(get_clock_state_service)]
TimecardService = Annotated[WeeklyTimecardService, Depends(get_weekly_timecard_service)]
Signatures = Annotated[SignatureService, Depends(get_signature_service)]


def get_punch_gate(
    profiles: ProfileStore,
    events: EventStore,
    tokens: TokenService,
    state: StateService,
    evaluator: Annotated[VerificationEvaluator, Depends(get_verification_evaluator)],
    rate_limiter: Annotated[CompositeRateLimiter, Depends(get_punch_rate_limiter)],
) -> PunchGate:
    """Assemble the gate for one request."""
    return PunchGate(
        profiles=profiles,
        events=events,
        tokens=tokens,
        state=state,
        evaluator=evaluator,
        rate_limiter=rate_limiter,
        policy=GatePolicy.from_settings(settings),
    )


Gate = Annotated[PunchGate, Depends(get_punch_gate)]


# =============================================================================
# Agency API key
# =============================================================================


def get_agency(request: Request) -> str:
    """Resolve the calling agency from its bearer API key.

    Every configured key is compared in constant time; an agency with no
    key configured can never authenticate.

    Args:
        request: HTTP request (injected by FastAPI).

    Returns:
        Agency code, e.g. "PROLOGISTIX".

    Raises:
        HTTPException: 401 for a missing or unknown key.
    """
    header = request.headers.get("authorization", "")
    if not header.lower().startswith(_BEARER_PREFIX):
        raise _unauthorized()
    presented = header[len(_BEARER_PREFIX) :].strip().encode("utf-8")

    matched: str | None = None
    for agency, key in settings.agency_api_keys.items():
        expected = key.get_secret_value().encode("utf-8")
        if expected and secrets.compare_digest(presented, expected):
            matched = agency
    if matched is None:
        raise _unauthorized()
    return matched


CurrentAgency = Annotated[str, Depends(get_agency)]
