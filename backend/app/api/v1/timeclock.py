"""Worker-facing timeclock API.

Punch submission, punch token lifecycle, current state, and weekly
timecards. Device id, punch token and idempotency key travel as headers:

    X-Device-Id       - stable per-install device identifier
    X-Punch-Token     - raw token from POST /punch-tokens
    X-Idempotency-Key - client-chosen key, reused on retries

Events are immutable: PATCH and DELETE answer 405. The one permitted
mutation is attaching a signature to an accepted clock-out.
"""

import uuid
from datetime import UTC, date, datetime, time
from typing import Annotated, Literal

from fastapi import APIRouter, Header, Query, Request, status
from fastapi.responses import JSONResponse

from app.api.deps import (
    ClientIp,
    CurrentCaller,
    CurrentUserId,
    EventStore,
    Gate,
    ProfileStore,
    Signatures,
    StateService,
    TimecardService,
    TokenService,
    UserAgentHash,
)
from app.core.config import settings
from app.core.errors import (
    NotEligibleError,
    PunchBlockedError,
    PunchRateLimitedError,
    ValidationError,
)
from app.core.rate_limiting import limiter
from app.core.responses import DataResponse, ErrorDetail, ErrorResponse
from app.schemas.timeclock import (
    AttendanceEventRead,
    ClockStateRead,
    EligibilityRead,
    MyTimesRead,
    PunchAcceptedRead,
    PunchSubmitRequest,
    PunchTokenRead,
    PunchTokenRevokeRead,
    SignatureRequest,
    WeeklyTimecardRead,
)
from app.services.punch_gate import PunchBlocked, PunchRequest
from app.services.timeclock_types import BlockReason
from app.services.verification import METERS_PER_MILE, Coordinate
from app.services.weekly_timecard import last_week_range, this_week_range

router = APIRouter()

# =============================================================================
# Shared types
# =============================================================================

DeviceIdHeader = Annotated[str | None, Header(max_length=128)]
PunchTokenHeader = Annotated[str | None, Header(max_length=256)]
IdempotencyKeyHeader = Annotated[str | None, Header(max_length=128)]
WeekSelector = Annotated[
    Literal["this", "last"],
    Query(description="Week relative to now: this or last"),
]

_NOT_ELIGIBLE_REASON = "Not authorized for the timeclock."

_BLOCK_MESSAGES = {
    BlockReason.LOCATION_UNAVAILABLE: "Location unavailable. Enable location and try again.",
    BlockReason.ACCURACY_LOW: "Location accuracy is too low. Wait for a better fix.",
    BlockReason.NOT_ON_WAREHOUSE_WIFI: "Not on warehouse Wi-Fi and location could not be verified.",
    BlockReason.MISSING_DEVICE_ID: "Device id is required.",
    BlockReason.MISSING_IDEMPOTENCY_KEY: "Idempotency key is required.",
    BlockReason.REUSED_IDEMPOTENCY_KEY: "This punch was already recorded.",
    BlockReason.INVALID_PUNCH_TOKEN: "Punch token is missing, expired, or not valid for this device.",
    BlockReason.INVALID_STATE: "Invalid clock state for this action.",
}

_EVENTS_IMMUTABLE_RESPONSE = ErrorResponse(
    error=ErrorDetail(
        code="METHOD_NOT_ALLOWED",
        message="Attendance events are immutable.",
    ),
)


def _block_message(blocked: PunchBlocked) -> str:
    if blocked.reason == BlockReason.OUT_OF_RANGE:
        distance = blocked.event.distance_meters
        miles = f"{distance / METERS_PER_MILE:.2f}" if distance is not None else "n/a"
        return f"Out of range ({miles} mi from site)."
    return _BLOCK_MESSAGES.get(blocked.reason, "Blocked.")


def _require_device_id(device_id: str | None) -> str:
    cleaned = (device_id or "").strip()
    if not cleaned:
        raise ValidationError(
            "X-Device-Id header is required.",
            details=[{"loc": ["header", "x-device-id"], "msg": "missing"}],
        )
    return cleaned


# =============================================================================
# Eligibility
# =============================================================================


@router.get("/me")
async def get_eligibility(
    user_id: CurrentUserId,
    profiles: ProfileStore,
) -> DataResponse[EligibilityRead]:
    """Report whether the caller may use the timeclock."""
    profile = await profiles.get_by_user(user_id)
    if profile is None:
        return DataResponse(
            data=EligibilityRead(eligible=False, reason=_NOT_ELIGIBLE_REASON)
        )
    return DataResponse(
        data=EligibilityRead(
            eligible=profile.is_eligible,
            employment_type=profile.employment_type,
            agency=profile.agency,
            reason=None if profile.is_eligible else _NOT_ELIGIBLE_REASON,
        )
    )


# =============================================================================
# Punch tokens
# =============================================================================


@router.post("/punch-tokens", status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.rate_limit_token_issue)
async def issue_punch_token(
    request: Request,  # noqa: ARG001 - required by @limiter.limit()
    user_id: CurrentUserId,
    profiles: ProfileStore,
    tokens: TokenService,
    user_agent_hash: UserAgentHash,
    x_device_id: DeviceIdHeader = None,
) -> DataResponse[PunchTokenRead]:
    """Issue a device-bound punch token, revoking the device's previous one.

    The raw token appears in this response only.
    """
    device_id = _require_device_id(x_device_id)
    profile = await profiles.get_by_user(user_id)
    if profile is None or not profile.is_eligible:
        raise NotEligibleError()

    issued = await tokens.issue(user_id, device_id, user_agent_hash)
    return DataResponse(
        data=PunchTokenRead(token=issued.token, expires_at=issued.expires_at)
    )


@router.delete("/punch-tokens")
async def revoke_punch_token(
    user_id: CurrentUserId,
    tokens: TokenService,
    x_device_id: DeviceIdHeader = None,
) -> DataResponse[PunchTokenRevokeRead]:
    """Revoke the caller's active token for this device (sign-out)."""
    device_id = _require_device_id(x_device_id)
    revoked = await tokens.revoke(user_id, device_id)
    return DataResponse(data=PunchTokenRevokeRead(revoked=revoked))


# =============================================================================
# Punches
# =============================================================================


@router.post("/events", status_code=status.HTTP_201_CREATED)
async def submit_punch(
    body: PunchSubmitRequest,
    caller: CurrentCaller,
    gate: Gate,
    ip_address: ClientIp,
    user_agent_hash: UserAgentHash,
    x_device_id: DeviceIdHeader = None,
    x_punch_token: PunchTokenHeader = None,
    x_idempotency_key: IdempotencyKeyHeader = None,
) -> DataResponse[PunchAcceptedRead]:
    """Submit a clock action.

    Every attempt is audited. A rejected punch answers 403 with the block
    reason as the error code (429 with Retry-After when throttled); the
    audit event id is in the error details.

    Raises:
        NotEligibleError: Caller is not an active contractor.
        PunchBlockedError: A gate rejected the punch.
        PunchRateLimitedError: The punch throttle tripped.
    """
    coordinate = None
    if body.geo is not None:
        coordinate = Coordinate(
            lat=body.geo.lat,
            lng=body.geo.lng,
            accuracy_meters=body.geo.accuracy_meters,
        )

    outcome = await gate.submit(
        PunchRequest(
            user_id=caller.user_id,
            site_id=caller.site_id,
            type=body.type,
            coordinate=coordinate,
            device_id=(x_device_id or "").strip() or None,
            idempotency_key=(x_idempotency_key or "").strip() or None,
            punch_token=x_punch_token,
            ip_address=ip_address,
            user_agent_hash=user_agent_hash,
            client_timestamp=body.client_timestamp,
        )
    )

    if isinstance(outcome, PunchBlocked):
        event_id = str(outcome.event.id)
        if outcome.reason == BlockReason.RATE_LIMITED:
            raise PunchRateLimitedError(outcome.retry_after_seconds or 1, event_id)
        raise PunchBlockedError(outcome.reason.value, _block_message(outcome), event_id)

    return DataResponse(
        data=PunchAcceptedRead(
            event=AttendanceEventRead.model_validate(outcome.event),
            signature_required=outcome.signature_required,
        )
    )


@router.patch("/events/{event_id}")
async def update_event(
    event_id: uuid.UUID,  # noqa: ARG001
    _user_id: CurrentUserId,
) -> JSONResponse:
    """Reject event updates: attendance events are append-only.

    Returns:
        405 Method Not Allowed with error envelope.
    """
    return JSONResponse(
        status_code=405,
        content=_EVENTS_IMMUTABLE_RESPONSE.model_dump(),
    )


@router.delete("/events/{event_id}")
async def delete_event(
    event_id: uuid.UUID,  # noqa: ARG001
    _user_id: CurrentUserId,
) -> JSONResponse:
    """Reject event deletion: attendance events are append-only.

    Returns:
        405 Method Not Allowed with error envelope.
    """
    return JSONResponse(
        status_code=405,
        content=_EVENTS_IMMUTABLE_RESPONSE.model_dump(),
    )


@router.post("/events/{event_id}/signature")
async def attach_signature(
    event_id: uuid.UUID,
    body: SignatureRequest,
    user_id: CurrentUserId,
    signatures: Signatures,
) -> DataResponse[AttendanceEventRead]:
    """Attach the worker's signature to an accepted clock-out."""
    event = await signatures.attach_signature(event_id, user_id, body.signature_image)
    return DataResponse(data=AttendanceEventRead.model_validate(event))


# =============================================================================
# Reads
# =============================================================================


@router.get("/me/state")
async def get_state(
    user_id: CurrentUserId,
    state: StateService,
) -> DataResponse[ClockStateRead]:
    """Current clock state derived from the accepted event log."""
    current = await state.get_current_state(user_id)
    return DataResponse(data=ClockStateRead.from_state(current))


@router.get("/my-times")
async def get_my_times(
    caller: CurrentCaller,
    events: EventStore,
    week: WeekSelector = "this",
) -> DataResponse[MyTimesRead]:
    """The caller's accepted events for this or last week."""
    now = datetime.now(UTC)
    start, end = last_week_range(now) if week == "last" else this_week_range(now)
    rows = await events.list_accepted_between(caller.user_id, start, end)
    return DataResponse(
        data=MyTimesRead(
            range_start=start,
            range_end=end,
            events=[AttendanceEventRead.model_validate(e) for e in rows],
        )
    )


@router.get("/timecard")
async def get_timecard(
    caller: CurrentCaller,
    timecards: TimecardService,
    week: WeekSelector = "this",
    week_start: Annotated[
        date | None,
        Query(description="Any date in the wanted week (overrides week)"),
    ] = None,
) -> DataResponse[WeeklyTimecardRead]:
    """Weekly timecard: seven day rows plus totals."""
    if week_start is not None:
        card = await timecards.get_weekly_rows(
            caller.user_id,
            datetime.combine(week_start, time.min, tzinfo=UTC),
        )
    else:
        card = await timecards.get_relative_week(caller.user_id, week)
    return DataResponse(data=WeeklyTimecardRead.from_timecard(card))
