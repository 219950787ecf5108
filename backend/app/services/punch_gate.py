"""Punch gate: the ordered check pipeline and audit writer.

Every punch attempt that gets past eligibility produces exactly one
attendance event. A rejected attempt is written as BLOCKED, with its reason,
before the rejection is returned; nothing is silently dropped.

Gate order (first failure wins):
    1. Eligibility          -> NotEligibleError, no audit row
    2. Verification         -> LOCATION_UNAVAILABLE / ACCURACY_LOW /
                               OUT_OF_RANGE / NOT_ON_WAREHOUSE_WIFI
    3. Device id present    -> MISSING_DEVICE_ID
    4. Rate limits          -> RATE_LIMITED (with retry-after)
    5. Idempotency key      -> MISSING_IDEMPOTENCY_KEY / REUSED_IDEMPOTENCY_KEY
    6. Punch token          -> INVALID_PUNCH_TOKEN
    7. Sequencing           -> INVALID_STATE (REUSED_IDEMPOTENCY_KEY if the
                               key was claimed after step 5)

Outcomes are values (PunchAccepted | PunchBlocked); the HTTP layer decides
how to render them.
"""

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import structlog

from app.core.config import Settings
from app.core.errors import NotEligibleError
from app.core.rate_limiting import CompositeRateLimiter
from app.models.attendance_event import AttendanceEvent
from app.models.contractor_profile import ContractorProfile
from app.services.clock_state import ClockStateService, is_valid_transition
from app.services.punch_tokens import PunchTokenService
from app.services.timeclock_types import BlockReason, EventStatus, EventType
from app.services.verification import (
    Coordinate,
    VerificationEvaluator,
    VerificationResult,
)
from app.services.weekly_timecard import classify_shift
from app.stores.base import AttendanceEventStore, ContractorProfileStore

logger = structlog.get_logger()


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class PunchRequest:
    """One punch attempt as received from the caller.

    Attributes:
        user_id: Authenticated caller.
        type: Requested transition.
        site_id: Caller's site context, if any.
        coordinate: Reported location, if any.
        device_id: Device binding header.
        idempotency_key: Client-chosen retry key.
        punch_token: Raw punch token header.
        ip_address: Resolved caller address.
        user_agent_hash: SHA-256 of the caller's User-Agent.
        client_timestamp: Device clock at submission (untrusted).
    """

    user_id: uuid.UUID
    type: EventType
    site_id: str | None = None
    coordinate: Coordinate | None = None
    device_id: str | None = None
    idempotency_key: str | None = None
    punch_token: str | None = None
    ip_address: str | None = None
    user_agent_hash: str | None = None
    client_timestamp: datetime | None = None


@dataclass(frozen=True)
class PunchAccepted:
    """The punch passed every gate and was written as OK."""

    event: AttendanceEvent

    @property
    def signature_required(self) -> bool:
        """A CLOCK_OUT asks the worker to sign the shift (advisory)."""
        return self.event.type == EventType.CLOCK_OUT.value


@dataclass(frozen=True)
class PunchBlocked:
    """The punch was rejected; ``event`` is its BLOCKED audit row."""

    reason: BlockReason
    event: AttendanceEvent
    retry_after_seconds: int | None = None


PunchOutcome = PunchAccepted | PunchBlocked


@dataclass(frozen=True)
class GatePolicy:
    """Integrity thresholds for the gate.

    Attributes:
        idempotency_window: How long an accepted key stays claimed.
        drift_flag_threshold: |server - client| at or above this is flagged.
        timezone: Site timezone for shift classification.
    """

    idempotency_window: timedelta = timedelta(hours=24)
    drift_flag_threshold: timedelta = timedelta(minutes=5)
    timezone: ZoneInfo = field(default_factory=lambda: ZoneInfo("UTC"))

    @classmethod
    def from_settings(cls, config: Settings) -> "GatePolicy":
        return cls(
            idempotency_window=timedelta(hours=config.idempotency_window_hours),
            drift_flag_threshold=timedelta(minutes=config.clock_drift_flag_minutes),
            timezone=ZoneInfo(config.timeclock_timezone),
        )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def compute_drift(
    server_timestamp: datetime,
    client_timestamp: datetime | None,
    threshold: timedelta,
) -> tuple[int | None, bool | None]:
    """Drift between server and client clocks.

    Args:
        server_timestamp: Authoritative time.
        client_timestamp: Device-reported time; naive values are read as UTC.
        threshold: Flag when |drift| reaches this.

    Returns:
        Tuple of (drift_ms, drift_flag); both None without a client time.
    """
    if client_timestamp is None:
        return None, None
    if client_timestamp.tzinfo is None:
        client_timestamp = client_timestamp.replace(tzinfo=UTC)
    drift = server_timestamp - client_timestamp
    drift_ms = round(drift.total_seconds() * 1000)
    threshold_ms = threshold.total_seconds() * 1000
    return drift_ms, abs(drift_ms) >= threshold_ms


# =============================================================================
# Gate
# =============================================================================


class PunchGate:
    """Runs the gate pipeline for one punch at a time.

    Instances hold no per-request state and may be shared; the rate limiter
    and stores carry their own synchronization.

    Args:
        profiles: Contractor eligibility lookup.
        events: Attendance event store.
        tokens: Punch token service.
        state: Clock state service (replay).
        evaluator: Verification evaluator.
        rate_limiter: Composite burst/sustained limiter.
        policy: Integrity thresholds.
        clock: UTC "now" source.
    """

    def __init__(
        self,
        *,
        profiles: ContractorProfileStore,
        events: AttendanceEventStore,
        tokens: PunchTokenService,
        state: ClockStateService,
        evaluator: VerificationEvaluator,
        rate_limiter: CompositeRateLimiter,
        policy: GatePolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.profiles = profiles
        self.events = events
        self.tokens = tokens
        self.state = state
        self.evaluator = evaluator
        self.rate_limiter = rate_limiter
        self.policy = policy or GatePolicy()
        self._clock = clock

    async def check_eligibility(self, user_id: uuid.UUID) -> ContractorProfile:
        """Return the caller's profile or raise NotEligibleError."""
        profile = await self.profiles.get_by_user(user_id)
        if profile is None or not profile.is_eligible:
            raise NotEligibleError()
        return profile

    async def submit(self, request: PunchRequest) -> PunchOutcome:
        """Run every gate and persist the outcome.

        Args:
            request: The punch attempt.

        Returns:
            PunchAccepted or PunchBlocked.

        Raises:
            NotEligibleError: Caller has no active contractor profile with a
                recognized employment type (nothing is written).
        """
        profile = await self.check_eligibility(request.user_id)
        now = self._clock()

        verification = self.evaluator.evaluate(
            user_id=str(request.user_id),
            ip_address=request.ip_address,
            coordinate=request.coordinate,
        )
        event = self._draft_event(request, profile, verification, now)

        # 2. Verification
        if verification.failure_reason is not None:
            return await self._block(event, verification.failure_reason)

        # 3. Device binding
        if not request.device_id:
            return await self._block(event, BlockReason.MISSING_DEVICE_ID)

        # 4. Rate limits, per caller and per source address
        decision = self.rate_limiter.hit(
            [
                f"user:{request.user_id}",
                f"ip:{request.ip_address}" if request.ip_address else "",
            ]
        )
        if not decision.allowed:
            return await self._block(
                event,
                BlockReason.RATE_LIMITED,
                retry_after_seconds=decision.retry_after_seconds,
            )

        # 5. Idempotency
        if not request.idempotency_key:
            return await self._block(event, BlockReason.MISSING_IDEMPOTENCY_KEY)
        key_since = now - self.policy.idempotency_window
        if await self.events.has_accepted_key(
            request.user_id, request.idempotency_key, key_since
        ):
            return await self._block(event, BlockReason.REUSED_IDEMPOTENCY_KEY)

        # 6. Punch token
        token = await self.tokens.validate(
            request.user_id,
            request.device_id,
            request.punch_token,
            request.user_agent_hash,
        )
        if token is None:
            return await self._block(event, BlockReason.INVALID_PUNCH_TOKEN)
        event.punch_token_id = token.id

        # 7. Sequencing
        replayed = await self.state.replay_for(request.user_id, now)
        if not is_valid_transition(replayed.state, request.type):
            # A request with the same key may have been accepted since step 5
            if await self.events.has_accepted_key(
                request.user_id, request.idempotency_key, key_since
            ):
                return await self._block(event, BlockReason.REUSED_IDEMPOTENCY_KEY)
            logger.info(
                "punch_invalid_transition",
                user_id=str(request.user_id),
                state=replayed.state.value,
                requested=request.type.value,
            )
            return await self._block(event, BlockReason.INVALID_STATE)

        if request.type == EventType.CLOCK_OUT and replayed.shift_started_at:
            event.shift_type = classify_shift(
                replayed.shift_started_at, self.policy.timezone
            ).value

        event.status = EventStatus.OK.value
        if not await self.events.append_accepted(event, key_since):
            # Lost the race to a concurrent request carrying the same key
            loser = self._draft_event(request, profile, verification, now)
            loser.punch_token_id = token.id
            return await self._block(loser, BlockReason.REUSED_IDEMPOTENCY_KEY)

        await self.tokens.touch(token.id)
        logger.info(
            "punch_accepted",
            event_id=str(event.id),
            user_id=str(request.user_id),
            type=request.type.value,
            method=event.verification_method,
            wifi_status=event.wifi_allowlist_status,
            drift_flag=event.drift_flag,
        )
        return PunchAccepted(event=event)

    def _draft_event(
        self,
        request: PunchRequest,
        profile: ContractorProfile,
        verification: VerificationResult,
        now: datetime,
    ) -> AttendanceEvent:
        """Build the event row shared by every outcome (status set later)."""
        drift_ms, drift_flag = compute_drift(
            now, request.client_timestamp, self.policy.drift_flag_threshold
        )
        coordinate = request.coordinate
        geofence = verification.geofence
        return AttendanceEvent(
            id=uuid.uuid4(),
            user_id=request.user_id,
            site_id=request.site_id,
            agency=profile.agency,
            type=request.type.value,
            status=EventStatus.BLOCKED.value,
            server_timestamp=now,
            client_reported_timestamp=request.client_timestamp,
            drift_ms=drift_ms,
            drift_flag=drift_flag,
            lat=coordinate.lat if coordinate else None,
            lng=coordinate.lng if coordinate else None,
            accuracy_meters=coordinate.accuracy_meters if coordinate else None,
            distance_meters=geofence.distance_meters,
            in_range=geofence.in_range,
            wifi_allowlist_status=verification.wifi_status.value,
            wifi_verified=verification.wifi_verified,
            location_verified=verification.location_verified,
            verification_method=verification.method.value,
            device_id=request.device_id or None,
            idempotency_key=request.idempotency_key or None,
            ip_address=request.ip_address,
        )

    async def _block(
        self,
        event: AttendanceEvent,
        reason: BlockReason,
        retry_after_seconds: int | None = None,
    ) -> PunchBlocked:
        """Write the BLOCKED audit row, then return the rejection."""
        event.status = EventStatus.BLOCKED.value
        event.reason = reason.value
        event.shift_type = None
        await self.events.append(event)
        logger.info(
            "punch_blocked",
            event_id=str(event.id),
            user_id=str(event.user_id),
            type=event.type,
            reason=reason.value,
            ip_address=event.ip_address,
        )
        return PunchBlocked(
            reason=reason,
            event=event,
            retry_after_seconds=retry_after_seconds,
        )
