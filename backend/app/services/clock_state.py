"""Clock sequencing state machine.

States and the only legal transitions:

    OUT      --CLOCK_IN-->    IN
    IN       --LUNCH_START--> ON_LUNCH
    ON_LUNCH --LUNCH_END-->   IN
    IN       --CLOCK_OUT-->   OUT

Current state is never stored. It is derived by replaying the user's
accepted (OK) events in server-timestamp order; BLOCKED rows are ignored.

Lunch is fixed-length: ON_LUNCH reads as IN once the lunch duration has
elapsed since LUNCH_START. No event is written for the implicit end; the
next request is simply validated against the corrected state.
"""

import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

from app.models.attendance_event import AttendanceEvent
from app.services.timeclock_types import ClockState, EventStatus, EventType
from app.stores.base import AttendanceEventStore

DEFAULT_LUNCH_MINUTES = 30
DEFAULT_REPLAY_DEPTH = 200

TRANSITIONS: dict[tuple[ClockState, EventType], ClockState] = {
    (ClockState.OUT, EventType.CLOCK_IN): ClockState.IN,
    (ClockState.IN, EventType.LUNCH_START): ClockState.ON_LUNCH,
    (ClockState.ON_LUNCH, EventType.LUNCH_END): ClockState.IN,
    (ClockState.IN, EventType.CLOCK_OUT): ClockState.OUT,
}

# Every event type leads to exactly one state, whatever the state before it.
# Replay sets the target directly, so a history that starts mid-shift (a
# bounded tail of the log) still lands on the right state.
_TARGET_STATE: dict[EventType, ClockState] = {
    event_type: target for (_, event_type), target in TRANSITIONS.items()
}

_ACTION_LABELS = {
    EventType.CLOCK_IN: "Clocked in",
    EventType.LUNCH_START: "Lunch started",
    EventType.LUNCH_END: "Lunch ended",
    EventType.CLOCK_OUT: "Clocked out",
}


def next_state(state: ClockState, event_type: EventType) -> ClockState | None:
    """Apply one transition; None if ``event_type`` is illegal from ``state``."""
    return TRANSITIONS.get((state, event_type))


def is_valid_transition(state: ClockState, event_type: EventType) -> bool:
    """True if ``event_type`` may be requested from ``state``."""
    return (state, event_type) in TRANSITIONS


@dataclass(frozen=True)
class ReplayResult:
    """Output of replaying an event history.

    Attributes:
        state: Derived state after the lazy lunch correction.
        last_event: Most recent accepted event, if any.
        lunch_started_at: Start of the open lunch (None unless ON_LUNCH
            before correction).
        lunch_auto_ended: True when ON_LUNCH was read as IN because the
            lunch duration elapsed.
        shift_started_at: CLOCK_IN time of the open shift (None when OUT).
    """

    state: ClockState
    last_event: AttendanceEvent | None = None
    lunch_started_at: datetime | None = None
    lunch_auto_ended: bool = False
    shift_started_at: datetime | None = None


def replay(
    events: Iterable[AttendanceEvent],
    now: datetime | None = None,
    lunch_minutes: int = DEFAULT_LUNCH_MINUTES,
) -> ReplayResult:
    """Derive the clock state from an event history.

    Args:
        events: Events in any order; non-OK rows are skipped.
        now: Reference time for the lunch correction (None skips it).
        lunch_minutes: Fixed lunch duration.

    Returns:
        ReplayResult with the derived state.
    """
    accepted = sorted(
        (e for e in events if e.status == EventStatus.OK.value),
        key=lambda e: (e.server_timestamp, str(e.id)),
    )

    state = ClockState.OUT
    lunch_started_at: datetime | None = None
    shift_started_at: datetime | None = None
    for event in accepted:
        state = _TARGET_STATE[EventType(event.type)]
        if event.type == EventType.CLOCK_IN.value:
            shift_started_at = event.server_timestamp
        elif state == ClockState.OUT:
            shift_started_at = None
        lunch_started_at = (
            event.server_timestamp if state == ClockState.ON_LUNCH else None
        )

    auto_ended = False
    if (
        state == ClockState.ON_LUNCH
        and now is not None
        and lunch_started_at is not None
        and now - lunch_started_at >= timedelta(minutes=lunch_minutes)
    ):
        state = ClockState.IN
        auto_ended = True

    return ReplayResult(
        state=state,
        last_event=accepted[-1] if accepted else None,
        lunch_started_at=lunch_started_at,
        lunch_auto_ended=auto_ended,
        shift_started_at=shift_started_at,
    )


def derive_state(
    events: Iterable[AttendanceEvent],
    now: datetime | None = None,
    lunch_minutes: int = DEFAULT_LUNCH_MINUTES,
) -> ClockState:
    """Shorthand for ``replay(...).state``."""
    return replay(events, now, lunch_minutes).state


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class CurrentState:
    """Caller-facing clock state.

    Attributes:
        state: Derived state at ``as_of``.
        last_event_type: Type of the most recent accepted event.
        last_event_at: Its server timestamp.
        last_action_label: Human summary, e.g. "Clocked in at 08:00 AM".
        signature_required: The most recent accepted event is an unsigned
            CLOCK_OUT. Advisory only; it never blocks the next CLOCK_IN.
        pending_signature_event_id: That CLOCK_OUT's id.
        as_of: Time the state was derived.
    """

    state: ClockState
    last_event_type: EventType | None
    last_event_at: datetime | None
    last_action_label: str | None
    signature_required: bool
    pending_signature_event_id: uuid.UUID | None
    as_of: datetime


class ClockStateService:
    """Derives a user's clock state from the event store.

    Args:
        events: Attendance event store.
        replay_depth: How many recent accepted events to replay.
        lunch_minutes: Fixed lunch duration.
        timezone: Zone for the human-readable action label.
        clock: UTC "now" source.
    """

    def __init__(
        self,
        events: AttendanceEventStore,
        replay_depth: int = DEFAULT_REPLAY_DEPTH,
        lunch_minutes: int = DEFAULT_LUNCH_MINUTES,
        timezone: ZoneInfo | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.events = events
        self.replay_depth = replay_depth
        self.lunch_minutes = lunch_minutes
        self.timezone = timezone or ZoneInfo("UTC")
        self._clock = clock

    async def replay_for(self, user_id: uuid.UUID, now: datetime) -> ReplayResult:
        """Replay the user's recent accepted history as of ``now``."""
        history = await self.events.list_recent_accepted(user_id, self.replay_depth)
        return replay(history, now, self.lunch_minutes)

    async def get_current_state(self, user_id: uuid.UUID) -> CurrentState:
        """Current state plus a summary of the last accepted event.

        Args:
            user_id: Worker.

        Returns:
            CurrentState as of now.
        """
        now = self._clock()
        result = await self.replay_for(user_id, now)
        last = result.last_event

        if last is None:
            return CurrentState(
                state=result.state,
                last_event_type=None,
                last_event_at=None,
                last_action_label=None,
                signature_required=False,
                pending_signature_event_id=None,
                as_of=now,
            )

        last_type = EventType(last.type)
        local_time = last.server_timestamp.astimezone(self.timezone)
        label = f"{_ACTION_LABELS[last_type]} at {local_time.strftime('%I:%M %p')}"
        pending = last_type == EventType.CLOCK_OUT and last.signed_at is None

        return CurrentState(
            state=result.state,
            last_event_type=last_type,
            last_event_at=last.server_timestamp,
            last_action_label=label,
            signature_required=pending,
            pending_signature_event_id=last.id if pending else None,
            as_of=now,
        )
