"""Timeclock request and response schemas.

Request bodies forbid unknown fields. Response models read straight from
ORM rows (from_attributes) or from the service dataclasses.
"""

import uuid
from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from app.services.clock_state import CurrentState
from app.services.timeclock_types import ClockState, EventType
from app.services.weekly_timecard import AgencyWeeklySummary, WeeklyTimecard

# =============================================================================
# Requests
# =============================================================================


class GeoPoint(BaseModel):
    """Reported device location.

    Attributes:
        lat: Latitude in degrees.
        lng: Longitude in degrees.
        accuracy_meters: Reported accuracy radius; omit if unknown.
    """

    model_config = ConfigDict(extra="forbid")

    lat: float
    lng: float
    accuracy_meters: float | None = Field(default=None, ge=0)


class PunchSubmitRequest(BaseModel):
    """Body for POST /timeclock/events.

    Device id, punch token and idempotency key travel as headers.
    """

    model_config = ConfigDict(extra="forbid")

    type: EventType
    geo: GeoPoint | None = None
    client_timestamp: datetime | None = None


class SignatureRequest(BaseModel):
    """Body for POST /timeclock/events/{id}/signature."""

    model_config = ConfigDict(extra="forbid")

    signature_image: str = Field(min_length=1)


# =============================================================================
# Responses
# =============================================================================


class EligibilityRead(BaseModel):
    """Response for GET /timeclock/me."""

    eligible: bool
    employment_type: str | None = None
    agency: str | None = None
    reason: str | None = None


class PunchTokenRead(BaseModel):
    """Freshly issued punch token. The raw token is never shown again."""

    token: str
    expires_at: datetime


class PunchTokenRevokeRead(BaseModel):
    revoked: int


class AttendanceEventRead(BaseModel):
    """Worker-facing view of one attendance event.

    The signature image itself is never echoed back; ``is_signed`` says
    whether one exists.
    """

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    type: str
    status: str
    reason: str | None = None
    server_timestamp: datetime
    client_reported_timestamp: datetime | None = None
    drift_ms: int | None = None
    drift_flag: bool | None = None
    distance_meters: float | None = None
    in_range: bool | None = None
    wifi_allowlist_status: str | None = None
    verification_method: str | None = None
    shift_type: str | None = None
    signed_at: datetime | None = None
    is_signed: bool = False


class PunchAcceptedRead(BaseModel):
    """Response for an accepted punch."""

    event: AttendanceEventRead
    signature_required: bool


class TimeRecordRead(AttendanceEventRead):
    """Agency-facing event row: adds identity and raw verification inputs."""

    user_id: uuid.UUID
    site_id: str | None = None
    agency: str
    lat: float | None = None
    lng: float | None = None
    accuracy_meters: float | None = None
    wifi_verified: bool | None = None
    location_verified: bool | None = None
    device_id: str | None = None
    ip_address: str | None = None


class MyTimesRead(BaseModel):
    """Response for GET /timeclock/my-times: accepted events in a week."""

    range_start: datetime
    range_end: datetime
    events: list[AttendanceEventRead]


class ClockStateRead(BaseModel):
    """Response for GET /timeclock/me/state."""

    state: ClockState
    clocked_in: bool
    on_lunch: bool
    last_event_type: EventType | None = None
    last_event_at: datetime | None = None
    last_action_label: str | None = None
    signature_required: bool
    pending_signature_event_id: uuid.UUID | None = None
    as_of: datetime

    @classmethod
    def from_state(cls, current: CurrentState) -> "ClockStateRead":
        return cls(
            state=current.state,
            clocked_in=current.state != ClockState.OUT,
            on_lunch=current.state == ClockState.ON_LUNCH,
            last_event_type=current.last_event_type,
            last_event_at=current.last_event_at,
            last_action_label=current.last_action_label,
            signature_required=current.signature_required,
            pending_signature_event_id=current.pending_signature_event_id,
            as_of=current.as_of,
        )


class DayRowRead(BaseModel):
    """One day of the weekly timecard."""

    model_config = ConfigDict(from_attributes=True)

    day: date
    weekday: str
    shift: str
    first_in: datetime | None = None
    last_out: datetime | None = None
    hours: float
    verified_via: str
    signed: bool | None = None
    segment_count: int
    in_progress: bool


class TotalsRowRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    hours: float
    days_worked: int
    signed_days: int


class WeeklyTimecardRead(BaseModel):
    """Seven day rows plus totals."""

    week_start: datetime
    week_end: datetime
    timezone: str
    days: list[DayRowRead]
    totals: TotalsRowRead

    @classmethod
    def from_timecard(cls, card: WeeklyTimecard) -> "WeeklyTimecardRead":
        return cls(
            week_start=card.week_start,
            week_end=card.week_end,
            timezone=card.timezone,
            days=[DayRowRead.model_validate(row) for row in card.days],
            totals=TotalsRowRead.model_validate(card.totals),
        )


class WorkerWeekSummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: uuid.UUID
    hours: float
    days_worked: int
    signed_days: int
    in_progress: bool


class AgencyWeeklySummaryRead(BaseModel):
    """Per-worker week totals for one agency."""

    agency: str
    week_start: datetime
    week_end: datetime
    timezone: str
    total_hours: float
    workers: list[WorkerWeekSummaryRead]

    @classmethod
    def from_summary(cls, summary: AgencyWeeklySummary) -> "AgencyWeeklySummaryRead":
        return cls(
            agency=summary.agency,
            week_start=summary.week_start,
            week_end=summary.week_end,
            timezone=summary.timezone,
            total_hours=summary.total_hours,
            workers=[WorkerWeekSummaryRead.model_validate(w) for w in summary.workers],
        )


__all__ = [
    "AgencyWeeklySummaryRead",
    "AttendanceEventRead",
    "ClockStateRead",
    "DayRowRead",
    "EligibilityRead",
    "GeoPoint",
    "MyTimesRead",
    "PunchAcceptedRead",
    "PunchSubmitRequest",
    "PunchTokenRead",
    "PunchTokenRevokeRead",
    "SignatureRequest",
    "TimeRecordRead",
    "TotalsRowRead",
    "WeeklyTimecardRead",
    "WorkerWeekSummaryRead",
]
