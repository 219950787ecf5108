"""Weekly timecard reconstruction.

Rebuilds a worker's week from the accepted event log. The output shape is
fixed: seven day rows followed by one totals row, whether or not any work
happened. Renderers (PDF, CSV, agency portal) depend on that shape.

Algorithm:
1. Load OK events from 12 hours before the local week start to 12 hours
   after the local week end, so a shift that straddles midnight at either
   edge is seen whole.
2. Pair each CLOCK_IN with the next CLOCK_OUT into a segment. Lunch events
   do not affect pairing. A CLOCK_IN with no CLOCK_OUT yet is a shift in
   progress and contributes no hours.
3. Classify each segment DAY or NIGHT (stored classification on the
   CLOCK_OUT wins; else 06:00-17:59 local clock-in is DAY).
4. Bucket segments by the local calendar day of their clock-in.
5. Per day: first in, last out, worked time, minus one flat lunch per
   worked day (never per segment).

WHY A FLAT LUNCH:
Every worked day is assumed to include exactly one unpaid lunch, even a
short one. Actual LUNCH_START/LUNCH_END times are ignored for hours.
"""

import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from app.models.attendance_event import AttendanceEvent
from app.services.timeclock_types import (
    EventStatus,
    EventType,
    ShiftType,
    VerificationMethod,
)
from app.stores.base import AttendanceEventStore

DAYS_PER_WEEK = 7
MS_PER_HOUR = 3_600_000
QUERY_WIDENING = timedelta(hours=12)
DEFAULT_LUNCH_MINUTES = 30

# Local clock-in hours [06:00, 18:00) are day shift
DAY_SHIFT_START_HOUR = 6
DAY_SHIFT_END_HOUR = 18

EMPTY_CELL = "—"
LABEL_SEPARATOR = " → "

_METHOD_LABELS = {
    VerificationMethod.WIFI.value: "Wi-Fi",
    VerificationMethod.LOCATION.value: "Location",
    VerificationMethod.BOTH.value: "Wi-Fi + Location",
}


# =============================================================================
# Types
# =============================================================================


@dataclass(frozen=True)
class Segment:
    """One completed CLOCK_IN → CLOCK_OUT pair.

    Attributes:
        clock_in_at: Server time of the CLOCK_IN.
        clock_out_at: Server time of the CLOCK_OUT.
        duration_ms: clock_out_at - clock_in_at in milliseconds.
        clock_in_method: Verification method on the CLOCK_IN.
        clock_out_method: Verification method on the CLOCK_OUT.
        stored_shift_type: Classification recorded on the CLOCK_OUT, if any.
        signed: The CLOCK_OUT carries a signature.
        clock_out_event_id: Id of the closing CLOCK_OUT.
    """

    clock_in_at: datetime
    clock_out_at: datetime
    duration_ms: int
    clock_in_method: str | None = None
    clock_out_method: str | None = None
    stored_shift_type: str | None = None
    signed: bool = False
    clock_out_event_id: uuid.UUID | None = None


@dataclass(frozen=True)
class DayRow:
    """One calendar day of the timecard.

    Attributes:
        day: Local calendar date.
        weekday: Day name, e.g. "Monday".
        shift: "DAY", "NIGHT", or "—" for a day without segments.
        first_in: Earliest segment start.
        last_out: Latest segment end.
        total_ms: Worked time before lunch.
        lunch_ms: Lunch deducted (0 or the flat lunch).
        hours: max(0, total - lunch) in hours.
        verified_via: Verification label, or "—".
        signed: True/False on worked days, None on empty days.
        segment_count: Completed segments that day.
        in_progress: A shift started this day has not been clocked out.
    """

    day: date
    weekday: str
    shift: str = EMPTY_CELL
    first_in: datetime | None = None
    last_out: datetime | None = None
    total_ms: int = 0
    lunch_ms: int = 0
    hours: float = 0.0
    verified_via: str = EMPTY_CELL
    signed: bool | None = None
    segment_count: int = 0
    in_progress: bool = False

    @property
    def worked(self) -> bool:
        return self.segment_count > 0


@dataclass(frozen=True)
class TotalsRow:
    """Week totals.

    Attributes:
        hours: Sum of the seven day rows' hours.
        days_worked: Days with at least one completed segment.
        signed_days: Worked days with a signature.
    """

    hours: float
    days_worked: int
    signed_days: int


@dataclass(frozen=True)
class WeeklyTimecard:
    """Exactly seven day rows plus one totals row."""

    week_start: datetime
    week_end: datetime
    timezone: str
    days: tuple[DayRow, ...]
    totals: TotalsRow

    def __post_init__(self) -> None:
        if len(self.days) != DAYS_PER_WEEK:
            raise ValueError(f"expected {DAYS_PER_WEEK} day rows, got {len(self.days)}")

    @property
    def rows(self) -> tuple[DayRow | TotalsRow, ...]:
        """All eight rows in render order."""
        return (*self.days, self.totals)


# =============================================================================
# Week helpers
# =============================================================================


def week_start_for(moment: datetime) -> datetime:
    """Monday 00:00 UTC of the UTC week containing ``moment``."""
    moment_utc = moment.astimezone(UTC)
    monday = moment_utc.date() - timedelta(days=moment_utc.weekday())
    return datetime.combine(monday, time.min, tzinfo=UTC)


def this_week_range(now: datetime) -> tuple[datetime, datetime]:
    """[Monday, next Monday) for the week containing ``now``."""
    start = week_start_for(now)
    return start, start + timedelta(days=DAYS_PER_WEEK)


def last_week_range(now: datetime) -> tuple[datetime, datetime]:
    """[Monday, next Monday) for the week before the one containing ``now``."""
    this_monday = week_start_for(now)
    return this_monday - timedelta(days=DAYS_PER_WEEK), this_monday


# =============================================================================
# Pure reconstruction
# =============================================================================


def build_segments(events: Iterable[AttendanceEvent]) -> tuple[list[Segment], list[datetime]]:
    """Pair accepted CLOCK_IN/CLOCK_OUT events.

    Args:
        events: Events in any order; non-OK rows are skipped.

    Returns:
        Tuple of (completed segments, clock-in times of open shifts).
    """
    ordered = sorted(
        (e for e in events if e.status == EventStatus.OK.value),
        key=lambda e: (e.server_timestamp, str(e.id)),
    )

    segments: list[Segment] = []
    open_in: AttendanceEvent | None = None
    for event in ordered:
        if event.type == EventType.CLOCK_IN.value:
            # A second CLOCK_IN without a CLOCK_OUT replaces the first
            open_in = event
        elif event.type == EventType.CLOCK_OUT.value and open_in is not None:
            duration = event.server_timestamp - open_in.server_timestamp
            segments.append(
                Segment(
                    clock_in_at=open_in.server_timestamp,
                    clock_out_at=event.server_timestamp,
                    duration_ms=max(0, int(duration.total_seconds() * 1000)),
                    clock_in_method=open_in.verification_method,
                    clock_out_method=event.verification_method,
                    stored_shift_type=event.shift_type,
                    signed=event.signed_at is not None,
                    clock_out_event_id=event.id,
                )
            )
            open_in = None

    open_shifts = [open_in.server_timestamp] if open_in is not None else []
    return segments, open_shifts


def classify_shift(
    clock_in_at: datetime,
    tz: ZoneInfo,
    stored: str | None = None,
) -> ShiftType:
    """DAY or NIGHT for a segment.

    Args:
        clock_in_at: Segment start.
        tz: Local timezone of the site.
        stored: Classification recorded on the closing CLOCK_OUT.

    Returns:
        The stored classification if valid, else derived from the local
        clock-in hour.
    """
    if stored in (ShiftType.DAY.value, ShiftType.NIGHT.value):
        return ShiftType(stored)
    hour = clock_in_at.astimezone(tz).hour
    if DAY_SHIFT_START_HOUR <= hour < DAY_SHIFT_END_HOUR:
        return ShiftType.DAY
    return ShiftType.NIGHT


def verification_label(segments: Sequence[Segment]) -> str:
    """Render the day's verification methods as a single label.

    Each segment contributes its clock-in then clock-out method. Consecutive
    duplicates collapse; one distinct method renders alone, several render
    as an ordered transition ("Wi-Fi → Location").
    """
    sequence: list[str] = []
    for segment in segments:
        for method in (segment.clock_in_method, segment.clock_out_method):
            label = _METHOD_LABELS.get(method or "")
            if label is None:
                continue
            if not sequence or sequence[-1] != label:
                sequence.append(label)

    if not sequence:
        return EMPTY_CELL
    if len(set(sequence)) == 1:
        return sequence[0]
    return LABEL_SEPARATOR.join(sequence)


def _build_day_row(
    day: date,
    segments: list[Segment],
    in_progress: bool,
    tz: ZoneInfo,
    lunch_ms: int,
) -> DayRow:
    weekday = day.strftime("%A")
    if not segments:
        return DayRow(day=day, weekday=weekday, in_progress=in_progress)

    total_ms = sum(s.duration_ms for s in segments)
    first = min(segments, key=lambda s: s.clock_in_at)
    return DayRow(
        day=day,
        weekday=weekday,
        shift=classify_shift(first.clock_in_at, tz, first.stored_shift_type).value,
        first_in=first.clock_in_at,
        last_out=max(s.clock_out_at for s in segments),
        total_ms=total_ms,
        lunch_ms=lunch_ms,
        hours=max(0, total_ms - lunch_ms) / MS_PER_HOUR,
        verified_via=verification_label(segments),
        signed=any(s.signed for s in segments),
        segment_count=len(segments),
        in_progress=in_progress,
    )


def reconstruct_week(
    events: Iterable[AttendanceEvent],
    week_start: datetime,
    tz: ZoneInfo,
    lunch_minutes: int = DEFAULT_LUNCH_MINUTES,
) -> WeeklyTimecard:
    """Reconstruct one week from an event history.

    The seven rows are the calendar dates week_start.date() through +6,
    read as local dates in ``tz``. Segments whose local clock-in date is
    outside those dates are ignored, so callers may pass a widened history.

    Args:
        events: Accepted events (BLOCKED rows are skipped).
        week_start: Monday 00:00 UTC of the week.
        tz: Site timezone for day bucketing and shift classification.
        lunch_minutes: Flat lunch per worked day.

    Returns:
        WeeklyTimecard with exactly seven day rows and a totals row.
    """
    start_day = week_start.astimezone(UTC).date()
    days = [start_day + timedelta(days=offset) for offset in range(DAYS_PER_WEEK)]
    by_day: dict[date, list[Segment]] = {d: [] for d in days}
    open_days: set[date] = set()

    segments, open_shifts = build_segments(events)
    for segment in segments:
        local_day = segment.clock_in_at.astimezone(tz).date()
        if local_day in by_day:
            by_day[local_day].append(segment)
    for started_at in open_shifts:
        open_days.add(started_at.astimezone(tz).date())

    lunch_ms = lunch_minutes * 60_000
    rows = tuple(
        _build_day_row(d, by_day[d], d in open_days, tz, lunch_ms) for d in days
    )
    totals = TotalsRow(
        hours=sum(row.hours for row in rows),
        days_worked=sum(1 for row in rows if row.worked),
        signed_days=sum(1 for row in rows if row.signed),
    )
    return WeeklyTimecard(
        week_start=week_start,
        week_end=week_start + timedelta(days=DAYS_PER_WEEK),
        timezone=tz.key,
        days=rows,
        totals=totals,
    )


# =============================================================================
# Service
# =============================================================================


@dataclass(frozen=True)
class WorkerWeekSummary:
    """One worker's line in an agency's weekly summary."""

    user_id: uuid.UUID
    hours: float
    days_worked: int
    signed_days: int
    in_progress: bool


@dataclass(frozen=True)
class AgencyWeeklySummary:
    """Per-worker totals for every contractor an agency had on the clock."""

    agency: str
    week_start: datetime
    week_end: datetime
    timezone: str
    workers: tuple[WorkerWeekSummary, ...]

    @property
    def total_hours(self) -> float:
        return sum(w.hours for w in self.workers)


def _utcnow() -> datetime:
    return datetime.now(UTC)


class WeeklyTimecardService:
    """Loads events from the store and reconstructs a week.

    Args:
        events: Attendance event store.
        timezone: Site timezone.
        lunch_minutes: Flat lunch per worked day.
        clock: UTC "now" source for the relative week helpers.
    """

    def __init__(
        self,
        events: AttendanceEventStore,
        timezone: ZoneInfo,
        lunch_minutes: int = DEFAULT_LUNCH_MINUTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.events = events
        self.timezone = timezone
        self.lunch_minutes = lunch_minutes
        self._clock = clock

    def query_window(self, week_start: datetime) -> tuple[datetime, datetime]:
        """Event range to load for the week starting at ``week_start``.

        Rows are local calendar dates, so the window is widened around the
        local week boundaries (and the UTC ones, whichever lies further out).
        """
        start_day = week_start.astimezone(UTC).date()
        local_start = datetime.combine(start_day, time.min, tzinfo=self.timezone)
        local_end = datetime.combine(
            start_day + timedelta(days=DAYS_PER_WEEK), time.min, tzinfo=self.timezone
        )
        week_end = week_start + timedelta(days=DAYS_PER_WEEK)
        return (
            min(week_start, local_start) - QUERY_WIDENING,
            max(week_end, local_end) + QUERY_WIDENING,
        )

    async def get_weekly_rows(
        self,
        user_id: uuid.UUID,
        week_start: datetime,
        week_end: datetime | None = None,
        site_id: str | None = None,
        agency: str | None = None,
    ) -> WeeklyTimecard:
        """Reconstruct the week starting at ``week_start``.

        Args:
            user_id: Worker.
            week_start: Monday 00:00 UTC (other instants are snapped to
                their week's Monday).
            week_end: Exclusive end; must be week_start + 7 days if given.
            site_id: Optional site filter.
            agency: Only count events logged under this agency.

        Returns:
            WeeklyTimecard.

        Raises:
            ValueError: If week_end does not close a seven-day window.
        """
        start = week_start_for(week_start)
        end = start + timedelta(days=DAYS_PER_WEEK)
        if week_end is not None and week_end.astimezone(UTC) != end:
            raise ValueError("week_end must be exactly seven days after week_start")

        load_from, load_to = self.query_window(start)
        history = await self.events.list_accepted_between(
            user_id, load_from, load_to, site_id, agency
        )
        return reconstruct_week(history, start, self.timezone, self.lunch_minutes)

    async def get_relative_week(
        self,
        user_id: uuid.UUID,
        which: str = "this",
        site_id: str | None = None,
        agency: str | None = None,
    ) -> WeeklyTimecard:
        """Reconstruct "this" or "last" week relative to now."""
        now = self._clock()
        start, end = last_week_range(now) if which == "last" else this_week_range(now)
        return await self.get_weekly_rows(user_id, start, end, site_id, agency)

    def last_week_start(self) -> datetime:
        return last_week_range(self._clock())[0]

    async def get_agency_summary(
        self,
        agency: str,
        week_start: datetime,
    ) -> AgencyWeeklySummary:
        """Hours and days worked for each of an agency's workers in one week.

        Each worker's week is reconstructed with the same rules as their
        timecard. Workers with neither a worked day nor an open shift in
        the week are left out.

        Args:
            agency: Agency whose events are read.
            week_start: Any instant in the wanted week.

        Returns:
            AgencyWeeklySummary ordered by user id.
        """
        start = week_start_for(week_start)
        load_from, load_to = self.query_window(start)
        history = await self.events.list_accepted_for_agency(agency, load_from, load_to)

        by_user: dict[uuid.UUID, list[AttendanceEvent]] = {}
        for event in history:
            by_user.setdefault(event.user_id, []).append(event)

        workers = []
        for user_id in sorted(by_user, key=str):
            card = reconstruct_week(
                by_user[user_id], start, self.timezone, self.lunch_minutes
            )
            in_progress = any(day.in_progress for day in card.days)
            if card.totals.days_worked == 0 and not in_progress:
                continue
            workers.append(
                WorkerWeekSummary(
                    user_id=user_id,
                    hours=card.totals.hours,
                    days_worked=card.totals.days_worked,
                    signed_days=card.totals.signed_days,
                    in_progress=in_progress,
                )
            )

        return AgencyWeeklySummary(
            agency=agency,
            week_start=start,
            week_end=start + timedelta(days=DAYS_PER_WEEK),
            timezone=self.timezone.key,
            workers=tuple(workers),
        )
