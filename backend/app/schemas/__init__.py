"""Pydantic request/response schemas for API endpoints."""

from app.schemas.timeclock import (
    AgencyWeeklySummaryRead,
    AttendanceEventRead,
    ClockStateRead,
    DayRowRead,
    EligibilityRead,
    GeoPoint,
    MyTimesRead,
    PunchAcceptedRead,
    PunchSubmitRequest,
    PunchTokenRead,
    PunchTokenRevokeRead,
    SignatureRequest,
    TimeRecordRead,
    TotalsRowRead,
    WeeklyTimecardRead,
    WorkerWeekSummaryRead,
)

__all__ = [
    # Requests
    "GeoPoint",
    "PunchSubmitRequest",
    "SignatureRequest",
    # Responses
    "AgencyWeeklySummaryRead",
    "AttendanceEventRead",
    "ClockStateRead",
    "DayRowRead",
    "EligibilityRead",
    "MyTimesRead",
    "PunchAcceptedRead",
    "PunchTokenRead",
    "PunchTokenRevokeRead",
    "TimeRecordRead",
    "TotalsRowRead",
    "WeeklyTimecardRead",
    "WorkerWeekSummaryRead",
]
