"""Agency-facing read API.

Staffing agencies read the attendance log for their own contractors only.
Each agency authenticates with its own bearer key; the agency is derived
from the key, never from a query parameter.
"""

import uuid
from datetime import UTC, date, datetime, time
from typing import Annotated, Literal

from fastapi import APIRouter, Depends, Query

from app.api.deps import CurrentAgency, EventStore, TimecardService
from app.core.errors import NotFoundError
from app.core.pagination import PaginationParams, pagination_params
from app.core.responses import DataResponse, ListResponse, PaginationMeta
from app.schemas.timeclock import (
    AgencyWeeklySummaryRead,
    TimeRecordRead,
    WeeklyTimecardRead,
)

router = APIRouter()

Pagination = Annotated[PaginationParams, Depends(pagination_params)]

DateFrom = Annotated[
    datetime | None,
    Query(description="Range start, inclusive (ISO 8601)"),
]
DateTo = Annotated[
    datetime | None,
    Query(description="Range end, exclusive (ISO 8601)"),
]
UserFilter = Annotated[uuid.UUID | None, Query(description="Filter by worker")]
StatusFilter = Annotated[
    Literal["OK", "BLOCKED"] | None,
    Query(description="Filter by outcome"),
]
DriftFilter = Annotated[
    bool | None,
    Query(description="Only events with (true) or without (false) a drift flag"),
]
WeekStart = Annotated[
    date | None,
    Query(description="Any date in the wanted week; defaults to last week"),
]


def _aware(moment: datetime | None) -> datetime | None:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=UTC)
    return moment


@router.get("/time-records")
async def list_time_records(
    agency: CurrentAgency,
    events: EventStore,
    pagination: Pagination,
    date_from: DateFrom = None,
    date_to: DateTo = None,
    user_id: UserFilter = None,
    status: StatusFilter = None,
    drift_flagged: DriftFilter = None,
) -> ListResponse[TimeRecordRead]:
    """Paginated attendance events (accepted and blocked) for the agency."""
    rows, total = await events.list_events(
        agency=agency,
        user_id=user_id,
        status=status,
        drift_flagged=drift_flagged,
        start=_aware(date_from),
        end=_aware(date_to),
        offset=pagination.offset,
        limit=pagination.limit,
    )
    return ListResponse(
        data=[TimeRecordRead.model_validate(e) for e in rows],
        meta=PaginationMeta(
            total=total,
            page=pagination.page,
            per_page=pagination.per_page,
        ),
    )


@router.get("/timecards/{user_id}")
async def get_worker_timecard(
    user_id: uuid.UUID,
    agency: CurrentAgency,
    events: EventStore,
    timecards: TimecardService,
    week_start: WeekStart = None,
) -> DataResponse[WeeklyTimecardRead]:
    """Weekly timecard for one of the agency's workers.

    Only events logged under the calling agency count toward the hours.

    Raises:
        NotFoundError: The worker has no events under this agency.
    """
    _, total = await events.list_events(agency=agency, user_id=user_id, limit=1)
    if total == 0:
        raise NotFoundError("Worker", str(user_id))

    if week_start is not None:
        card = await timecards.get_weekly_rows(
            user_id,
            datetime.combine(week_start, time.min, tzinfo=UTC),
            agency=agency,
        )
    else:
        card = await timecards.get_relative_week(user_id, "last", agency=agency)
    return DataResponse(data=WeeklyTimecardRead.from_timecard(card))


@router.get("/weekly-summary")
async def get_weekly_summary(
    agency: CurrentAgency,
    timecards: TimecardService,
    week_start: WeekStart = None,
) -> DataResponse[AgencyWeeklySummaryRead]:
    """Hours and days worked per contractor for one week."""
    if week_start is not None:
        start = datetime.combine(week_start, time.min, tzinfo=UTC)
    else:
        start = timecards.last_week_start()
    summary = await timecards.get_agency_summary(agency, start)
    return DataResponse(data=AgencyWeeklySummaryRead.from_summary(summary))
