"""Tests for the agency read API.

Each agency authenticates with its own bearer key and only ever sees its
own contractors' events.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from httpx import AsyncClient

from app.services.timeclock_types import EventStatus, EventType
from app.stores import InMemoryAttendanceEventStore
from tests.conftest import (
    TEST_AGENCY_KEY,
    TEST_OTHER_AGENCY_KEY,
    TEST_USER_ID,
    USER_B_ID,
    make_event,
)

_BASE = "/api/v1/agency"
_MONDAY = datetime(2026, 3, 2, 14, 0, tzinfo=UTC)


def _bearer(key: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {key}"}


@pytest_asyncio.fixture
async def seeded(
    event_store: InMemoryAttendanceEventStore,
) -> InMemoryAttendanceEventStore:
    """One shift plus a blocked attempt for TEST_USER_ID, one punch for User B."""
    for event in (
        make_event(EventType.CLOCK_IN, _MONDAY),
        make_event(
            EventType.CLOCK_IN,
            _MONDAY + timedelta(minutes=1),
            status=EventStatus.BLOCKED,
            drift_flag=True,
        ),
        make_event(EventType.CLOCK_OUT, _MONDAY + timedelta(hours=8, minutes=30)),
        make_event(EventType.CLOCK_IN, _MONDAY, user_id=USER_B_ID, agency="STAFF_FORCE"),
    ):
        await event_store.append(event)
    return event_store


class TestAgencyAuth:
    async def test_missing_key_is_401(self, client: AsyncClient):
        response = await client.get(f"{_BASE}/time-records")
        assert response.status_code == 401

    async def test_unknown_key_is_401(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/time-records", headers=_bearer("not-a-real-key")
        )
        assert response.status_code == 401

    async def test_non_bearer_scheme_is_401(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/time-records",
            headers={"Authorization": f"Basic {TEST_AGENCY_KEY}"},
        )
        assert response.status_code == 401


@pytest.mark.usefixtures("seeded")
class TestTimeRecords:
    async def test_agency_sees_only_its_contractors(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/time-records", headers=_bearer(TEST_AGENCY_KEY)
        )

        assert response.status_code == 200
        body = response.json()
        assert body["meta"]["total"] == 3
        assert {row["agency"] for row in body["data"]} == {"PROLOGISTIX"}
        assert {row["user_id"] for row in body["data"]} == {str(TEST_USER_ID)}

    async def test_other_agency_is_isolated(self, client: AsyncClient):
        body = (
            await client.get(
                f"{_BASE}/time-records", headers=_bearer(TEST_OTHER_AGENCY_KEY)
            )
        ).json()

        assert body["meta"]["total"] == 1
        assert body["data"][0]["user_id"] == str(USER_B_ID)

    async def test_newest_first_with_verification_inputs(self, client: AsyncClient):
        rows = (
            await client.get(f"{_BASE}/time-records", headers=_bearer(TEST_AGENCY_KEY))
        ).json()["data"]

        assert rows[0]["type"] == "CLOCK_OUT"
        assert "ip_address" in rows[0]
        assert "wifi_verified" in rows[0]
        assert "signature_image" not in rows[0]

    async def test_status_filter(self, client: AsyncClient):
        body = (
            await client.get(
                f"{_BASE}/time-records",
                params={"status": "BLOCKED"},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()

        assert body["meta"]["total"] == 1
        assert body["data"][0]["reason"] == "INVALID_STATE"

    async def test_drift_filter(self, client: AsyncClient):
        flagged = (
            await client.get(
                f"{_BASE}/time-records",
                params={"drift_flagged": "true"},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()
        unflagged = (
            await client.get(
                f"{_BASE}/time-records",
                params={"drift_flagged": "false"},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()

        assert flagged["meta"]["total"] == 1
        assert unflagged["meta"]["total"] == 2

    async def test_date_range_is_half_open(self, client: AsyncClient):
        body = (
            await client.get(
                f"{_BASE}/time-records",
                params={
                    "date_from": _MONDAY.isoformat(),
                    "date_to": (_MONDAY + timedelta(hours=8, minutes=30)).isoformat(),
                },
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()

        assert body["meta"]["total"] == 2

    async def test_pagination_meta(self, client: AsyncClient):
        body = (
            await client.get(
                f"{_BASE}/time-records",
                params={"page": 2, "per_page": 2},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()

        assert body["meta"] == {"total": 3, "page": 2, "per_page": 2, "total_pages": 2}
        assert len(body["data"]) == 1

    async def test_per_page_above_max_is_400(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/time-records",
            params={"per_page": 500},
            headers=_bearer(TEST_AGENCY_KEY),
        )
        assert response.status_code == 400


@pytest.mark.usefixtures("seeded")
class TestWorkerTimecard:
    async def test_timecard_for_own_worker(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/timecards/{TEST_USER_ID}",
            params={"week_start": "2026-03-02"},
            headers=_bearer(TEST_AGENCY_KEY),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        monday = data["days"][0]
        assert monday["hours"] == pytest.approx(8.0)
        assert monday["shift"] == "DAY"
        assert data["totals"]["days_worked"] == 1

    async def test_other_agencys_worker_is_404(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/timecards/{USER_B_ID}",
            headers=_bearer(TEST_AGENCY_KEY),
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    async def test_hours_logged_under_another_agency_are_hidden(
        self,
        client: AsyncClient,
        event_store: InMemoryAttendanceEventStore,
    ):
        tuesday = _MONDAY + timedelta(days=1)
        for event in (
            make_event(EventType.CLOCK_IN, tuesday, agency="STAFF_FORCE"),
            make_event(
                EventType.CLOCK_OUT,
                tuesday + timedelta(hours=8, minutes=30),
                agency="STAFF_FORCE",
            ),
        ):
            await event_store.append(event)

        data = (
            await client.get(
                f"{_BASE}/timecards/{TEST_USER_ID}",
                params={"week_start": "2026-03-02"},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()["data"]

        assert data["days"][1]["hours"] == 0.0
        assert data["totals"]["days_worked"] == 1
        assert data["totals"]["hours"] == pytest.approx(8.0)


@pytest.mark.usefixtures("seeded")
class TestWeeklySummary:
    async def test_summary_lists_agency_workers(self, client: AsyncClient):
        response = await client.get(
            f"{_BASE}/weekly-summary",
            params={"week_start": "2026-03-04"},
            headers=_bearer(TEST_AGENCY_KEY),
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["agency"] == "PROLOGISTIX"
        assert data["week_start"].startswith("2026-03-02")
        assert data["total_hours"] == pytest.approx(8.0)
        assert data["workers"] == [
            {
                "user_id": str(TEST_USER_ID),
                "hours": pytest.approx(8.0),
                "days_worked": 1,
                "signed_days": 0,
                "in_progress": False,
            }
        ]

    async def test_other_agency_sees_its_open_shift_only(self, client: AsyncClient):
        data = (
            await client.get(
                f"{_BASE}/weekly-summary",
                params={"week_start": "2026-03-02"},
                headers=_bearer(TEST_OTHER_AGENCY_KEY),
            )
        ).json()["data"]

        assert [w["user_id"] for w in data["workers"]] == [str(USER_B_ID)]
        assert data["workers"][0]["in_progress"] is True
        assert data["total_hours"] == 0.0

    async def test_empty_week(self, client: AsyncClient):
        data = (
            await client.get(
                f"{_BASE}/weekly-summary",
                params={"week_start": "2026-04-06"},
                headers=_bearer(TEST_AGENCY_KEY),
            )
        ).json()["data"]

        assert data["workers"] == []

    async def test_requires_agency_key(self, client: AsyncClient):
        response = await client.get(f"{_BASE}/weekly-summary")
        assert response.status_code == 401
