"""Repository for AttendanceEvent operations.

The table is append-only: there is an insert, a family of reads, and one
narrowly-conditioned update for the CLOCK_OUT signature pair. Nothing here
deletes events.
"""

import uuid
from datetime import datetime

from sqlalchemy import ColumnElement, func, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.attendance_event import AttendanceEvent
from app.services.timeclock_types import EventStatus, EventType


class AttendanceEventRepository:
    """Stateless repository for AttendanceEvent table operations.

    All methods are static; no instance state. Pass an AsyncSession
    for every call so the caller controls transaction boundaries.
    """

    @staticmethod
    async def create(db: AsyncSession, event: AttendanceEvent) -> AttendanceEvent:
        """Insert a fully-populated event.

        Args:
            db: Async database session.
            event: Event with every column the caller cares about set.

        Returns:
            The same event, flushed.
        """
        db.add(event)
        await db.flush()
        return event

    @staticmethod
    async def lock_idempotency_key(
        db: AsyncSession,
        user_id: uuid.UUID,
        idempotency_key: str,
    ) -> None:
        """Take a transaction-scoped advisory lock on (user, key).

        Concurrent claims of the same key serialize here; the lock is
        released when the surrounding transaction commits or rolls back.

        Args:
            db: Async database session.
            user_id: Key owner.
            idempotency_key: Client-supplied key.
        """
        await db.execute(
            text("SELECT pg_advisory_xact_lock(hashtextextended(:lock_key, 0))"),
            {"lock_key": f"{user_id}:{idempotency_key}"},
        )

    @staticmethod
    async def has_accepted_key(
        db: AsyncSession,
        user_id: uuid.UUID,
        idempotency_key: str,
        since: datetime,
    ) -> bool:
        """Check whether an OK event by this user carries the key since ``since``.

        Args:
            db: Async database session.
            user_id: Key owner.
            idempotency_key: Client-supplied key.
            since: Start of the reuse window (inclusive).

        Returns:
            True if the key has already been claimed in the window.
        """
        stmt = (
            select(AttendanceEvent.id)
            .where(
                AttendanceEvent.user_id == user_id,
                AttendanceEvent.idempotency_key == idempotency_key,
                AttendanceEvent.status == EventStatus.OK.value,
                AttendanceEvent.server_timestamp >= since,
            )
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def list_recent_accepted(
        db: AsyncSession,
        user_id: uuid.UUID,
        limit: int,
    ) -> list[AttendanceEvent]:
        """Most recent OK events for a user, returned oldest first.

        Args:
            db: Async database session.
            user_id: Event owner.
            limit: Maximum number of events.

        Returns:
            Up to ``limit`` events in ascending server_timestamp order.
        """
        stmt = (
            select(AttendanceEvent)
            .where(
                AttendanceEvent.user_id == user_id,
                AttendanceEvent.status == EventStatus.OK.value,
            )
            .order_by(
                AttendanceEvent.server_timestamp.desc(),
                AttendanceEvent.id.desc(),
            )
            .limit(limit)
        )
        result = await db.execute(stmt)
        events = list(result.scalars().all())
        events.reverse()
        return events

    @staticmethod
    async def list_accepted_between(
        db: AsyncSession,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        site_id: str | None = None,
        agency: str | None = None,
    ) -> list[AttendanceEvent]:
        """OK events for a user in [start, end), oldest first.

        Args:
            db: Async database session.
            user_id: Event owner.
            start: Range start (inclusive).
            end: Range end (exclusive).
            site_id: Optional site filter.
            agency: Optional agency filter.

        Returns:
            Events ordered by server_timestamp.
        """
        conditions = [
            AttendanceEvent.user_id == user_id,
            AttendanceEvent.status == EventStatus.OK.value,
            AttendanceEvent.server_timestamp >= start,
            AttendanceEvent.server_timestamp < end,
        ]
        if site_id is not None:
            conditions.append(AttendanceEvent.site_id == site_id)
        if agency is not None:
            conditions.append(AttendanceEvent.agency == agency)

        stmt = (
            select(AttendanceEvent)
            .where(*conditions)
            .order_by(AttendanceEvent.server_timestamp, AttendanceEvent.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def list_accepted_for_agency(
        db: AsyncSession,
        agency: str,
        start: datetime,
        end: datetime,
    ) -> list[AttendanceEvent]:
        """OK events of every worker under an agency in [start, end).

        Returns:
            Events ordered by server_timestamp.
        """
        stmt = (
            select(AttendanceEvent)
            .where(
                AttendanceEvent.agency == agency,
                AttendanceEvent.status == EventStatus.OK.value,
                AttendanceEvent.server_timestamp >= start,
                AttendanceEvent.server_timestamp < end,
            )
            .order_by(AttendanceEvent.server_timestamp, AttendanceEvent.id)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    @staticmethod
    async def get_by_id(
        db: AsyncSession,
        event_id: uuid.UUID,
    ) -> AttendanceEvent | None:
        """Fetch one event by id."""
        result = await db.execute(
            select(AttendanceEvent).where(AttendanceEvent.id == event_id)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def set_signature(
        db: AsyncSession,
        event_id: uuid.UUID,
        *,
        signed_at: datetime,
        signature_image: str,
    ) -> bool:
        """Set the signature pair on an unsigned OK CLOCK_OUT.

        The WHERE clause carries every precondition, so two concurrent
        attaches cannot both succeed.

        Args:
            db: Async database session.
            event_id: Target event.
            signed_at: Signature timestamp.
            signature_image: PNG data URL.

        Returns:
            True if a row was updated.
        """
        stmt = (
            update(AttendanceEvent)
            .where(
                AttendanceEvent.id == event_id,
                AttendanceEvent.type == EventType.CLOCK_OUT.value,
                AttendanceEvent.status == EventStatus.OK.value,
                AttendanceEvent.signed_at.is_(None),
            )
            .values(signed_at=signed_at, signature_image=signature_image)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count == 1

    @staticmethod
    async def list_filtered(
        db: AsyncSession,
        *,
        agency: str | None = None,
        user_id: uuid.UUID | None = None,
        status: str | None = None,
        drift_flagged: bool | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[AttendanceEvent], int]:
        """List events (accepted and blocked) with filters and pagination.

        Args:
            db: Async database session.
            agency: Optional agency filter.
            user_id: Optional worker filter.
            status: Optional OK/BLOCKED filter.
            drift_flagged: Optional drift flag filter.
            start: Optional range start (inclusive).
            end: Optional range end (exclusive).
            offset: Number of records to skip.
            limit: Maximum records to return.

        Returns:
            Tuple of (events newest first, total count).
        """
        conditions: list[ColumnElement[bool]] = []
        if agency is not None:
            conditions.append(AttendanceEvent.agency == agency)
        if user_id is not None:
            conditions.append(AttendanceEvent.user_id == user_id)
        if status is not None:
            conditions.append(AttendanceEvent.status == status)
        # NULL drift_flag (no client timestamp) counts as not flagged
        if drift_flagged is True:
            conditions.append(AttendanceEvent.drift_flag.is_(True))
        elif drift_flagged is False:
            conditions.append(AttendanceEvent.drift_flag.is_not(True))
        if start is not None:
            conditions.append(AttendanceEvent.server_timestamp >= start)
        if end is not None:
            conditions.append(AttendanceEvent.server_timestamp < end)

        count_stmt = select(func.count()).select_from(AttendanceEvent).where(*conditions)
        total_result = await db.execute(count_stmt)
        total = total_result.scalar_one()

        data_stmt = (
            select(AttendanceEvent)
            .where(*conditions)
            .order_by(
                AttendanceEvent.server_timestamp.desc(),
                AttendanceEvent.id.desc(),
            )
            .offset(offset)
            .limit(limit)
        )
        result = await db.execute(data_stmt)
        return list(result.scalars().all()), total
