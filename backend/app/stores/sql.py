"""SQLAlchemy-backed store implementations.

Thin adapters over the static-method repositories. The event store commits
after each write: an audit row must survive even though the request that
produced it ends in an error response (and get_db rolls back on error).
"""

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.attendance_event import AttendanceEvent
from app.models.contractor_profile import ContractorProfile
from app.models.punch_token import PunchToken
from app.repositories.attendance_event_repository import AttendanceEventRepository
from app.repositories.contractor_profile_repository import (
    ContractorProfileRepository,
)
from app.repositories.punch_token_repository import PunchTokenRepository
from app.stores.base import (
    AttendanceEventStore,
    ContractorProfileStore,
    PunchTokenStore,
)

logger = logging.getLogger(__name__)


class SqlAttendanceEventStore(AttendanceEventStore):
    """Event log on the attendance_events table.

    Args:
        db: Request-scoped async session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def append(self, event: AttendanceEvent) -> AttendanceEvent:
        await AttendanceEventRepository.create(self.db, event)
        await self.db.commit()
        return event

    async def append_accepted(
        self,
        event: AttendanceEvent,
        idempotency_since: datetime,
    ) -> bool:
        key = event.idempotency_key or ""
        # Lock is transaction-scoped: released by the commit/rollback below
        await AttendanceEventRepository.lock_idempotency_key(
            self.db, event.user_id, key
        )
        if await AttendanceEventRepository.has_accepted_key(
            self.db, event.user_id, key, idempotency_since
        ):
            # Commit (not rollback) releases the lock without expiring
            # instances the caller already loaded
            await self.db.commit()
            return False
        await AttendanceEventRepository.create(self.db, event)
        await self.db.commit()
        return True

    async def has_accepted_key(
        self,
        user_id: uuid.UUID,
        idempotency_key: str,
        since: datetime,
    ) -> bool:
        return await AttendanceEventRepository.has_accepted_key(
            self.db, user_id, idempotency_key, since
        )

    async def list_recent_accepted(
        self,
        user_id: uuid.UUID,
        limit: int,
    ) -> list[AttendanceEvent]:
        return await AttendanceEventRepository.list_recent_accepted(
            self.db, user_id, limit
        )

    async def list_accepted_between(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        site_id: str | None = None,
        agency: str | None = None,
    ) -> list[AttendanceEvent]:
        return await AttendanceEventRepository.list_accepted_between(
            self.db, user_id, start, end, site_id, agency
        )

    async def list_accepted_for_agency(
        self,
        agency: str,
        start: datetime,
        end: datetime,
    ) -> list[AttendanceEvent]:
        return await AttendanceEventRepository.list_accepted_for_agency(
            self.db, agency, start, end
        )

    async def get(self, event_id: uuid.UUID) -> AttendanceEvent | None:
        return await AttendanceEventRepository.get_by_id(self.db, event_id)

    async def attach_signature(
        self,
        event_id: uuid.UUID,
        signed_at: datetime,
        signature_image: str,
    ) -> bool:
        updated = await AttendanceEventRepository.set_signature(
            self.db,
            event_id,
            signed_at=signed_at,
            signature_image=signature_image,
        )
        if updated:
            await self.db.commit()
            # The bulk UPDATE bypasses the identity map
            event = await AttendanceEventRepository.get_by_id(self.db, event_id)
            if event is not None:
                await self.db.refresh(event)
        return updated

    async def list_events(
        self,
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
        return await AttendanceEventRepository.list_filtered(
            self.db,
            agency=agency,
            user_id=user_id,
            status=status,
            drift_flagged=drift_flagged,
            start=start,
            end=end,
            offset=offset,
            limit=limit,
        )


class SqlPunchTokenStore(PunchTokenStore):
    """Token store on the punch_tokens table.

    Args:
        db: Request-scoped async session.
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _revoke_and_insert(self, token: PunchToken, now: datetime) -> None:
        await PunchTokenRepository.revoke_active(
            self.db,
            user_id=token.user_id,
            device_id=token.device_id,
            revoked_at=now,
        )
        await PunchTokenRepository.create(self.db, token)
        await self.db.commit()

    async def rotate(self, token: PunchToken, now: datetime) -> PunchToken:
        if token.issued_at is None:
            token.issued_at = now
        try:
            await self._revoke_and_insert(token, now)
        except IntegrityError:
            # A concurrent issuance for the same pair won the partial unique
            # index. Retry once: our revoke now covers the winner's row.
            await self.db.rollback()
            logger.info(
                "Punch token issuance raced for user %s; retrying", token.user_id
            )
            await self._revoke_and_insert(token, now)
        return token

    async def find_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        token_hash: str,
        now: datetime,
    ) -> PunchToken | None:
        return await PunchTokenRepository.find_active(
            self.db,
            user_id=user_id,
            device_id=device_id,
            token_hash=token_hash,
            now=now,
        )

    async def mark_seen(self, token_id: uuid.UUID, seen_at: datetime) -> None:
        await PunchTokenRepository.mark_seen(self.db, token_id, seen_at)
        await self.db.commit()

    async def revoke_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        now: datetime,
    ) -> int:
        revoked = await PunchTokenRepository.revoke_active(
            self.db, user_id=user_id, device_id=device_id, revoked_at=now
        )
        await self.db.commit()
        return revoked

    async def delete_expired(self, before: datetime) -> int:
        deleted = await PunchTokenRepository.delete_expired(self.db, before)
        await self.db.commit()
        if deleted:
            logger.info("Purged %d expired punch tokens", deleted)
        return deleted


class SqlContractorProfileStore(ContractorProfileStore):
    """Profile lookups on the contractor_profiles table."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get_by_user(self, user_id: uuid.UUID) -> ContractorProfile | None:
        return await ContractorProfileRepository.get_by_user_id(self.db, user_id)
