"""In-memory store implementations.

Safe for concurrent coroutines on one event loop: every compound operation
runs under an asyncio.Lock scoped to the key it touches. Not shared between
processes, and state is lost on restart.
"""

import asyncio
import uuid
from collections.abc import Iterable
from datetime import datetime

from app.models.attendance_event import AttendanceEvent
from app.models.contractor_profile import ContractorProfile
from app.models.punch_token import PunchToken
from app.services.timeclock_types import EventStatus, EventType
from app.stores.base import (
    AttendanceEventStore,
    ContractorProfileStore,
    PunchTokenStore,
)


class _KeyedLocks:
    """Lazily created asyncio locks, one per key."""

    def __init__(self) -> None:
        self._locks: dict[object, asyncio.Lock] = {}

    def get(self, key: object) -> asyncio.Lock:
        return self._locks.setdefault(key, asyncio.Lock())


def _sort_key(event: AttendanceEvent) -> tuple[datetime, str]:
    return event.server_timestamp, str(event.id)


class InMemoryAttendanceEventStore(AttendanceEventStore):
    """List-backed event log."""

    def __init__(self, events: Iterable[AttendanceEvent] = ()) -> None:
        self._events: list[AttendanceEvent] = []
        self._key_locks = _KeyedLocks()
        for event in events:
            self._insert(event)

    @property
    def events(self) -> list[AttendanceEvent]:
        """Every stored event in insertion order (for assertions)."""
        return list(self._events)

    def _insert(self, event: AttendanceEvent) -> AttendanceEvent:
        if event.id is None:
            event.id = uuid.uuid4()
        self._events.append(event)
        return event

    def _claimed(self, user_id: uuid.UUID, key: str, since: datetime) -> bool:
        return any(
            e.user_id == user_id
            and e.idempotency_key == key
            and e.status == EventStatus.OK.value
            and e.server_timestamp >= since
            for e in self._events
        )

    async def append(self, event: AttendanceEvent) -> AttendanceEvent:
        return self._insert(event)

    async def append_accepted(
        self,
        event: AttendanceEvent,
        idempotency_since: datetime,
    ) -> bool:
        key = event.idempotency_key or ""
        async with self._key_locks.get((event.user_id, key)):
            if self._claimed(event.user_id, key, idempotency_since):
                return False
            self._insert(event)
            return True

    async def has_accepted_key(
        self,
        user_id: uuid.UUID,
        idempotency_key: str,
        since: datetime,
    ) -> bool:
        return self._claimed(user_id, idempotency_key, since)

    async def list_recent_accepted(
        self,
        user_id: uuid.UUID,
        limit: int,
    ) -> list[AttendanceEvent]:
        accepted = sorted(
            (
                e
                for e in self._events
                if e.user_id == user_id and e.status == EventStatus.OK.value
            ),
            key=_sort_key,
        )
        return accepted[-limit:] if limit > 0 else []

    async def list_accepted_between(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        site_id: str | None = None,
        agency: str | None = None,
    ) -> list[AttendanceEvent]:
        return sorted(
            (
                e
                for e in self._events
                if e.user_id == user_id
                and e.status == EventStatus.OK.value
                and start <= e.server_timestamp < end
                and (site_id is None or e.site_id == site_id)
                and (agency is None or e.agency == agency)
            ),
            key=_sort_key,
        )

    async def list_accepted_for_agency(
        self,
        agency: str,
        start: datetime,
        end: datetime,
    ) -> list[AttendanceEvent]:
        return sorted(
            (
                e
                for e in self._events
                if e.agency == agency
                and e.status == EventStatus.OK.value
                and start <= e.server_timestamp < end
            ),
            key=_sort_key,
        )

    async def get(self, event_id: uuid.UUID) -> AttendanceEvent | None:
        for event in self._events:
            if event.id == event_id:
                return event
        return None

    async def attach_signature(
        self,
        event_id: uuid.UUID,
        signed_at: datetime,
        signature_image: str,
    ) -> bool:
        async with self._key_locks.get(("signature", event_id)):
            event = await self.get(event_id)
            if (
                event is None
                or event.type != EventType.CLOCK_OUT.value
                or event.status != EventStatus.OK.value
                or event.signed_at is not None
            ):
                return False
            event.signed_at = signed_at
            event.signature_image = signature_image
            return True

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
        matches = [
            e
            for e in self._events
            if (agency is None or e.agency == agency)
            and (user_id is None or e.user_id == user_id)
            and (status is None or e.status == status)
            and (drift_flagged is None or bool(e.drift_flag) is drift_flagged)
            and (start is None or e.server_timestamp >= start)
            and (end is None or e.server_timestamp < end)
        ]
        matches.sort(key=_sort_key, reverse=True)
        return matches[offset : offset + limit], len(matches)


class InMemoryPunchTokenStore(PunchTokenStore):
    """Dict-backed token store keyed by token id."""

    def __init__(self) -> None:
        self._tokens: dict[uuid.UUID, PunchToken] = {}
        self._pair_locks = _KeyedLocks()

    @property
    def tokens(self) -> list[PunchToken]:
        """Every stored token (for assertions)."""
        return list(self._tokens.values())

    def _revoke_pair(self, user_id: uuid.UUID, device_id: str, now: datetime) -> int:
        revoked = 0
        for token in self._tokens.values():
            if (
                token.user_id == user_id
                and token.device_id == device_id
                and token.revoked_at is None
            ):
                token.revoked_at = now
                revoked += 1
        return revoked

    async def rotate(self, token: PunchToken, now: datetime) -> PunchToken:
        async with self._pair_locks.get((token.user_id, token.device_id)):
            self._revoke_pair(token.user_id, token.device_id, now)
            if token.id is None:
                token.id = uuid.uuid4()
            if token.issued_at is None:
                token.issued_at = now
            self._tokens[token.id] = token
            return token

    async def find_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        token_hash: str,
        now: datetime,
    ) -> PunchToken | None:
        for token in self._tokens.values():
            if (
                token.token_hash == token_hash
                and token.user_id == user_id
                and token.device_id == device_id
                and token.is_active(now)
            ):
                return token
        return None

    async def mark_seen(self, token_id: uuid.UUID, seen_at: datetime) -> None:
        token = self._tokens.get(token_id)
        if token is not None:
            token.last_seen_at = seen_at

    async def revoke_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        now: datetime,
    ) -> int:
        async with self._pair_locks.get((user_id, device_id)):
            return self._revoke_pair(user_id, device_id, now)

    async def delete_expired(self, before: datetime) -> int:
        expired = [tid for tid, t in self._tokens.items() if t.expires_at < before]
        for token_id in expired:
            del self._tokens[token_id]
        return len(expired)


class InMemoryContractorProfileStore(ContractorProfileStore):
    """Dict-backed profile lookup keyed by user id."""

    def __init__(self, profiles: Iterable[ContractorProfile] = ()) -> None:
        self._profiles: dict[uuid.UUID, ContractorProfile] = {}
        for profile in profiles:
            self.put(profile)

    def put(self, profile: ContractorProfile) -> None:
        """Insert or replace a profile (test setup)."""
        if profile.id is None:
            profile.id = uuid.uuid4()
        self._profiles[profile.user_id] = profile

    async def get_by_user(self, user_id: uuid.UUID) -> ContractorProfile | None:
        return self._profiles.get(user_id)
