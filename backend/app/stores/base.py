"""Store interfaces for the timeclock.

Services depend on these interfaces, never on a session or a module-level
singleton. Two implementations exist: SQL (production, wraps the
repositories) and in-memory (tests and local experiments).

WHY INTERFACES INSTEAD OF REPOSITORIES DIRECTLY:
- The punch gate needs an atomic claim-and-append whose locking differs
  between PostgreSQL and a process-local dict
- Services stay testable without a database
"""

import uuid
from abc import ABC, abstractmethod
from datetime import datetime

from app.models.attendance_event import AttendanceEvent
from app.models.contractor_profile import ContractorProfile
from app.models.punch_token import PunchToken


class AttendanceEventStore(ABC):
    """Append-only attendance event log."""

    @abstractmethod
    async def append(self, event: AttendanceEvent) -> AttendanceEvent:
        """Persist an event unconditionally (used for BLOCKED audit rows).

        The write is durable once this returns, independent of whatever
        the caller does next.
        """

    @abstractmethod
    async def append_accepted(
        self,
        event: AttendanceEvent,
        idempotency_since: datetime,
    ) -> bool:
        """Atomically claim the event's idempotency key and persist it.

        Under a lock scoped to (user, key), re-checks that no OK event by
        the same user carries the key at or after ``idempotency_since``
        and, if none does, writes the event.

        Args:
            event: OK event with idempotency_key set.
            idempotency_since: Start of the reuse window.

        Returns:
            True if written, False if the key was already claimed.
        """

    @abstractmethod
    async def has_accepted_key(
        self,
        user_id: uuid.UUID,
        idempotency_key: str,
        since: datetime,
    ) -> bool:
        """True if an OK event by ``user_id`` carries the key since ``since``."""

    @abstractmethod
    async def list_recent_accepted(
        self,
        user_id: uuid.UUID,
        limit: int,
    ) -> list[AttendanceEvent]:
        """Up to ``limit`` most recent OK events, oldest first."""

    @abstractmethod
    async def list_accepted_between(
        self,
        user_id: uuid.UUID,
        start: datetime,
        end: datetime,
        site_id: str | None = None,
        agency: str | None = None,
    ) -> list[AttendanceEvent]:
        """OK events in [start, end), oldest first, optionally for one agency."""

    @abstractmethod
    async def list_accepted_for_agency(
        self,
        agency: str,
        start: datetime,
        end: datetime,
    ) -> list[AttendanceEvent]:
        """OK events of every worker under ``agency`` in [start, end), oldest first."""

    @abstractmethod
    async def get(self, event_id: uuid.UUID) -> AttendanceEvent | None:
        """Fetch one event by id."""

    @abstractmethod
    async def attach_signature(
        self,
        event_id: uuid.UUID,
        signed_at: datetime,
        signature_image: str,
    ) -> bool:
        """Set the signature pair on an unsigned OK CLOCK_OUT.

        Returns:
            True if the event was updated, False if it no longer qualifies.
        """

    @abstractmethod
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
        """Filtered, paginated event log, newest first, with total count."""


class PunchTokenStore(ABC):
    """Device-bound punch token persistence (hashes only)."""

    @abstractmethod
    async def rotate(self, token: PunchToken, now: datetime) -> PunchToken:
        """Revoke the pair's active token and insert ``token`` atomically.

        After this returns, ``token`` is the only non-revoked token for
        its (user_id, device_id).
        """

    @abstractmethod
    async def find_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        token_hash: str,
        now: datetime,
    ) -> PunchToken | None:
        """Live token matching hash and binding, if any."""

    @abstractmethod
    async def mark_seen(self, token_id: uuid.UUID, seen_at: datetime) -> None:
        """Stamp last_seen_at."""

    @abstractmethod
    async def revoke_active(
        self,
        user_id: uuid.UUID,
        device_id: str,
        now: datetime,
    ) -> int:
        """Revoke the pair's live token(s). Returns the number revoked."""

    @abstractmethod
    async def delete_expired(self, before: datetime) -> int:
        """Remove tokens that expired before ``before``."""


class ContractorProfileStore(ABC):
    """Read-only access to contractor eligibility."""

    @abstractmethod
    async def get_by_user(self, user_id: uuid.UUID) -> ContractorProfile | None:
        """Profile for ``user_id``, if one exists."""
