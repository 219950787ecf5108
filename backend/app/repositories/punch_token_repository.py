"""Repository for PunchToken operations.

Tokens are looked up by SHA-256 hash only; the raw value never reaches the
database.
"""

import uuid
from datetime import datetime

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.punch_token import PunchToken


class PunchTokenRepository:
    """Stateless repository for PunchToken table operations.

    All methods are static; no instance state.
    """

    @staticmethod
    async def create(db: AsyncSession, token: PunchToken) -> PunchToken:
        """Insert a new token row.

        Args:
            db: Async database session.
            token: Token with hash, binding and expiry set.

        Returns:
            The same token, flushed.
        """
        db.add(token)
        await db.flush()
        return token

    @staticmethod
    async def revoke_active(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        device_id: str,
        revoked_at: datetime,
    ) -> int:
        """Revoke every non-revoked token for a (user, device) pair.

        Args:
            db: Async database session.
            user_id: Token owner.
            device_id: Bound device.
            revoked_at: Revocation timestamp.

        Returns:
            Number of revoked rows.
        """
        stmt = (
            update(PunchToken)
            .where(
                PunchToken.user_id == user_id,
                PunchToken.device_id == device_id,
                PunchToken.revoked_at.is_(None),
            )
            .values(revoked_at=revoked_at)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count

    @staticmethod
    async def find_active(
        db: AsyncSession,
        *,
        user_id: uuid.UUID,
        device_id: str,
        token_hash: str,
        now: datetime,
    ) -> PunchToken | None:
        """Look up a live token by hash and binding.

        Args:
            db: Async database session.
            user_id: Expected owner.
            device_id: Expected device.
            token_hash: SHA-256 hash of the presented token.
            now: Reference time for expiry.

        Returns:
            PunchToken if found and live, None otherwise.
        """
        stmt = select(PunchToken).where(
            PunchToken.token_hash == token_hash,
            PunchToken.user_id == user_id,
            PunchToken.device_id == device_id,
            PunchToken.revoked_at.is_(None),
            PunchToken.expires_at > now,
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_seen(
        db: AsyncSession,
        token_id: uuid.UUID,
        seen_at: datetime,
    ) -> None:
        """Stamp last_seen_at after a successful punch."""
        stmt = (
            update(PunchToken)
            .where(PunchToken.id == token_id)
            .values(last_seen_at=seen_at)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)

    @staticmethod
    async def delete_expired(db: AsyncSession, before: datetime) -> int:
        """Delete tokens that expired before ``before`` (periodic cleanup).

        Args:
            db: Async database session.
            before: Cutoff timestamp.

        Returns:
            Number of deleted rows.
        """
        stmt = delete(PunchToken).where(PunchToken.expires_at < before)
        result = await db.execute(stmt)
        row_count: int = result.rowcount  # type: ignore[attr-defined]
        return row_count
