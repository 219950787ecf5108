"""Punch token issuance and validation.

A punch token binds punches to one (user, device) pair for a fixed window.
Only the SHA-256 hash is stored; the raw value is returned exactly once at
issuance. Tokens are never renewed in place: issuing again revokes the
previous token for the pair.
"""

import hashlib
import logging
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from app.models.punch_token import PunchToken
from app.stores.base import PunchTokenStore

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_TTL_HOURS = 12

# 32 random bytes, urlsafe-base64 encoded (43 chars)
_TOKEN_BYTES = 32


def hash_token(raw_token: str) -> str:
    """SHA-256 hex digest of a raw punch token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def hash_user_agent(user_agent: str | None) -> str | None:
    """SHA-256 hex digest of a User-Agent header, or None if absent."""
    if not user_agent:
        return None
    return hashlib.sha256(user_agent.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class IssuedPunchToken:
    """Result of issuance. ``token`` is the only copy of the raw value.

    Attributes:
        token: Raw token to hand to the device.
        token_id: Stored row id.
        expires_at: Hard expiry.
    """

    token: str
    token_id: uuid.UUID
    expires_at: datetime


class PunchTokenService:
    """Issues, validates and revokes punch tokens.

    Args:
        store: Token persistence.
        ttl_hours: Lifetime of a newly issued token.
        clock: UTC "now" source (injectable for tests).
    """

    def __init__(
        self,
        store: PunchTokenStore,
        ttl_hours: int = DEFAULT_TOKEN_TTL_HOURS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    async def issue(
        self,
        user_id: uuid.UUID,
        device_id: str,
        user_agent_hash: str | None = None,
    ) -> IssuedPunchToken:
        """Revoke the pair's active token and issue a fresh one.

        Tokens that have already expired, for any user, are purged on the
        way, so the table does not grow without bound.

        Args:
            user_id: Token owner.
            device_id: Device the token is bound to.
            user_agent_hash: Optional UA hash that must match on every use.

        Returns:
            IssuedPunchToken carrying the raw token.
        """
        now = self._clock()
        raw_token = secrets.token_urlsafe(_TOKEN_BYTES)
        token = PunchToken(
            id=uuid.uuid4(),
            user_id=user_id,
            device_id=device_id,
            user_agent_hash=user_agent_hash,
            token_hash=hash_token(raw_token),
            issued_at=now,
            expires_at=now + self.ttl,
        )
        await self.store.rotate(token, now)
        logger.info("Issued punch token %s for user %s", token.id, user_id)
        await self.purge_expired(now)
        return IssuedPunchToken(
            token=raw_token,
            token_id=token.id,
            expires_at=token.expires_at,
        )

    async def validate(
        self,
        user_id: uuid.UUID,
        device_id: str,
        raw_token: str | None,
        user_agent_hash: str | None = None,
    ) -> PunchToken | None:
        """Return the live token matching all bindings, else None.

        A token issued with a user-agent hash only validates for requests
        carrying the same hash; one issued without a hash accepts any.

        Args:
            user_id: Caller.
            device_id: Caller's device header.
            raw_token: Presented token.
            user_agent_hash: Caller's UA hash.

        Returns:
            Matching PunchToken, or None.
        """
        if not raw_token or not device_id:
            return None
        token = await self.store.find_active(
            user_id, device_id, hash_token(raw_token), self._clock()
        )
        if token is None:
            return None
        if token.user_agent_hash is not None and not secrets.compare_digest(
            token.user_agent_hash, user_agent_hash or ""
        ):
            return None
        return token

    async def touch(self, token_id: uuid.UUID) -> None:
        """Record a successful use."""
        await self.store.mark_seen(token_id, self._clock())

    async def revoke(self, user_id: uuid.UUID, device_id: str) -> int:
        """Revoke the active token for a device (sign-out).

        Returns:
            Number of tokens revoked (0 or 1).
        """
        return await self.store.revoke_active(user_id, device_id, self._clock())

    async def purge_expired(self, before: datetime | None = None) -> int:
        """Delete tokens that expired before ``before`` (default: now)."""
        deleted = await self.store.delete_expired(before or self._clock())
        logger.debug("Expired punch token purge removed %d rows", deleted)
        return deleted
