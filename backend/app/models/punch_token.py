"""Punch token model - device-bound clock credentials.

Only the SHA-256 hash of the raw token is stored. A partial unique index
allows a single non-revoked token per (user, device).
"""

import uuid
from datetime import datetime

from sqlalchemy import DateTime, Index, String, func, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base

_DEFAULT_UUID = text("gen_random_uuid()")


class PunchToken(Base):
    """Short-lived credential required for every punch.

    Attributes:
        user_id: User the token was issued to.
        device_id: Device the token is bound to.
        user_agent_hash: SHA-256 of the issuing User-Agent, if recorded.
        token_hash: SHA-256 of the raw token.
        issued_at: Issuance time.
        expires_at: Hard expiry (never extended).
        revoked_at: Set when superseded or revoked.
        last_seen_at: Last successful punch using this token.
    """

    __tablename__ = "punch_tokens"
    __table_args__ = (
        Index("idx_punchtoken_user_device", "user_id", "device_id"),
        Index("idx_punchtoken_expires", "expires_at"),
        Index(
            "uq_punchtoken_active_device",
            "user_id",
            "device_id",
            unique=True,
            postgresql_where=text("revoked_at IS NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    device_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_agent_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    issued_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_seen_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def is_active(self, now: datetime) -> bool:
        """Not revoked and not yet expired at ``now``."""
        return self.revoked_at is None and now < self.expires_at
