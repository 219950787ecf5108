"""Attendance event model - the append-only punch audit log.

Every punch attempt after the eligibility check produces exactly one row,
accepted or blocked. Rows are never updated except for the signature pair
on an accepted CLOCK_OUT. All derived state (current clock state, weekly
hours) is recomputed from this table.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Index,
    String,
    Text,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base
from app.services.timeclock_types import (
    Agency,
    BlockReason,
    EventStatus,
    EventType,
    ShiftType,
    VerificationMethod,
    WifiAllowlistStatus,
    sql_in,
)

_DEFAULT_UUID = text("gen_random_uuid()")


class AttendanceEvent(Base):
    """One punch attempt.

    The status/reason pairing and the CLOCK_OUT-only signature columns are
    enforced by check constraints, so a BLOCKED row without a reason or a
    signed CLOCK_IN cannot be stored.
    """

    __tablename__ = "attendance_events"
    __table_args__ = (
        CheckConstraint(
            f"type IN ({sql_in(EventType)})",
            name="ck_attendanceevent_type",
        ),
        CheckConstraint(
            f"status IN ({sql_in(EventStatus)})",
            name="ck_attendanceevent_status",
        ),
        CheckConstraint(
            f"reason IN ({sql_in(BlockReason)}) OR reason IS NULL",
            name="ck_attendanceevent_reason",
        ),
        CheckConstraint(
            "(status = 'OK' AND reason IS NULL) "
            "OR (status = 'BLOCKED' AND reason IS NOT NULL)",
            name="ck_attendanceevent_status_reason",
        ),
        CheckConstraint(
            f"agency IN ({sql_in(Agency)})",
            name="ck_attendanceevent_agency",
        ),
        CheckConstraint(
            f"wifi_allowlist_status IN ({sql_in(WifiAllowlistStatus)}) "
            "OR wifi_allowlist_status IS NULL",
            name="ck_attendanceevent_wifi_status",
        ),
        CheckConstraint(
            f"verification_method IN ({sql_in(VerificationMethod)}) "
            "OR verification_method IS NULL",
            name="ck_attendanceevent_verification_method",
        ),
        CheckConstraint(
            f"shift_type IN ({sql_in(ShiftType)}) OR shift_type IS NULL",
            name="ck_attendanceevent_shift_type",
        ),
        CheckConstraint(
            "(signed_at IS NULL AND signature_image IS NULL) "
            "OR (type = 'CLOCK_OUT' AND status = 'OK' "
            "AND signed_at IS NOT NULL AND signature_image IS NOT NULL)",
            name="ck_attendanceevent_signature",
        ),
        Index("idx_attendanceevent_user_time", "user_id", "server_timestamp"),
        Index("idx_attendanceevent_user_idempotency", "user_id", "idempotency_key"),
        Index("idx_attendanceevent_agency_time", "agency", "server_timestamp"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    site_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    agency: Mapped[str] = mapped_column(String(20), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    reason: Mapped[str | None] = mapped_column(String(40), nullable=True)

    # Timing
    server_timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    client_reported_timestamp: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    drift_ms: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    drift_flag: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Geofence channel
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    distance_meters: Mapped[float | None] = mapped_column(Float, nullable=True)
    in_range: Mapped[bool | None] = mapped_column(Boolean, nullable=True)

    # Verification summary
    wifi_allowlist_status: Mapped[str | None] = mapped_column(String(20), nullable=True)
    wifi_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    location_verified: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    verification_method: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Request integrity
    device_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    punch_token_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), nullable=True
    )

    # Shift classification of the segment an accepted CLOCK_OUT closes
    shift_type: Mapped[str | None] = mapped_column(String(10), nullable=True)

    # Signature (CLOCK_OUT only, set once after the fact)
    signed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    signature_image: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_accepted(self) -> bool:
        """True for OK rows."""
        return self.status == EventStatus.OK.value

    @property
    def is_signed(self) -> bool:
        """True once a signature has been attached."""
        return self.signed_at is not None
