"""Create timeclock tables: contractor profiles, punch tokens, attendance events.

Revision ID: 001_timeclock_tables
Revises: 000_enable_extensions
Create Date: 2026-10-01

attendance_events is append-only. Check constraints make the illegal
status/reason and signature combinations unrepresentable.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

revision: str = "001_timeclock_tables"
down_revision: str | None = "000_enable_extensions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_AGENCIES = "'PROLOGISTIX', 'STAFF_FORCE'"


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        sa.UUID(),
        primary_key=True,
        server_default=sa.text("gen_random_uuid()"),
    )


def upgrade() -> None:
    # Contractor profiles - written by the admin workflow, read here
    op.create_table(
        "contractor_profiles",
        _uuid_pk(),
        sa.Column("user_id", sa.UUID(), nullable=False, unique=True),
        sa.Column("employment_type", sa.String(20), nullable=False),
        sa.Column("agency", sa.String(20), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            f"agency IN ({_AGENCIES})",
            name="ck_contractorprofile_agency",
        ),
    )

    # Punch tokens - hashes only, one live token per (user, device)
    op.create_table(
        "punch_tokens",
        _uuid_pk(),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("device_id", sa.String(128), nullable=False),
        sa.Column("user_agent_hash", sa.String(64), nullable=True),
        sa.Column("token_hash", sa.String(64), nullable=False, unique=True),
        sa.Column(
            "issued_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("revoked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        "idx_punchtoken_user_device", "punch_tokens", ["user_id", "device_id"]
    )
    op.create_index("idx_punchtoken_expires", "punch_tokens", ["expires_at"])
    op.create_index(
        "uq_punchtoken_active_device",
        "punch_tokens",
        ["user_id", "device_id"],
        unique=True,
        postgresql_where=sa.text("revoked_at IS NULL"),
    )

    # Attendance events - the punch audit log
    op.create_table(
        "attendance_events",
        _uuid_pk(),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("site_id", sa.String(64), nullable=True),
        sa.Column("agency", sa.String(20), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("status", sa.String(10), nullable=False),
        sa.Column("reason", sa.String(40), nullable=True),
        sa.Column("server_timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "client_reported_timestamp", sa.DateTime(timezone=True), nullable=True
        ),
        sa.Column("drift_ms", sa.BigInteger(), nullable=True),
        sa.Column("drift_flag", sa.Boolean(), nullable=True),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lng", sa.Float(), nullable=True),
        sa.Column("accuracy_meters", sa.Float(), nullable=True),
        sa.Column("distance_meters", sa.Float(), nullable=True),
        sa.Column("in_range", sa.Boolean(), nullable=True),
        sa.Column("wifi_allowlist_status", sa.String(20), nullable=True),
        sa.Column("wifi_verified", sa.Boolean(), nullable=True),
        sa.Column("location_verified", sa.Boolean(), nullable=True),
        sa.Column("verification_method", sa.String(10), nullable=True),
        sa.Column("device_id", sa.String(128), nullable=True),
        sa.Column("idempotency_key", sa.String(128), nullable=True),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("punch_token_id", sa.UUID(), nullable=True),
        sa.Column("shift_type", sa.String(10), nullable=True),
        sa.Column("signed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("signature_image", sa.Text(), nullable=True),
        sa.CheckConstraint(
            "type IN ('CLOCK_IN', 'LUNCH_START', 'LUNCH_END', 'CLOCK_OUT')",
            name="ck_attendanceevent_type",
        ),
        sa.CheckConstraint(
            "status IN ('OK', 'BLOCKED')",
            name="ck_attendanceevent_status",
        ),
        sa.CheckConstraint(
            "reason IN ('LOCATION_UNAVAILABLE', 'ACCURACY_LOW', 'OUT_OF_RANGE', "
            "'NOT_ON_WAREHOUSE_WIFI', 'MISSING_DEVICE_ID', "
            "'MISSING_IDEMPOTENCY_KEY', 'REUSED_IDEMPOTENCY_KEY', "
            "'INVALID_PUNCH_TOKEN', 'RATE_LIMITED', 'INVALID_STATE') "
            "OR reason IS NULL",
            name="ck_attendanceevent_reason",
        ),
        sa.CheckConstraint(
            "(status = 'OK' AND reason IS NULL) "
            "OR (status = 'BLOCKED' AND reason IS NOT NULL)",
            name="ck_attendanceevent_status_reason",
        ),
        sa.CheckConstraint(
            f"agency IN ({_AGENCIES})",
            name="ck_attendanceevent_agency",
        ),
        sa.CheckConstraint(
            "wifi_allowlist_status IN ('PASS', 'FAIL', 'DEV_BYPASS') "
            "OR wifi_allowlist_status IS NULL",
            name="ck_attendanceevent_wifi_status",
        ),
        sa.CheckConstraint(
            "verification_method IN ('wifi', 'location', 'both', 'none') "
            "OR verification_method IS NULL",
            name="ck_attendanceevent_verification_method",
        ),
        sa.CheckConstraint(
            "shift_type IN ('DAY', 'NIGHT') OR shift_type IS NULL",
            name="ck_attendanceevent_shift_type",
        ),
        sa.CheckConstraint(
            "(signed_at IS NULL AND signature_image IS NULL) "
            "OR (type = 'CLOCK_OUT' AND status = 'OK' "
            "AND signed_at IS NOT NULL AND signature_image IS NOT NULL)",
            name="ck_attendanceevent_signature",
        ),
    )
    op.create_index(
        "idx_attendanceevent_user_time",
        "attendance_events",
        ["user_id", "server_timestamp"],
    )
    op.create_index(
        "idx_attendanceevent_user_idempotency",
        "attendance_events",
        ["user_id", "idempotency_key"],
    )
    op.create_index(
        "idx_attendanceevent_agency_time",
        "attendance_events",
        ["agency", "server_timestamp"],
    )


def downgrade() -> None:
    op.drop_table("attendance_events")
    op.drop_index("uq_punchtoken_active_device", table_name="punch_tokens")
    op.drop_table("punch_tokens")
    op.drop_table("contractor_profiles")
