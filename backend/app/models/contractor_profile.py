"""Contractor profile model - timeclock eligibility.

One row per worker. Owned by the admin workflow; the timeclock only reads it
to decide whether a caller may punch at all.
"""

import uuid

from sqlalchemy import Boolean, CheckConstraint, String, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from app.models.base import Base, TimestampMixin
from app.services.timeclock_types import Agency, EmploymentType, sql_in

_DEFAULT_UUID = text("gen_random_uuid()")

_RECOGNIZED_EMPLOYMENT_TYPES = frozenset(t.value for t in EmploymentType)


class ContractorProfile(Base, TimestampMixin):
    """Staffing contractor profile.

    employment_type is free-form text so the admin workflow can import rows
    the timeclock does not yet recognize; is_eligible filters them out.

    Attributes:
        user_id: Owning user (one profile per user).
        employment_type: "LTC" or "STC" for eligible contractors.
        agency: Supplying staffing agency.
        is_active: False once the contractor is deactivated.
    """

    __tablename__ = "contractor_profiles"
    __table_args__ = (
        CheckConstraint(
            f"agency IN ({sql_in(Agency)})",
            name="ck_contractorprofile_agency",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        server_default=_DEFAULT_UUID,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        nullable=False,
        unique=True,
    )
    employment_type: Mapped[str] = mapped_column(String(20), nullable=False)
    agency: Mapped[str] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        server_default=text("true"),
    )

    @property
    def is_eligible(self) -> bool:
        """Active with a recognized employment type."""
        return bool(self.is_active) and (
            self.employment_type in _RECOGNIZED_EMPLOYMENT_TYPES
        )
