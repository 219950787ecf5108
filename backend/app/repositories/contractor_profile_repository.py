"""Repository for ContractorProfile reads.

Profiles are written by the admin workflow; the timeclock only reads them.
"""

import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.contractor_profile import ContractorProfile


class ContractorProfileRepository:
    """Stateless repository for ContractorProfile lookups."""

    @staticmethod
    async def get_by_user_id(
        db: AsyncSession,
        user_id: uuid.UUID,
    ) -> ContractorProfile | None:
        """Fetch the profile for a user, if any."""
        result = await db.execute(
            select(ContractorProfile).where(ContractorProfile.user_id == user_id)
        )
        return result.scalar_one_or_none()
