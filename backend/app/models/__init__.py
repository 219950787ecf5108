"""SQLAlchemy ORM models for the timeclock.

All models are exported from this module for convenient imports:
    from app.models import AttendanceEvent, PunchToken, ContractorProfile

- contractor_profile.py: ContractorProfile (read-only eligibility record)
- punch_token.py: PunchToken (device-bound punch credentials)
- attendance_event.py: AttendanceEvent (append-only audit log)
"""

from app.models.attendance_event import AttendanceEvent
from app.models.base import Base, TimestampMixin
from app.models.contractor_profile import ContractorProfile
from app.models.punch_token import PunchToken

__all__ = [
    # Base classes
    "Base",
    "TimestampMixin",
    # Timeclock
    "AttendanceEvent",
    "ContractorProfile",
    "PunchToken",
]
