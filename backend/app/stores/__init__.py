"""Injectable persistence for the timeclock.

Exports:
    Store interfaces
    In-memory implementations (tests, local experiments)
    SQL implementations (production)
"""

from app.stores.base import (
    AttendanceEventStore,
    ContractorProfileStore,
    PunchTokenStore,
)
from app.stores.memory import (
    InMemoryAttendanceEventStore,
    InMemoryContractorProfileStore,
    InMemoryPunchTokenStore,
)
from app.stores.sql import (
    SqlAttendanceEventStore,
    SqlContractorProfileStore,
    SqlPunchTokenStore,
)

__all__ = [
    # Interfaces
    "AttendanceEventStore",
    "ContractorProfileStore",
    "PunchTokenStore",
    # In-memory
    "InMemoryAttendanceEventStore",
    "InMemoryContractorProfileStore",
    "InMemoryPunchTokenStore",
    # SQL
    "SqlAttendanceEventStore",
    "SqlContractorProfileStore",
    "SqlPunchTokenStore",
]
