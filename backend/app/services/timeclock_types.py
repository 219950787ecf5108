"""Shared enumerations for the timeclock domain.

Values are persisted as strings and enforced by CheckConstraints on the
ORM models, so renaming a member is a schema change.
"""

from enum import Enum


class EventType(str, Enum):
    """Clock action requested by the worker."""

    CLOCK_IN = "CLOCK_IN"
    LUNCH_START = "LUNCH_START"
    LUNCH_END = "LUNCH_END"
    CLOCK_OUT = "CLOCK_OUT"


class EventStatus(str, Enum):
    """Outcome recorded on an attendance event."""

    OK = "OK"
    BLOCKED = "BLOCKED"


class BlockReason(str, Enum):
    """Why a punch was rejected. Present iff status is BLOCKED."""

    # Verification
    LOCATION_UNAVAILABLE = "LOCATION_UNAVAILABLE"
    ACCURACY_LOW = "ACCURACY_LOW"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    NOT_ON_WAREHOUSE_WIFI = "NOT_ON_WAREHOUSE_WIFI"
    # Integrity
    MISSING_DEVICE_ID = "MISSING_DEVICE_ID"
    MISSING_IDEMPOTENCY_KEY = "MISSING_IDEMPOTENCY_KEY"
    REUSED_IDEMPOTENCY_KEY = "REUSED_IDEMPOTENCY_KEY"
    INVALID_PUNCH_TOKEN = "INVALID_PUNCH_TOKEN"
    # Throttling
    RATE_LIMITED = "RATE_LIMITED"
    # Sequencing
    INVALID_STATE = "INVALID_STATE"


class WifiAllowlistStatus(str, Enum):
    """Network-presence channel outcome."""

    PASS = "PASS"
    FAIL = "FAIL"
    DEV_BYPASS = "DEV_BYPASS"


class GeofenceStatus(str, Enum):
    """Geofence channel outcome. Not persisted (derived from geo columns)."""

    PASS = "PASS"
    FAIL = "FAIL"
    UNAVAILABLE = "UNAVAILABLE"


class VerificationMethod(str, Enum):
    """Which channel(s) verified the punch."""

    WIFI = "wifi"
    LOCATION = "location"
    BOTH = "both"
    NONE = "none"


class ShiftType(str, Enum):
    """Shift classification of a worked segment."""

    DAY = "DAY"
    NIGHT = "NIGHT"


class ClockState(str, Enum):
    """Logical clock state derived from accepted events."""

    OUT = "OUT"
    IN = "IN"
    ON_LUNCH = "ON_LUNCH"


class EmploymentType(str, Enum):
    """Recognized contractor employment types."""

    LTC = "LTC"
    STC = "STC"


class Agency(str, Enum):
    """Staffing agencies that supply contractors."""

    PROLOGISTIX = "PROLOGISTIX"
    STAFF_FORCE = "STAFF_FORCE"


def sql_in(enum_cls: type[Enum]) -> str:
    """Render an enum's values as a SQL IN list for CheckConstraints."""
    return ", ".join(f"'{member.value}'" for member in enum_cls)
