"""Application configuration loaded from environment variables.

Settings for database, API, authentication, and the timeclock policy
(network allowlist, geofence, token lifetime, throttling). Uses
pydantic-settings for validation and .env file support.
"""

import uuid
from typing import Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Known insecure default password that must not be used in production
# Security: Runtime check in check_production_security() prevents use in production
_INSECURE_DEFAULT_PASSWORD = "timeclock_dev_password"  # nosec B105

# Minimum length for AUTH_SECRET in production (256 bits = 32 bytes)
_MIN_AUTH_SECRET_LENGTH = 32


def _split_csv(raw: str) -> frozenset[str]:
    """Split a comma-separated env value into a set of trimmed entries."""
    return frozenset(part.strip() for part in raw.split(",") if part.strip())


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Database
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "timeclock"
    database_user: str = "timeclock_user"
    database_password: str = _INSECURE_DEFAULT_PASSWORD

    # API
    # 0.0.0.0 binds to all network interfaces (required for Docker containers)
    api_host: str = "0.0.0.0"  # nosec B104
    api_port: int = 8000

    # CORS (Security)
    # CRITICAL: Never set to ["*"] when allow_credentials=True
    allowed_origins: list[str] = ["http://localhost:3000"]

    # Application
    environment: str = "development"
    log_level: str = "INFO"

    # Authentication
    # Local mode: DEFAULT_USER_ID / DEFAULT_SITE_ID provide caller context
    # Hosted mode: auth_enabled=True, JWT cookie issued by the session layer
    default_user_id: uuid.UUID | None = None
    default_site_id: str | None = None
    auth_enabled: bool = False
    auth_secret: SecretStr = SecretStr("")
    auth_issuer: str = "timeclock"
    auth_audience: str = "timeclock"
    auth_cookie_name: str = "timeclock.session-token"

    # Network-presence channel
    # Comma-separated lists; an empty allowlist fails closed.
    timeclock_allowed_egress_ips: str = ""
    timeclock_wifi_allowlist_disabled: bool = False
    timeclock_wifi_bypass_user_ids: str = ""

    # Geofence channel (single fixed site per deployment)
    timeclock_site_address: str = "1130 E Kearney St, Mesquite, TX 75149"
    timeclock_site_lat: float = 32.76919206739677
    timeclock_site_lng: float = -96.58379991502918
    timeclock_site_radius_meters: float = 1609.344
    timeclock_max_accuracy_meters: float = 200.0

    # Timecard reconstruction
    timeclock_timezone: str = "America/Chicago"
    timeclock_lunch_minutes: int = 30

    # Integrity controls
    punch_token_ttl_hours: int = 12
    idempotency_window_hours: int = 24
    clock_drift_flag_minutes: int = 5
    state_replay_depth: int = 200
    signature_max_bytes: int = 256_000

    # Punch throttling (in-process sliding windows)
    punch_burst_limit: int = 5
    punch_burst_window_seconds: int = 10
    punch_sustained_limit: int = 30
    punch_sustained_window_seconds: int = 600

    # Rate Limiting (slowapi, per endpoint)
    # Format: "count/period" (e.g., "10/minute", "100/hour")
    rate_limit_token_issue: str = "20/hour"
    rate_limit_enabled: bool = True  # Disable for testing

    # Agency read API keys (one bearer key per agency)
    agency_api_key_prologistix: SecretStr = SecretStr("")
    agency_api_key_staff_force: SecretStr = SecretStr("")

    @property
    def database_url(self) -> str:
        """Async database URL for SQLAlchemy."""
        return (
            f"postgresql+asyncpg://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def database_url_sync(self) -> str:
        """Sync database URL for Alembic."""
        return (
            f"postgresql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def allowed_egress_ips(self) -> frozenset[str]:
        """Parsed network allowlist."""
        return _split_csv(self.timeclock_allowed_egress_ips)

    @property
    def wifi_bypass_user_ids(self) -> frozenset[str]:
        """Parsed per-user network bypass list."""
        return _split_csv(self.timeclock_wifi_bypass_user_ids)

    @property
    def agency_api_keys(self) -> dict[str, SecretStr]:
        """Configured agency keys, keyed by agency code."""
        return {
            "PROLOGISTIX": self.agency_api_key_prologistix,
            "STAFF_FORCE": self.agency_api_key_staff_force,
        }

    @model_validator(mode="after")
    def check_production_security(self) -> "Settings":
        """Validate policy values and production security requirements.

        Checks:
        - Geofence radius and accuracy ceiling must be positive
        - Throttle limits and windows must be positive
        - Timezone must be a known IANA zone
        - CORS must not use wildcard origin (incompatible with credentials)
        - Database password must not be the default in production
        - AUTH_SECRET must be set and >= 32 chars when auth is enabled in production
        - Network allowlist must not be disabled in production
        """
        if self.timeclock_site_radius_meters <= 0:
            msg = (
                "TIMECLOCK_SITE_RADIUS_METERS must be positive. "
                f"Got: {self.timeclock_site_radius_meters}"
            )
            raise ValueError(msg)
        if self.timeclock_max_accuracy_meters <= 0:
            msg = (
                "TIMECLOCK_MAX_ACCURACY_METERS must be positive. "
                f"Got: {self.timeclock_max_accuracy_meters}"
            )
            raise ValueError(msg)

        for name in (
            "punch_burst_limit",
            "punch_burst_window_seconds",
            "punch_sustained_limit",
            "punch_sustained_window_seconds",
            "punch_token_ttl_hours",
            "idempotency_window_hours",
        ):
            if getattr(self, name) <= 0:
                msg = f"{name.upper()} must be positive. Got: {getattr(self, name)}"
                raise ValueError(msg)

        try:
            ZoneInfo(self.timeclock_timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            msg = f"TIMECLOCK_TIMEZONE is not a known timezone: {self.timeclock_timezone}"
            raise ValueError(msg) from exc

        if "*" in self.allowed_origins:
            msg = (
                "ALLOWED_ORIGINS must not contain '*' (wildcard). "
                "This application uses credentials (cookies) which are "
                "incompatible with wildcard CORS origins."
            )
            raise ValueError(msg)

        if self.environment == "production":
            if self.database_password == _INSECURE_DEFAULT_PASSWORD:
                msg = (
                    "Cannot use default database password in production. "
                    "Set DATABASE_PASSWORD environment variable to a secure value."
                )
                raise ValueError(msg)

            if self.auth_enabled:
                secret_value = self.auth_secret.get_secret_value()
                if not secret_value:
                    msg = (
                        "AUTH_SECRET must be set when AUTH_ENABLED=true in production. "
                        'Generate with: python -c "import secrets; '
                        'print(secrets.token_hex(32))"'
                    )
                    raise ValueError(msg)
                if len(secret_value) < _MIN_AUTH_SECRET_LENGTH:
                    msg = (
                        f"AUTH_SECRET must be at least {_MIN_AUTH_SECRET_LENGTH} "
                        "characters for adequate security."
                    )
                    raise ValueError(msg)

            if self.timeclock_wifi_allowlist_disabled:
                msg = (
                    "TIMECLOCK_WIFI_ALLOWLIST_DISABLED cannot be enabled in production. "
                    "Use TIMECLOCK_WIFI_BYPASS_USER_IDS for designated test identities."
                )
                raise ValueError(msg)

        return self


settings = Settings()
