import ast
import inspect
import socket
import textwrap
import uuid
from collections.abc import AsyncGenerator, Iterator
from datetime import UTC, datetime, timedelta

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.core.config import settings
from app.core.rate_limiting import CompositeRateLimiter, SlidingWindowRateLimiter
from app.models import AttendanceEvent, ContractorProfile
from app.models.base import Base
from app.services.timeclock_types import EventStatus, EventType
from app.services.verification import (
    GeofenceSite,
    VerificationConfig,
    VerificationEvaluator,
)
from app.stores import (
    InMemoryAttendanceEventStore,
    InMemoryContractorProfileStore,
    InMemoryPunchTokenStore,
)

# Use separate test database
TEST_DATABASE_URL = settings.database_url.replace(
    settings.database_name, f"{settings.database_name}_test"
)

# Test user ID (consistent across tests for predictable auth)
TEST_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
USER_B_ID = uuid.UUID("00000000-0000-0000-0000-000000000099")

# Security: This is a test-only secret. Production uses a real secret from env.
TEST_AUTH_SECRET = "test-secret-key-that-is-at-least-32-characters-long"  # nosec B105  # gitleaks:allow

# Agency bearer keys configured for API tests
TEST_AGENCY_KEY = "prologistix-test-key"  # nosec B105
TEST_OTHER_AGENCY_KEY = "staff-force-test-key"  # nosec B105

# Verification fixtures: an allowlisted egress address and the site center
ALLOWED_IP = "203.0.113.10"
OFFSITE_IP = "198.51.100.7"
SITE_LAT = 32.76919206739677
SITE_LNG = -96.58379991502918
SITE_RADIUS_METERS = 1609.344


def create_test_jwt(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    secret: str = TEST_AUTH_SECRET,
    expires_delta: timedelta | None = None,
    site: str | None = None,
) -> str:
    """Create a signed JWT for test authentication.

    Args:
        user_id: User UUID to encode in the sub claim.
        secret: Signing secret (must match settings.auth_secret in tests).
        expires_delta: Time until expiration. Defaults to 1 hour.
        site: Optional site claim.

    Returns:
        Encoded JWT string.
    """
    now = datetime.now(UTC)
    payload = {
        "sub": str(user_id),
        "aud": settings.auth_audience,
        "iss": settings.auth_issuer,
        "exp": now + (expires_delta or timedelta(hours=1)),
        "iat": now,
    }
    if site is not None:
        payload["site"] = site
    return jwt.encode(payload, secret, algorithm="HS256")


# =============================================================================
# Builders
# =============================================================================


class FakeClock:
    """Settable UTC clock for services that take a ``clock`` callable."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FrozenTime:
    """Stand-in for the ``time`` module as read by the punch throttle.

    Installed by the ``limiter_time`` fixture so window expiry can be driven
    by ``advance`` instead of sleeping.
    """

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.value = start

    def time(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


def make_profile(
    user_id: uuid.UUID = TEST_USER_ID,
    *,
    employment_type: str = "LTC",
    agency: str = "PROLOGISTIX",
    is_active: bool = True,
) -> ContractorProfile:
    """Build a transient contractor profile."""
    return ContractorProfile(
        id=uuid.uuid4(),
        user_id=user_id,
        employment_type=employment_type,
        agency=agency,
        is_active=is_active,
    )


def make_event(
    event_type: EventType | str,
    at: datetime,
    *,
    user_id: uuid.UUID = TEST_USER_ID,
    status: EventStatus | str = EventStatus.OK,
    reason: str | None = None,
    method: str | None = "wifi",
    agency: str = "PROLOGISTIX",
    signed: bool = False,
    shift_type: str | None = None,
    idempotency_key: str | None = None,
    drift_flag: bool | None = None,
) -> AttendanceEvent:
    """Build a transient attendance event with sensible defaults."""
    type_value = event_type.value if isinstance(event_type, EventType) else event_type
    status_value = status.value if isinstance(status, EventStatus) else status
    if status_value == EventStatus.BLOCKED.value and reason is None:
        reason = "INVALID_STATE"
    return AttendanceEvent(
        id=uuid.uuid4(),
        user_id=user_id,
        agency=agency,
        type=type_value,
        status=status_value,
        reason=reason,
        server_timestamp=at,
        verification_method=method,
        shift_type=shift_type,
        idempotency_key=idempotency_key or uuid.uuid4().hex,
        drift_flag=drift_flag,
        signed_at=at if signed else None,
        signature_image="data:image/png;base64,AAAA" if signed else None,
    )


def make_evaluator(
    allowed_ips: frozenset[str] = frozenset({ALLOWED_IP}),
    *,
    allowlist_disabled: bool = False,
    bypass_user_ids: frozenset[str] = frozenset(),
    max_accuracy_meters: float = 200.0,
) -> VerificationEvaluator:
    """Evaluator for the test site."""
    return VerificationEvaluator(
        VerificationConfig(
            allowed_ips=allowed_ips,
            allowlist_disabled=allowlist_disabled,
            bypass_user_ids=bypass_user_ids,
            site=GeofenceSite(
                lat=SITE_LAT,
                lng=SITE_LNG,
                radius_meters=SITE_RADIUS_METERS,
            ),
            max_accuracy_meters=max_accuracy_meters,
        )
    )


def make_rate_limiter(
    *,
    burst: int = 5,
    burst_window: int = 10,
    sustained: int = 30,
    sustained_window: int = 600,
) -> CompositeRateLimiter:
    """Burst + sustained limiter with private in-memory storage."""
    return CompositeRateLimiter(
        {
            "burst": SlidingWindowRateLimiter(burst, burst_window),
            "sustained": SlidingWindowRateLimiter(sustained, sustained_window),
        }
    )


@pytest.fixture
def limiter_time(monkeypatch: pytest.MonkeyPatch) -> FrozenTime:
    """Freeze the clock read by the punch throttle and its storage."""
    frozen = FrozenTime()
    monkeypatch.setattr("limits.storage.memory.time", frozen)
    monkeypatch.setattr("app.core.rate_limiting.time", frozen)
    return frozen


# =============================================================================
# Database fixtures (skip without PostgreSQL)
# =============================================================================


def _is_postgres_available() -> bool:
    """Check if PostgreSQL is accepting connections.

    Returns:
        True if PostgreSQL is reachable on port 5432, False otherwise.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(1)
        result = sock.connect_ex(("127.0.0.1", 5432))
        sock.close()
        return result == 0
    except OSError:
        return False


# Check once at module load time
_POSTGRES_AVAILABLE = _is_postgres_available()


def skip_if_no_postgres() -> None:
    """Skip test if PostgreSQL is not available.

    Called by fixtures that require database connection.
    """
    if not _POSTGRES_AVAILABLE:
        pytest.skip(
            "PostgreSQL not available on port 5432. "
            "Start database with: docker compose up -d"
        )


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create test database engine.

    Skips test if PostgreSQL is not available (e.g., Docker not running).
    """
    skip_if_no_postgres()

    engine = create_async_engine(TEST_DATABASE_URL, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


# =============================================================================
# Store fixtures
# =============================================================================


@pytest.fixture
def event_store() -> InMemoryAttendanceEventStore:
    return InMemoryAttendanceEventStore()


@pytest.fixture
def token_store() -> InMemoryPunchTokenStore:
    return InMemoryPunchTokenStore()


@pytest.fixture
def profile_store() -> InMemoryContractorProfileStore:
    """Profiles for TEST_USER_ID (PROLOGISTIX) and USER_B_ID (STAFF_FORCE)."""
    return InMemoryContractorProfileStore(
        [
            make_profile(TEST_USER_ID),
            make_profile(USER_B_ID, agency="STAFF_FORCE", employment_type="STC"),
        ]
    )


# =============================================================================
# API Test Fixtures
# =============================================================================


@pytest_asyncio.fixture
async def client(
    event_store: InMemoryAttendanceEventStore,
    token_store: InMemoryPunchTokenStore,
    profile_store: InMemoryContractorProfileStore,
) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client for authenticated API tests.

    Sets up:
    - In-memory stores via dependency overrides (no database)
    - A fresh punch throttle and the test-site verification evaluator
    - JWT auth with test secret and agency keys
    - httpx.AsyncClient with ASGI transport + auth cookie

    Yields:
        Configured AsyncClient for making authenticated API requests.
    """
    from app.api.deps import (
        get_contractor_profile_store,
        get_event_store,
        get_punch_token_store,
    )
    from app.main import app

    app.dependency_overrides[get_event_store] = lambda: event_store
    app.dependency_overrides[get_punch_token_store] = lambda: token_store
    app.dependency_overrides[get_contractor_profile_store] = lambda: profile_store

    original_limiter = app.state.punch_rate_limiter
    original_evaluator = app.state.verification_evaluator
    app.state.punch_rate_limiter = make_rate_limiter()
    app.state.verification_evaluator = make_evaluator()

    # Enable JWT auth with test secret
    original_auth_enabled = settings.auth_enabled
    original_auth_secret = settings.auth_secret
    original_pro_key = settings.agency_api_key_prologistix
    original_sf_key = settings.agency_api_key_staff_force
    settings.auth_enabled = True
    settings.auth_secret = SecretStr(TEST_AUTH_SECRET)
    settings.agency_api_key_prologistix = SecretStr(TEST_AGENCY_KEY)
    settings.agency_api_key_staff_force = SecretStr(TEST_OTHER_AGENCY_KEY)

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(TEST_USER_ID)},
    ) as ac:
        yield ac

    # Cleanup
    settings.auth_enabled = original_auth_enabled
    settings.auth_secret = original_auth_secret
    settings.agency_api_key_prologistix = original_pro_key
    settings.agency_api_key_staff_force = original_sf_key
    app.state.punch_rate_limiter = original_limiter
    app.state.verification_evaluator = original_evaluator
    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def unauthenticated_client(client) -> AsyncGenerator[AsyncClient, None]:  # noqa: ARG001
    """Async HTTP client without a session cookie.

    Depends on ``client`` for the overrides and auth settings.

    Yields:
        AsyncClient with no auth cookie.
    """
    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def client_user_b(client) -> AsyncGenerator[AsyncClient, None]:  # noqa: ARG001
    """HTTP client authenticated as User B (a STAFF_FORCE contractor).

    Yields:
        AsyncClient authenticated as User B.
    """
    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        cookies={settings.auth_cookie_name: create_test_jwt(USER_B_ID)},
    ) as ac:
        yield ac


# =============================================================================
# Autouse Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def disable_rate_limiting() -> Iterator[None]:
    """Disable slowapi endpoint limits during tests.

    Security: Rate limiting is tested separately; disable for other tests
    to avoid flaky failures from rate limit triggers.

    Yields:
        None (autouse fixture).
    """
    from app.core.rate_limiting import limiter

    # Store original state and disable
    original_enabled = limiter.enabled
    limiter.enabled = False

    yield

    # Restore original state
    limiter.enabled = original_enabled


# =============================================================================
# Test Antipattern Detection (warning-only)
# =============================================================================

_BANNED_FUNCTIONS = frozenset({"isinstance", "issubclass", "hasattr"})
_BANNED_ATTRS = frozenset({"__abstractmethods__"})


def _find_antipatterns_in_source(source: str) -> list[str]:
    """Scan test function source for banned structural assertion patterns."""
    try:
        tree = ast.parse(textwrap.dedent(source))
    except SyntaxError:
        return []

    findings: list[str] = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        if isinstance(node.func, ast.Name) and node.func.id in _BANNED_FUNCTIONS:
            findings.append(node.func.id)
        if isinstance(node.func, ast.Attribute) and node.func.attr in _BANNED_ATTRS:
            findings.append(node.func.attr)
    return findings


_antipattern_warnings: list[str] = []


def pytest_runtest_teardown(item: pytest.Item) -> None:
    """Check each test for antipattern usage after it runs."""
    if not hasattr(item, "obj") or not callable(item.obj):
        return
    try:
        source = inspect.getsource(item.obj)
    except (OSError, TypeError):
        return

    patterns = _find_antipatterns_in_source(source)
    if patterns:
        _antipattern_warnings.append(f"  {item.nodeid}: {', '.join(patterns)}")


def pytest_terminal_summary(
    terminalreporter: pytest.TerminalReporter,
) -> None:
    """Report test antipatterns at the end of the test session (warning only)."""
    if _antipattern_warnings:
        terminalreporter.section("test antipattern warnings")
        terminalreporter.line(
            "The following tests use banned structural assertion patterns."
        )
        terminalreporter.line(
            "Assert on observable behavior (values, status codes) instead."
        )
        terminalreporter.line("")
        for w in _antipattern_warnings:
            terminalreporter.line(w)
