"""
WorkLog Sentinel - Test Configuration

Pytest fixtures and configuration. Every test gets its own SQLite file
database and controllable clocks.
"""

import os

os.environ.setdefault("APP_ENV", "testing")
os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./sentinel_unused.db")

from datetime import datetime, timedelta
from typing import AsyncGenerator, Dict, List

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from sentinel.config import DEFAULT_MONITORING_RULES, Settings
from sentinel.database import build_engine, build_session_factory, init_db
from sentinel.dependencies import SecurityServices, build_services
from sentinel.services.audit_trail_service import AuditTrailManager
from sentinel.services.encryption_service import EncryptionManager, decode_key, generate_master_key
from sentinel.services.identity_service import PasswordIdentityProvider
from sentinel.services.masking_service import APIMaskingManager
from sentinel.services.monitoring_service import MonitoringManager, RuleSpec
from sentinel.utils.security import get_password_hash


ADMIN_EMAIL = "admin@worklog.test"
STAFF_EMAIL = "staff@worklog.test"
PASSWORD = "correct-horse-battery"


class FakeClock:
    """Wall clock returning naive UTC datetimes under test control."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeMonotonic:
    """Monotonic seconds under test control."""

    def __init__(self, start: float = 1000.0):
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> float:
        self.value += seconds
        return self.value


# ===========================================
# DATABASE
# ===========================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database with every table created."""
    test_engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sentinel.db'}")
    await init_db(bind=test_engine)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


# ===========================================
# CLOCKS & BUILDING BLOCKS
# ===========================================

@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeMonotonic:
    return FakeMonotonic()


@pytest.fixture
def masking() -> APIMaskingManager:
    return APIMaskingManager(allowed_domains=["hooks.slack.com"])


@pytest.fixture
def encryption() -> EncryptionManager:
    return EncryptionManager({"v1": decode_key(generate_master_key())}, "v1")


@pytest.fixture
def default_rules() -> List[RuleSpec]:
    return [RuleSpec.from_config(config) for config in DEFAULT_MONITORING_RULES]


@pytest.fixture
def monitoring(session_factory, monotonic, clock, default_rules) -> MonitoringManager:
    manager = MonitoringManager(
        session_factory,
        cooldown_seconds=300,
        clock=monotonic,
        wall_clock=clock,
    )
    manager.use_rules(default_rules)
    return manager


@pytest.fixture
def audit(session_factory, masking, monitoring, clock) -> AuditTrailManager:
    return AuditTrailManager(
        session_factory,
        masking,
        monitoring=monitoring,
        max_page_size=100,
        clock=clock,
    )


# ===========================================
# APPLICATION
# ===========================================

@pytest.fixture(scope="session")
def operator_accounts() -> Dict[str, str]:
    hashed = get_password_hash(PASSWORD)
    return {ADMIN_EMAIL: hashed, STAFF_EMAIL: hashed}


@pytest.fixture
def test_settings(operator_accounts) -> Settings:
    return Settings(
        app_env="testing",
        master_encryption_key=generate_master_key(),
        admin_identities=ADMIN_EMAIL,
        operator_accounts=operator_accounts,
        alert_webhook_url="",
        archive_directory="",
    )


@pytest_asyncio.fixture
async def services(session_factory, test_settings) -> AsyncGenerator[SecurityServices, None]:
    security = build_services(
        session_factory,
        test_settings,
        identity_provider=PasswordIdentityProvider(test_settings.operator_accounts),
    )
    await security.monitoring.sync_rules(test_settings.monitoring_rules)
    yield security
    await security.close()


@pytest_asyncio.fixture
async def client(services) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app using the test services."""
    from main import create_app

    app = create_app(services=services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def _login(client: AsyncClient, email: str) -> str:
    response = await client.post("/api/v1/auth/login", json={"email": email, "password": PASSWORD})
    assert response.status_code == 200, response.text
    return response.json()["data"]["token"]


@pytest_asyncio.fixture
async def admin_token(client) -> str:
    """Bearer token for an operator listed in admin_identities."""
    return await _login(client, ADMIN_EMAIL)


@pytest_asyncio.fixture
async def staff_token(client) -> str:
    """Bearer token for an authenticated non-operator."""
    return await _login(client, STAFF_EMAIL)
