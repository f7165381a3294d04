import asyncio
import sys
from datetime import date, time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def ensure_event_loop() -> asyncio.AbstractEventLoop:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    if loop.is_closed():
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)

    return loop


ensure_event_loop()

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.infra.models  # noqa: F401
from app.domain.availability import slot_store
from app.domain.caregivers import service as caregiver_service
from app.infra.db import Base, get_db_session
from app.main import app
from app.settings import settings

CAREGIVER_ID = "caregiver-1"
PARENT_ID = "parent-1"
OTHER_PARENT_ID = "parent-2"
ADMIN_ID = "admin-1"
SLOT_DATE = date(2030, 6, 3)


class StubIdentityDirectory:
    def __init__(self, mapping: dict[str, str] | None = None) -> None:
        self.mapping = mapping or {}
        self.lookups: list[str] = []

    async def resolve_parent_id(self, email: str) -> str | None:
        self.lookups.append(email)
        return self.mapping.get(email)


def auth_headers(user_id: str, role: str, approval: str = "APPROVED") -> dict[str, str]:
    return {"X-User-Id": user_id, "X-User-Role": role, "X-User-Approval": approval}


def parent_headers(user_id: str = PARENT_ID) -> dict[str, str]:
    return auth_headers(user_id, "PARENT")


def caregiver_headers(user_id: str = CAREGIVER_ID) -> dict[str, str]:
    return auth_headers(user_id, "CAREGIVER")


def admin_headers(user_id: str = ADMIN_ID) -> dict[str, str]:
    return auth_headers(user_id, "ADMIN")


async def make_slot(
    session,
    *,
    caregiver_id: str = CAREGIVER_ID,
    slot_date: date = SLOT_DATE,
    start: time = time(9, 0),
    end: time = time(12, 0),
    capacity: int = 3,
    rate_cents: int = 2000,
    dynamic_pricing: bool = False,
):
    await caregiver_service.upsert_caregiver_profile(
        session,
        caregiver_id,
        hourly_rate_cents=rate_cents,
        daily_capacity=capacity,
        dynamic_pricing_enabled=dynamic_pricing,
    )
    return await slot_store.create_slot(
        session,
        caregiver_id,
        slot_date=slot_date,
        start_time=start,
        end_time=end,
        total_capacity=capacity,
        base_rate_cents=rate_cents,
    )


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=StaticPool,
    )

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield engine
    asyncio.run(engine.dispose())


@pytest.fixture(scope="session")
def async_session_maker(test_engine):
    return async_sessionmaker(test_engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def restore_settings():
    original = {
        name: getattr(settings, name)
        for name in (
            "testing",
            "app_env",
            "metrics_token",
            "job_heartbeat_required",
            "job_heartbeat_ttl_seconds",
            "stripe_webhook_secret",
            "identity_proxy_secret",
            "require_approved_accounts",
            "direct_booking_auto_link",
            "reconcile_min_capacity",
            "platform_commission_rate",
        )
    }
    settings.testing = True
    settings.app_env = "dev"
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def restore_app_state():
    """Restore app.state after each test to prevent state pollution."""
    original_stripe = getattr(app.state, "stripe_client", None)
    original_directory = getattr(app.state, "identity_directory", None)
    yield
    app.state.stripe_client = original_stripe
    app.state.identity_directory = original_directory


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield
    asyncio.run(test_engine.dispose())


@pytest.fixture()
def identity_directory():
    return StubIdentityDirectory()


@pytest.fixture()
def client(async_session_maker, identity_directory):
    ensure_event_loop()

    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    app.state.identity_directory = identity_directory
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"
