import asyncio
import os
import sys
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")


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

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from airrides.domain.bookings import db_models as booking_db_models  # noqa: F401,E402
from airrides.domain.flights.db_models import Flight  # noqa: E402
from airrides.domain.ops import db_models as ops_db_models  # noqa: F401,E402
from airrides.domain.payments import db_models as payment_db_models  # noqa: F401,E402
from airrides.domain.payments import signatures  # noqa: E402
from airrides.domain.users import service as user_service  # noqa: E402
from airrides.infra.auth import PasswordHasher  # noqa: E402
from airrides.infra.db import Base, configure_sqlite_locking, get_db_session  # noqa: E402
from airrides.infra.metrics import metrics  # noqa: E402
from airrides.main import app  # noqa: E402
from airrides.services import build_app_services  # noqa: E402
from airrides.settings import settings  # noqa: E402

FAST_HASHER = PasswordHasher(argon2_time_cost=1, argon2_memory_cost=8, argon2_parallelism=1)


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture(scope="session")
def test_engine():
    db_path = Path("test.db")
    if db_path.exists():
        db_path.unlink()
    # One connection per session: concurrent reconciliations need real SQLite locking.
    engine = create_async_engine(
        "sqlite+aiosqlite:///./test.db",
        connect_args={"check_same_thread": False, "timeout": 30},
        poolclass=NullPool,
    )
    configure_sqlite_locking(engine)

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
    tracked = (
        "app_env",
        "testing",
        "metrics_enabled",
        "metrics_token",
        "ops_token",
        "razorpay_key_id",
        "razorpay_key_secret",
        "razorpay_webhook_secret",
        "job_heartbeat_required",
        "job_heartbeat_ttl_seconds",
    )
    original = {name: getattr(settings, name) for name in tracked}
    settings.testing = True
    yield
    for name, value in original.items():
        setattr(settings, name, value)


@pytest.fixture(autouse=True)
def clean_database(test_engine):
    async def truncate_tables() -> None:
        async with test_engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                await conn.execute(table.delete())

    asyncio.run(truncate_tables())
    yield


@pytest.fixture()
def services(async_session_maker):
    return build_app_services(settings, async_session_maker, metrics=metrics)


def _make_client(async_session_maker, services, *, raise_server_exceptions: bool):
    async def override_db_session():
        async with async_session_maker() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_db_session
    original_factory = getattr(app.state, "db_session_factory", None)
    app.state.db_session_factory = async_session_maker
    app.state.services = services
    app.state.app_settings = settings
    return TestClient(app, raise_server_exceptions=raise_server_exceptions), original_factory


@pytest.fixture()
def client(async_session_maker, services):
    ensure_event_loop()
    test_client, original_factory = _make_client(async_session_maker, services, raise_server_exceptions=True)
    with test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = None


@pytest.fixture()
def client_no_raise(async_session_maker, services):
    """Test client that returns HTTP responses instead of raising server exceptions."""
    test_client, original_factory = _make_client(async_session_maker, services, raise_server_exceptions=False)
    with test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.db_session_factory = original_factory
    app.state.services = None


@pytest.fixture()
def make_user(async_session_maker):
    async def _make_user(username: str | None = None) -> str:
        suffix = uuid.uuid4().hex[:8]
        async with async_session_maker() as session:
            user = await user_service.create_user(
                session,
                username=username or f"traveller-{suffix}",
                email=f"{username or 'traveller'}-{suffix}@example.com",
                password="correct horse battery",
                hasher=FAST_HASHER,
            )
            await session.commit()
            return user.id

    return _make_user


@pytest.fixture()
def make_flight(async_session_maker):
    async def _make_flight(seats: int = 10, **overrides) -> str:
        departure = overrides.pop("departure_time", datetime(2026, 12, 1, 6, 30, tzinfo=timezone.utc))
        values = {
            "flight_number": "AR-101",
            "origin": "Mumbai",
            "destination": "Delhi",
            "departure_time": departure,
            "arrival_time": departure + timedelta(hours=2, minutes=10),
            "estimated_flight_time": "2h 10m",
            "airline": "AirRides",
            "price": Decimal("4999.00"),
            "non_stop": True,
            "seats_available": seats,
        }
        values.update(overrides)
        async with async_session_maker() as session:
            flight = Flight(**values)
            session.add(flight)
            await session.commit()
            return flight.id

    return _make_flight


def sign_client(order_id: str, payment_id: str) -> str:
    return signatures.client_signature(settings.razorpay_key_secret, order_id, payment_id)


def sign_webhook(body: bytes) -> str:
    return signatures.webhook_signature(settings.razorpay_webhook_secret, body)
