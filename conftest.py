import os
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Optional overrides for running against a real Postgres instead of SQLite
env_test_path = os.path.join(os.path.dirname(__file__), ".env.test")
if os.path.exists(env_test_path):
    load_dotenv(env_test_path, override=True)

# Must be in place before settings are first read
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("PAYCHANGU_SECRET_KEY", "sec-test-key")
os.environ.setdefault("SUPABASE_JWT_SECRET", "test-jwt-secret")

from libs.db.base import Base  # noqa: E402
from services.billing_service import models as _billing_models  # noqa: E402,F401
from services.billing_service.app.main import app  # noqa: E402
from tests.factories import FakeGateway  # noqa: E402

TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")


@pytest_asyncio.fixture
async def test_engine():
    """
    Fresh schema per test. In-memory SQLite by default; StaticPool keeps the
    single connection (and therefore the database) alive for the whole test.
    """
    options = {}
    if TEST_DATABASE_URL.startswith("sqlite"):
        options = {
            "connect_args": {"check_same_thread": False},
            "poolclass": StaticPool,
        }
    engine = create_async_engine(TEST_DATABASE_URL, **options)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session bound to the test engine. Services commit for real."""
    session_factory = async_sessionmaker(
        bind=test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest_asyncio.fixture
async def client(db_session, fake_gateway) -> AsyncGenerator[AsyncClient, None]:
    """
    AsyncClient against the billing app with the DB session and payment
    gateway overridden. Requests are unauthenticated unless a test wraps them
    in ``override_auth``.
    """
    from libs.db.session import get_async_db
    from services.billing_service.paychangu_client import get_paychangu_client

    app.dependency_overrides[get_async_db] = lambda: db_session
    app.dependency_overrides[get_paychangu_client] = lambda: fake_gateway

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
