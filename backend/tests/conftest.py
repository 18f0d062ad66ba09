"""
Kindred Ops - Test Fixtures
===========================

Shared pytest fixtures for all tests.
"""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from kindred_ops.api.main import app
from kindred_ops.core.config import settings
from kindred_ops.core.database import Base, get_db
from kindred_ops.core.ops.policy import AUTO_APPROVE_POLICY, PolicyStore

from factories import DEFAULT_ALLOWED


# ==========================================================================
# Test Database Setup
# ==========================================================================

# Use in-memory SQLite for tests (fast)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = async_sessionmaker(
    bind=test_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


# ==========================================================================
# Database Fixtures
# ==========================================================================

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a clean database session for each test.

    Creates all tables before test, drops after.
    """
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestingSessionLocal() as session:
        yield session

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def session_factory(db_session: AsyncSession) -> async_sessionmaker:
    """Session factory for background components (agents, scheduler)."""
    return TestingSessionLocal


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Provide test HTTP client with database override.
    """
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def no_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ops routes are open unless a test sets a key."""
    monkeypatch.setattr(settings, "OPS_API_KEY", None)


# ==========================================================================
# Policy Fixtures
# ==========================================================================

@pytest_asyncio.fixture
async def default_policies(db_session: AsyncSession) -> PolicyStore:
    """Auto-approve allow-list [build, test, deploy, code_review, audit]."""
    store = PolicyStore(db_session)
    await store.put(AUTO_APPROVE_POLICY, {"allowed": DEFAULT_ALLOWED})
    return store
