"""
Pytest configuration and fixtures.

WHY: Fixtures provide reusable test setup/teardown logic, reducing
duplication and ensuring consistent test environments.
"""

import os

# Settings are read at import time, so the environment must be in place
# before anything from scribe is imported.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SESSION_JWT_SECRET", "test-session-secret")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_PRICE_PRO", "price_test_pro")
os.environ.setdefault("STRIPE_PRICE_ENTERPRISE", "price_test_enterprise")
os.environ.setdefault("CASHFREE_APP_ID", "cf_test_app")
os.environ.setdefault("CASHFREE_SECRET_KEY", "cf_test_secret_key")
os.environ.setdefault("CASHFREE_WEBHOOK_SECRET", "cf_test_webhook_secret")

from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import AsyncClient, ASGITransport  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from scribe.main import app  # noqa: E402
from scribe.models.base import Base  # noqa: E402
from scribe.db.session import get_db  # noqa: E402
from scribe.core.auth import create_session_token  # noqa: E402
from scribe.core.config import settings  # noqa: E402
from tests.factories import TEST_USER_EMAIL, TEST_USER_ID  # noqa: E402


# Test database URL
# WHY: SQLite keeps tests free of external services. StaticPool shares the
# single in-memory connection between the engine and every session.
TEST_ASYNC_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """
    Create a test database engine.

    WHY: Function scope ensures each test gets a fresh database state,
    preventing test pollution and ensuring test isolation.
    """
    engine = create_async_engine(
        TEST_ASYNC_DATABASE_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """
    Create a test database session.

    Yields:
        AsyncSession: Database session for the test
    """
    async_session = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def client(db_session: AsyncSession) -> AsyncGenerator[AsyncClient, None]:
    """
    Create a test HTTP client.

    WHY: AsyncClient allows testing FastAPI endpoints without running
    a real server, making tests faster and more reliable.

    Yields:
        AsyncClient: HTTP client for making test requests
    """

    async def override_get_db():
        """Override database dependency with test session."""
        yield db_session

    app.dependency_overrides[get_db] = override_get_db

    # raise_app_exceptions=False lets the 500 handler answer instead of
    # the transport re-raising unhandled errors into the test
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ============================================================================
# Session helpers
# ============================================================================


@pytest.fixture
def session_token() -> str:
    """Valid session JWT for TEST_USER_ID."""
    return create_session_token(TEST_USER_ID, email=TEST_USER_EMAIL)


@pytest.fixture
def auth_cookies(session_token: str) -> dict:
    """
    Session cookie as the browser would send it.

    WHY: The dashboard authenticates with the identity provider's cookie,
    not an Authorization header.
    """
    return {settings.SESSION_COOKIE_NAME: session_token}



@pytest.fixture
def auth_headers(session_token: str) -> dict:
    """Bearer header for scripts and tests that do not send cookies."""
    return {"Authorization": f"Bearer {session_token}"}
