"""Pytest configuration and fixtures for backend tests.

Tests run against in-memory SQLite (aiosqlite) with a StaticPool so every
session in a test shares one connection. Each test gets its own app built
by ``create_app`` around a fresh revocation store, rate limiter and token
service, all driven by a controllable clock.
"""

import os
import time
from collections.abc import AsyncGenerator, Awaitable, Callable

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment variables before importing app modules
os.environ["INSIGHT_ENCRYPTION_KEY"] = "0" * 64  # Valid 32-byte key for tests
os.environ["JWT_SECRET_KEY"] = "test-jwt-secret-key-with-at-least-32-chars"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["ENVIRONMENT"] = "test"

TEST_DATABASE_URL = "sqlite+aiosqlite://"
TEST_JWT_SECRET = os.environ["JWT_SECRET_KEY"]


class FakeClock:
    """Callable returning a Unix time that only moves when told to."""

    def __init__(self, start: float | None = None):
        self.now = float(int(time.time())) if start is None else start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# --- Core components ---


@pytest.fixture
def revocation_store(clock):
    from app.services.revocation import InMemoryRevocationStore

    return InMemoryRevocationStore(clock=clock)


@pytest.fixture
def rate_limiter(clock):
    from app.middleware.rate_limit import RateLimiter

    return RateLimiter(clock=clock)


@pytest.fixture
def token_service(revocation_store, clock):
    from app.services.tokens import TokenService

    return TokenService(
        secret_key=TEST_JWT_SECRET,
        revocation_store=revocation_store,
        access_ttl_seconds=3600,
        refresh_ttl_seconds=7 * 86400,
        clock=clock,
    )


# --- Database Fixtures ---


@pytest_asyncio.fixture(scope="function")
async def db_engine():
    """Create an in-memory database engine with all tables."""
    from app.core.database import Base
    from app.models import RevokedToken, User  # noqa: F401

    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_factory() as session:
        yield session
        await session.rollback()


# --- Application Fixtures ---


@pytest.fixture
def test_app(revocation_store, rate_limiter, token_service, db_session):
    """App instance wired to the test components and database session."""
    from app.core.database import get_db
    from app.main import create_app

    app = create_app(
        revocation_store=revocation_store,
        rate_limiter=rate_limiter,
        token_service=token_service,
    )

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest_asyncio.fixture(scope="function")
async def async_client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """Async test client over the ASGI app (lifespan is not run)."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# --- Test Factories ---


@pytest.fixture
def user_factory(db_session) -> Callable[..., Awaitable]:
    """Factory for creating test User rows."""
    from app.services.principals import PrincipalDirectory

    counter = {"n": 0}

    async def _create_user(email: str | None = None, name: str | None = "Test User"):
        counter["n"] += 1
        n = counter["n"]
        return await PrincipalDirectory(db_session).create(
            provider_subject=f"google-oauth2|{n}",
            email=email or f"user{n}@example.com",
            name=name,
        )

    return _create_user


@pytest.fixture
def issue_tokens(token_service):
    """Issue a token pair for a User row."""
    from app.services.tokens import PrincipalIdentity

    def _issue(user):
        return token_service.issue(PrincipalIdentity(user.id, user.email))

    return _issue


def bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def auth_headers():
    return bearer
