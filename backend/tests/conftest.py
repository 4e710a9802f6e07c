"""
Pytest configuration and fixtures for backend tests.

Provides shared fixtures for:
- In-memory async database sessions
- A scripted push gateway
- Registration helpers
- An API client wired to the test database
"""

import asyncio
import os
import tempfile

# Set test environment variables before importing app modules
os.environ["DATA_PATH"] = tempfile.mkdtemp(prefix="pushhub-test-")
os.environ.pop("DATABASE_URL", None)
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_API_KEY"] = ""
os.environ["PUSH_GATEWAY"] = "none"

import httpx
import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from pushhub import models  # noqa: F401
from pushhub.database import Base, get_db
from pushhub.services.dispatcher import DispatchEngine
from pushhub.services.gateway import GatewayResult
from pushhub.services.registry import device_registry


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def db_engine():
    """Create an in-memory SQLite database engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


# ============================================================================
# Gateway Fixtures
# ============================================================================

class ScriptedGateway:
    """Gateway that answers per token from a script.

    A script entry is a GatewayResult, an exception instance to raise, or
    ``"hang"`` to never answer. Unscripted tokens are delivered.
    """

    def __init__(self, script=None, delay: float = 0.0):
        self.script = dict(script or {})
        self.delay = delay
        self.calls = []
        self.platforms = {}
        self.in_flight = 0
        self.max_in_flight = 0

    async def send(self, token, payload, platform=None):
        self.calls.append((token, payload))
        self.platforms[token] = platform
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcome = self.script.get(token, GatewayResult.delivered())
            if isinstance(outcome, BaseException):
                raise outcome
            if outcome == "hang":
                await asyncio.sleep(3600)
            return outcome
        finally:
            self.in_flight -= 1

    @property
    def tokens_sent(self):
        return [token for token, _ in self.calls]


@pytest.fixture
def gateway():
    return ScriptedGateway()


@pytest.fixture
def engine(gateway):
    return DispatchEngine(gateway=gateway, concurrency=4, send_timeout=1.0)


# ============================================================================
# Sample Data Factories
# ============================================================================

@pytest.fixture
def register(db_session):
    """Factory registering a device in the test database."""
    async def _register(
        token,
        user_id="U1",
        platform="android",
        device_id=None,
        metadata=None,
        settings=None,
    ):
        return await device_registry.register(
            db_session,
            token=token,
            user_id=user_id,
            platform=platform,
            device_id=device_id or f"dev-{token}",
            metadata=metadata,
            settings=settings,
        )
    return _register


def make_user_token(user_id: str, secret: str = "test-secret") -> str:
    """Issue a bearer JWT the way the auth service does."""
    return jwt.encode({"userId": user_id}, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def _headers(user_id="U1"):
        return {"Authorization": f"Bearer {make_user_token(user_id)}"}
    return _headers


# ============================================================================
# API Fixtures
# ============================================================================

@pytest_asyncio.fixture
async def client(session_factory, engine):
    """HTTP client for the app backed by the test database and gateway."""
    from pushhub.main import create_app
    from pushhub.routers.notifications import get_dispatch_engine

    app = create_app()

    async def _get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_dispatch_engine] = lambda: engine

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http
