"""Pytest configuration and fixtures."""

import os
import pytest
from typing import AsyncGenerator
from unittest.mock import MagicMock, patch
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

# Set DATABASE_URL for tests BEFORE importing formhook.db
# This prevents the module from trying to create /data directory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"

# Set encryption key for tests
from cryptography.fernet import Fernet
if "FORMHOOK_ENCRYPTION_KEY" not in os.environ:
    os.environ["FORMHOOK_ENCRYPTION_KEY"] = Fernet.generate_key().decode()

# Keep the background scheduler off and URL checks offline
os.environ["FORMHOOK_TESTING"] = "true"
os.environ["FORMHOOK_RESOLVE_WEBHOOK_DNS"] = "false"
os.environ["FORMHOOK_ALLOW_PRIVATE_URLS"] = "false"

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from formhook.db import Base
from formhook.models import *  # Import all models to ensure they're registered
from formhook.services.delivery_executor import DeliveryExecutor, delivery_executor
from formhook.services.retry_scheduler import RetryScheduler
from formhook.services.webhook_rate_limiter import WebhookRateLimiter, webhook_rate_limiter
from formhook.utils.encryption import encrypt_value

TEST_USER_ID = "user-1"
TEST_WEBHOOK_URL = "https://hooks.example.com/formhook"


@pytest.fixture(scope="function")
async def db_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture(scope="function")
async def db(db_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async_session_maker = async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )

    async with async_session_maker() as session:
        # Let SQLAlchemy manage transactions so commits inside services persist
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_rate_limiter():
    """Webhook ids restart at 1 in every test database; so must the limiter."""
    webhook_rate_limiter.reset()
    yield
    webhook_rate_limiter.reset()


@pytest.fixture
def mock_async_session_local(db):
    """Mock AsyncSessionLocal to return test database session.

    Services that open their own sessions (retry timers, the sweep, isolated
    dispatch) then run against the test's in-memory database.
    """

    class MockAsyncSessionLocal:
        """Mock async context manager for database sessions."""

        def __call__(self):
            return self

        async def __aenter__(self):
            return db

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            # Don't close the session - let the test fixture manage it
            return False

    mock_session_local = MockAsyncSessionLocal()

    with patch("formhook.services.retry_scheduler.AsyncSessionLocal", mock_session_local), \
         patch("formhook.services.webhook_service.AsyncSessionLocal", mock_session_local), \
         patch("formhook.services.scheduler.AsyncSessionLocal", mock_session_local):
        yield mock_session_local


class FakeReceiver:
    """Scripted webhook endpoint built on httpx.MockTransport.

    Queued items are consumed one per request: an int is returned as that
    status code, an exception is raised. Once the queue is empty every
    request gets ``200``.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.script: list = []
        self.transport = httpx.MockTransport(self.handle)

    def queue(self, *items) -> "FakeReceiver":
        self.script.extend(items)
        return self

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.script.pop(0) if self.script else 200
        if isinstance(item, Exception):
            raise item
        return httpx.Response(item, json={"received": True}, headers={"X-Receiver": "fake"})


@pytest.fixture
def receiver():
    return FakeReceiver()


@pytest.fixture
def apscheduler():
    """Create mock APScheduler."""
    mock_scheduler = MagicMock(spec=AsyncIOScheduler)
    mock_scheduler.add_job = MagicMock()
    return mock_scheduler


@pytest.fixture
def retries(apscheduler):
    return RetryScheduler(apscheduler)


@pytest.fixture
def executor(receiver, retries):
    """Executor wired to a private limiter, a mock-scheduled retry scheduler and the fake receiver."""
    instance = DeliveryExecutor(
        WebhookRateLimiter(), retries, transport=receiver.transport, timeout=5.0
    )
    retries.bind(instance)
    return instance


@pytest.fixture
def live_receiver(receiver):
    """Point the application-wide executor at the fake receiver."""
    with patch.object(delivery_executor, "transport", receiver.transport):
        yield receiver


@pytest.fixture
def make_webhook():
    """Factory fixture to create Webhook instances with valid required fields.

    Usage:
        webhook = make_webhook(agent_id="agent-1", triggers=["session_started"])
    """
    def _make_webhook(**kwargs):
        from formhook.models.webhook import Webhook

        auth_token = kwargs.pop("auth_token", None)
        defaults = {
            "user_id": TEST_USER_ID,
            "agent_id": None,
            "url": TEST_WEBHOOK_URL,
            "method": "POST",
            "headers": {},
            "auth_type": "none",
            "triggers": ["session_completed"],
            "retry_policy": {"max_retries": 3, "backoff_type": "exponential", "initial_delay_ms": 1000},
            "rate_limit_per_minute": 60,
            "enabled": True,
            "status": "active",
        }
        data = {**defaults, **kwargs}
        if auth_token is not None:
            data["auth_token"] = encrypt_value(auth_token)
        return Webhook(**data)

    return _make_webhook


@pytest.fixture
def make_event():
    """Factory fixture for DomainEvent instances."""
    def _make_event(**kwargs):
        from formhook.schemas.event import DomainEvent

        defaults = {
            "kind": "session_completed",
            "user_id": TEST_USER_ID,
            "agent_id": "agent-1",
            "session_id": "session-1",
            "payload": {"fields": {"email": "jane@example.com"}},
        }
        return DomainEvent(**{**defaults, **kwargs})

    return _make_event


@pytest.fixture
async def app():
    """Create FastAPI app for testing."""
    from formhook.main import app as application
    return application


@pytest.fixture
async def client(app, db):
    """Create async test client acting as TEST_USER_ID."""
    from httpx import AsyncClient, ASGITransport
    from formhook.db import get_db

    async def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-User-Id": TEST_USER_ID},
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
