"""
Shutterbook Notifications — Test Configuration (conftest.py)
==============================================================

What:  Shared pytest fixtures for the entire test suite.
How:   pytest auto-discovers conftest.py and makes fixtures available to all tests.

Fixture Hierarchy (all function-scoped):
    ├── mock_db_session:        AsyncMock session (no database)
    ├── db_engine / db_session: in-memory SQLite (aiosqlite, StaticPool)
    ├── users:                  a client, a photographer and an admin
    ├── change_feed:            started InMemoryChangeFeed
    ├── orm_capture:            OrmChangeCapture wired to change_feed
    ├── registry:               empty SessionRegistry
    ├── make_row:               factory of notification row dicts
    └── test_client:            HTTPX AsyncClient over a fresh app
"""

import os

# Override settings BEFORE any shutterbook import
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["CHANGE_FEED_BACKEND"] = "memory"
os.environ["SESSION_SECRET_KEY"] = "test-session-secret-not-real"
os.environ["LOG_LEVEL"] = "WARNING"

from datetime import datetime, timezone
from types import SimpleNamespace
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from shutterbook.database import Base
from shutterbook.models import User, UserRole
from shutterbook.services.change_capture import OrmChangeCapture
from shutterbook.services.change_feed import InMemoryChangeFeed
from shutterbook.services.session_registry import SessionRegistry


# ══════════════════════════════════════════════════════════════════════════
# Database Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest.fixture
def mock_db_session():
    """
    Provides a mock async database session.

    Usage:
        mock_db_session.flush.side_effect = SQLAlchemyError("boom")
    """
    session = AsyncMock()
    session.execute = AsyncMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.close = AsyncMock()
    session.delete = AsyncMock()
    session.add = MagicMock()
    return session


@pytest_asyncio.fixture
async def db_engine():
    """In-memory SQLite shared by every session of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def users(session_factory):
    """One user per role, committed."""
    client = User(id=uuid4(), email="client@example.com", name="Casey Client", role=UserRole.CLIENT)
    photographer = User(
        id=uuid4(), email="photo@example.com", name="Pat Photographer", role=UserRole.PHOTOGRAPHER
    )
    admin = User(id=uuid4(), email="admin@example.com", name="Alex Admin", role=UserRole.ADMIN)
    async with session_factory() as session:
        session.add_all([client, photographer, admin])
        await session.commit()
    return SimpleNamespace(client=client, photographer=photographer, admin=admin)


# ══════════════════════════════════════════════════════════════════════════
# Change Feed / Stream Fixtures
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def change_feed():
    feed = InMemoryChangeFeed()
    await feed.start()
    yield feed
    await feed.stop()


@pytest.fixture
def orm_capture(change_feed):
    """Publishes committed Notification writes to change_feed for one test."""
    capture = OrmChangeCapture(change_feed)
    capture.install()
    yield capture
    capture.uninstall()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def make_row():
    """
    Factory of notification rows shaped like change feed records.

    Usage:
        row = make_row(user_id, title="Payment Confirmed")
    """
    def _make_row(user_id, **overrides):
        now = datetime.now(timezone.utc)
        row = {
            "id": uuid4(),
            "user_id": user_id,
            "booking_id": None,
            "type": "BOOKING_CREATED",
            "title": "Booking Created Successfully",
            "message": "Your booking SB-1234 has been created.",
            "action_url": None,
            "is_read": False,
            "created_at": now,
            "read_at": None,
            "updated_at": now,
        }
        row.update(overrides)
        return row

    return _make_row


# ══════════════════════════════════════════════════════════════════════════
# HTTP Client
# ══════════════════════════════════════════════════════════════════════════

@pytest_asyncio.fixture
async def test_client(session_factory, change_feed, registry):
    """
    HTTPX AsyncClient over a fresh app.

    The lifespan does not run under ASGITransport, so app.state is filled
    here and get_db_session is pointed at the in-memory database.
    """
    from shutterbook.database import get_db_session
    from shutterbook.main import create_app

    app = create_app()
    app.state.change_feed = change_feed
    app.state.session_registry = registry

    async def override_db_session():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db_session] = override_db_session

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        client.app = app
        yield client
