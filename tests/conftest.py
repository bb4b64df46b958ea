"""Pytest configuration and fixtures.

Each test gets a fresh in-memory SQLite database holding the grant store
tables plus a few business tables that permission sets can grant.
"""
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

from app.core.database.base import Base
from app.core.database.engine import create_session_factory, enable_sqlite_foreign_keys, get_db
from app.features.access.resolver import AssignmentResolver
from app.features.audit.models import AuditLog  # noqa: F401
from app.features.permission_sets.models import PermissionSet
from app.features.permission_sets.service import GrantStore
from app.features.profiles.models import Profile  # noqa: F401
from app.features.profiles.service import ProfileService
from app.features.users.dependencies import get_current_admin_user
from app.features.users.models import User
from app.main import app


# ── Test Database Setup ──────────────────────────────────────────

BUSINESS_TABLES = [
    """
    CREATE TABLE orders (
        id INTEGER PRIMARY KEY,
        customer_id INTEGER,
        total NUMERIC,
        status VARCHAR(20)
    )
    """,
    """
    CREATE TABLE customers (
        id INTEGER PRIMARY KEY,
        name VARCHAR(100),
        email VARCHAR(255)
    )
    """,
]


@pytest_asyncio.fixture
async def test_engine():
    """Create an in-memory database shared by every connection of one test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for ddl in BUSINESS_TABLES:
            await conn.execute(text(ddl))

    yield engine

    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create database session for tests."""
    session_factory = create_session_factory(test_engine)
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def store(db_session: AsyncSession) -> GrantStore:
    return GrantStore(db_session)


@pytest.fixture
def profile_service(db_session: AsyncSession) -> ProfileService:
    return ProfileService(db_session)


@pytest.fixture
def resolver(db_session: AsyncSession, profile_service: ProfileService) -> AssignmentResolver:
    return AssignmentResolver(db_session, profiles=profile_service)


# ── Test Data Fixtures ───────────────────────────────────────────

@pytest_asyncio.fixture
async def sales(store: GrantStore) -> PermissionSet:
    """Permission set "Sales"."""
    return await store.create_permission_set("Sales", "Order desk")


@pytest.fixture
def admin_user() -> User:
    return User(
        id="01HADMIN000000000000000000",
        appwrite_id="admin-appwrite-id",
        email="admin@example.com",
        name="Admin",
        is_active=True,
        is_admin=True,
    )


@pytest_asyncio.fixture
async def client(db_session: AsyncSession, admin_user: User) -> AsyncGenerator[AsyncClient, None]:
    """Create test client with the database and admin dependencies overridden."""

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_admin_user] = lambda: admin_user

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
