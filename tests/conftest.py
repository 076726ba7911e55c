"""Pytest configuration and fixtures for SchoolDesk tests.

Backing services:
- Redis is replaced by fakeredis (a fresh in-memory server per test)
- The relational store is a per-test SQLite file via aiosqlite
"""

import os
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# Set test environment variables before importing app modules
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["JWT_SECRET_KEY"] = "test-secret-key-" + "0" * 48
os.environ["DEBUG"] = "false"

TEST_SECRET_KEY = os.environ["JWT_SECRET_KEY"]
TEST_KEY_PREFIX = "test:"

# Test user credentials
TEST_USER_EMAIL = "teacher@school.example.com"
TEST_USER_USERNAME = "teacher"
TEST_USER_PASSWORD = "correct-horse-battery"


# --- Settings ---


@pytest.fixture
def test_settings():
    """Settings isolated from the environment's .env file."""
    from schooldesk.core.config import Settings

    return Settings(
        _env_file=None,
        jwt_secret_key=TEST_SECRET_KEY,
        redis_key_prefix=TEST_KEY_PREFIX,
        redis_operation_timeout=1.0,
        jwt_access_token_expires="15m",
        jwt_refresh_token_expires="7d",
        jwt_secure_token_expires="1h",
        permission_cache_ttl_seconds=600,
        login_rate_limit_per_minute=5,
    )


# --- Revocation Store ---


@pytest_asyncio.fixture
async def redis_client() -> AsyncGenerator[FakeRedis, None]:
    """In-memory Redis with its own server so tests never share keys."""
    client = FakeRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def store(redis_client):
    from schooldesk.core.revocation_store import RevocationStore

    return RevocationStore(redis_client, key_prefix=TEST_KEY_PREFIX, operation_timeout=1.0)


@pytest.fixture
def token_manager(test_settings, store):
    from schooldesk.services.tokens import TokenManager

    return TokenManager.from_settings(test_settings, store)


# --- Database Fixtures ---


@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """Create a SQLite database engine with all tables for one test."""
    from schooldesk.core.database import Base
    from schooldesk.models import Permission, Role, RolePermission, User, UserRole  # noqa: F401

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'schooldesk_test.db'}",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for testing."""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture
def resolver(session_maker):
    from schooldesk.services.permissions import PermissionResolver

    return PermissionResolver(session_maker, ttl_seconds=600)


# --- Application ---


@pytest.fixture
def app(test_settings, store, session_maker):
    from schooldesk.main import create_app

    return create_app(settings=test_settings, store=store, session_maker=session_maker)


@pytest_asyncio.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client bound to the test application."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture(autouse=True)
def reset_login_rate_limiter():
    """Clear login attempts so rate limiting never leaks between tests."""
    from schooldesk.api.auth import reset_login_attempts

    reset_login_attempts()
    yield
    reset_login_attempts()


# --- Test Factories ---


@pytest.fixture
def role_factory(db_session):
    """Factory for roles with (resource, action) grants."""
    from sqlalchemy import select

    from schooldesk.models import Permission, Role

    async def _permission(resource: str, action: str) -> Permission:
        result = await db_session.execute(
            select(Permission).where(Permission.resource == resource, Permission.action == action)
        )
        return result.scalar_one_or_none() or Permission(resource=resource, action=action)

    async def _create_role(
        name: str,
        grants: list[tuple[str, str]] | None = None,
        description: str | None = None,
    ) -> Role:
        permissions = [await _permission(r, a) for r, a in grants or []]
        role = Role(name=name, description=description, permissions=permissions)
        db_session.add(role)
        await db_session.commit()
        return role

    return _create_role


@pytest.fixture
def user_factory(db_session):
    """Factory for users, optionally holding roles."""
    from schooldesk.models import User
    from schooldesk.services.auth import hash_password

    counter = 0

    async def _create_user(
        email: str | None = None,
        username: str | None = None,
        password: str = TEST_USER_PASSWORD,
        roles: list | None = None,
        is_active: bool = True,
    ) -> User:
        nonlocal counter
        counter += 1
        user = User(
            email=email or f"user{counter}@school.example.com",
            username=username or f"user{counter}",
            password_hash=hash_password(password),
            first_name="Test",
            last_name=f"User{counter}",
            is_active=is_active,
            roles=list(roles or []),
        )
        db_session.add(user)
        await db_session.commit()
        return user

    return _create_user


@pytest_asyncio.fixture
async def teacher_user(user_factory, role_factory):
    """A user holding a 'teacher' role that can read students."""
    role = await role_factory("teacher", [("students", "read")])
    return await user_factory(
        email=TEST_USER_EMAIL,
        username=TEST_USER_USERNAME,
        roles=[role],
    )


@pytest_asyncio.fixture
async def admin_user(user_factory, role_factory):
    """A user holding the super role."""
    role = await role_factory("admin")
    return await user_factory(email="admin@school.example.com", username="admin", roles=[role])


async def issue_tokens(token_manager, user, role: str | None = None):
    """Issue a token pair for ``user`` the way login does."""
    return await token_manager.issue_pair(
        str(user.id),
        email=user.email,
        role=role if role is not None else (user.roles[0].name if user.roles else None),
    )


@pytest_asyncio.fixture
async def teacher_tokens(token_manager, teacher_user):
    return await issue_tokens(token_manager, teacher_user)


@pytest_asyncio.fixture
async def teacher_headers(teacher_tokens) -> dict[str, str]:
    """Headers with JWT token for authenticated requests."""
    return {"Authorization": f"Bearer {teacher_tokens.access_token}"}


@pytest_asyncio.fixture
async def admin_headers(token_manager, admin_user) -> dict[str, str]:
    tokens = await issue_tokens(token_manager, admin_user)
    return {"Authorization": f"Bearer {tokens.access_token}"}


# --- Pytest Hooks for Auto-Marking ---


def pytest_collection_modifyitems(config, items):
    """Mark tests as 'integration' when they touch the app or database, else 'unit'."""
    integration_fixtures = {"db_engine", "db_session", "session_maker", "async_client", "app"}

    for item in items:
        if any(mark.name in ("unit", "integration") for mark in item.iter_markers()):
            continue
        if integration_fixtures & set(getattr(item, "fixturenames", ())):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
