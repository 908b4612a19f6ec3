"""
Pytest configuration and fixtures for testing
"""
from datetime import timedelta

import httpx
import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from config import settings

# Tokens in tests are signed with a throwaway key unless one is configured
if not settings.jwt_secret_key:
    settings.jwt_secret_key = "test-secret-key-do-not-use-in-production"

from auth_utils import create_jwt  # noqa: E402
from crud.subscription import SubscriptionRepository  # noqa: E402
from crud.user import UserRepository  # noqa: E402
from database import Base, enable_sqlite_savepoints, get_db, get_session_factory  # noqa: E402
from services.entitlement import utcnow  # noqa: E402


@pytest.fixture
async def test_engine(tmp_path):
    """
    File-backed SQLite engine per test.

    A file (not :memory:) plus NullPool lets the request handlers, background
    tasks and the test body each open their own connection on the same data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        echo=False,
        poolclass=NullPool,
    )
    enable_sqlite_savepoints(engine)

    # Import models to ensure they're registered with Base
    import database_models  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """
    Fixture that provides an isolated database session for each test.
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@pytest.fixture
async def async_client(session_factory):
    """
    Async HTTP client with the database dependencies pointed at the test engine.
    """
    from main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    # Cleanup: remove dependency overrides
    app.dependency_overrides.clear()


async def create_user(session_factory, email: str, is_admin: bool = False) -> str:
    """Insert a profile and return its id."""
    async with session_factory() as session:
        user = await UserRepository(session).create_user({"email": email, "is_admin": is_admin})
        await session.commit()
        return user.id


async def add_subscription(session_factory, user_id: str, status: str = "active",
                           period_end=None, plan_type: str = "agency", provider: str = "paypal",
                           external_id: str = "I-TEST"):
    """Insert or overwrite the current subscription row of a user."""
    async with session_factory() as session:
        row = await SubscriptionRepository(session).upsert_for_user(user_id, {
            "status": status,
            "plan_type": plan_type,
            "provider": provider,
            "external_subscription_id": external_id,
            "current_period_start": utcnow(),
            "current_period_end": period_end if period_end is not None else utcnow() + timedelta(days=10),
        })
        await session.commit()
        return row


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {create_jwt(user_id)}"}
