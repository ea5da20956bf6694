"""
Pytest configuration and fixtures for testing
"""
import pytest

from database import Base, build_engine, init_db, session_factory_for
from database_models import User
from services.plan_catalog import PlanCatalog
from crud.user import UserRepository
from factories import FakeStripeGateway, TEST_PLANS

# In-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def test_engine():
    """
    Fresh in-memory database per test, shared by every session of the test.
    """
    engine = build_engine(TEST_DATABASE_URL)
    await init_db(engine)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return session_factory_for(test_engine)


@pytest.fixture
async def test_db(session_factory):
    """
    Isolated AsyncSession for one test.
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
def user_repo(test_db):
    return UserRepository(test_db)


@pytest.fixture
def catalog():
    return PlanCatalog(TEST_PLANS)


@pytest.fixture
def fake_gateway():
    return FakeStripeGateway()


@pytest.fixture
def create_user(session_factory):
    """Create users the way the identity provider would, in their own session."""
    async def _create_user(user_id: str, email: str = None, **columns):
        async with session_factory() as session:
            user = User(id=user_id, email=email or f"{user_id}@example.com", **columns)
            session.add(user)
            await session.commit()
            return user
    return _create_user


@pytest.fixture
def fetch_user(session_factory):
    """Read a user through a fresh session so nothing comes from an identity map."""
    async def _fetch_user(user_id: str):
        async with session_factory() as session:
            return await UserRepository(session).get_user_by_id(user_id)
    return _fetch_user
