from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from config.settings import settings, IS_PRODUCTION

# Validate production database configuration
if IS_PRODUCTION:
    if not settings.database_url:
        raise RuntimeError("DATABASE_URL must be set in production. SQLite is not allowed in production.")
    if "sqlite" in settings.database_url.lower():
        raise RuntimeError("SQLite is forbidden in production. Use a PostgreSQL DATABASE_URL.")

DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./sql_app.db"

Base = declarative_base()


def async_database_url(url: str) -> str:
    """
    Point plain Postgres URLs at the asyncpg driver.

    Hosting providers hand out ``postgres://`` or ``postgresql://`` URLs,
    neither of which names an async driver.
    """
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def build_engine(url: str, timeout: Optional[float] = None) -> AsyncEngine:
    """
    Create the async engine for ``url``.

    ``timeout`` becomes the driver's own limit: the SQLite busy timeout, or
    the asyncpg command timeout. In-memory SQLite shares one connection so
    every session sees the same database.
    """
    url = async_database_url(url)
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if timeout is not None:
            connect_args["timeout"] = timeout
        if ":memory:" in url:
            return create_async_engine(url, connect_args=connect_args, poolclass=StaticPool)
        return create_async_engine(url, connect_args=connect_args)

    connect_args = {"command_timeout": timeout} if timeout is not None else {}
    return create_async_engine(url, connect_args=connect_args, pool_pre_ping=True)


def session_factory_for(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(settings.database_url or DEFAULT_DATABASE_URL, timeout=settings.database_timeout_seconds)
AsyncSessionLocal = session_factory_for(engine)


async def init_db(bind: Optional[AsyncEngine] = None):
    """
    Create the users table if it does not exist yet.
    Called on application startup.
    """
    # Registers the model on Base
    from database_models import User  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Yield one session per request; its unit of work is committed when the
    endpoint returns and rolled back if it raises.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
