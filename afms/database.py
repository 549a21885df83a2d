"""Database configuration and session management."""
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def is_memory_sqlite(database_url: str) -> bool:
    return database_url.startswith("sqlite") and (":memory:" in database_url or database_url.endswith("://"))


def build_engine(database_url: str) -> AsyncEngine:
    """Create the async engine for a database URL."""
    if is_memory_sqlite(database_url):
        # One shared connection, otherwise every checkout sees a fresh empty database
        return create_async_engine(database_url, poolclass=StaticPool, connect_args={"check_same_thread": False})

    if database_url.startswith("sqlite"):
        # SQLite-specific config
        return create_async_engine(database_url, echo=False)

    # PostgreSQL config (production)
    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=5,
        max_overflow=10,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create tables for every model registered on Base."""
    # Import models to register them with SQLAlchemy Base
    from afms.models import event, idempotency, rules  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
