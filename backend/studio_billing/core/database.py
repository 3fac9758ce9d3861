"""Async database engine and session factory."""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from studio_billing.core.config import settings


class Base(DeclarativeBase):
    """Declarative base for all ORM models."""


engine = create_async_engine(
    settings.DATABASE_URL,
    echo=False,
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async DB session."""
    async with async_session_maker() as session:
        yield session


# Alias kept for dependency declarations that read better as "db"
get_db = get_session


async def init_db() -> None:
    """Create all tables. Use migrations in production."""
    # Import models so they register on Base.metadata
    from studio_billing.modules.tenant import models as _tenant  # noqa: F401
    from studio_billing.modules.membership import models as _membership  # noqa: F401
    from studio_billing.modules.ledger import models as _ledger  # noqa: F401
    from studio_billing.modules.notification import models as _notification  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
