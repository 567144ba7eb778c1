"""
Async SQLAlchemy engine, session factory and declarative base.
"""

from typing import Any, AsyncGenerator, Dict

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings


def _build_database_url(url: str) -> str:
    """Coerce plain postgres URLs to the asyncpg driver."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


engine = create_async_engine(
    _build_database_url(settings.DATABASE_URL),
    echo=settings.DATABASE_ECHO,
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        yield session


def insert_ignoring_conflicts(db: AsyncSession, model: Any, values: Dict[str, Any]):
    """
    Build an INSERT that silently skips rows whose key already exists.

    Used for auto-vivifying ledger rows without a read-then-write round trip.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model).values(**values).on_conflict_do_nothing()
    if dialect == "sqlite":
        return sqlite_insert(model).values(**values).on_conflict_do_nothing()
    raise RuntimeError(f"Unsupported database dialect for ledger writes: {dialect}")
