import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from parkwatch.core.config import settings
from parkwatch.core.errors import PersistenceError

logger = logging.getLogger(__name__)


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    """
    SQLite upgrades read locks to write locks lazily, and two transactions
    racing for that upgrade fail with "database is locked" instead of
    waiting. Taking the write lock at BEGIN makes them queue on the busy
    timeout, after which the compare-and-swap updates see committed state.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None, **kwargs) -> AsyncEngine:
    url = url or settings.DATABASE_URL
    is_sqlite = url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"timeout": 15})
    engine = create_async_engine(url, echo=settings.DATABASE_ECHO, **kwargs)
    if is_sqlite:
        _serialize_sqlite_writers(engine)
    return engine


engine = build_engine()
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def aget_db() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding one session per request."""
    async with SessionLocal() as session:
        yield session


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a block inside one transaction.

    Everything written through ``db`` in the block commits together or not at
    all. Storage failures roll back and surface as PersistenceError; domain
    errors raised in the block roll back and propagate unchanged.
    """
    if db.in_transaction():
        # close the implicit transaction opened by earlier reads
        await db.commit()
    try:
        async with db.begin():
            yield db
    except SQLAlchemyError as e:
        logger.error("Transaction rolled back: %s", e)
        raise PersistenceError("Storage operation failed", original=e) from e


async def create_all(bind: Optional[AsyncEngine] = None) -> None:
    from parkwatch.models.base import Base
    # import for side effects: register every table on Base.metadata
    from parkwatch.models import contests, notification, user, violations  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
