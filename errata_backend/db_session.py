"""
SQLAlchemy async session setup for the Errata backend.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import event
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from errata_backend.config import DATABASE_URL, SQL_ECHO


def normalize_database_url(url: str) -> str:
    # Convert postgres:// to postgresql+asyncpg:// for SQLAlchemy async
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _enable_sqlite_transactions(engine: AsyncEngine) -> None:
    # pysqlite defers BEGIN until the first write, which breaks SAVEPOINT and
    # lets concurrent read-then-write transactions fail on lock upgrade.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    url = normalize_database_url(url or DATABASE_URL)
    is_sqlite = url.startswith("sqlite")
    engine = create_async_engine(
        url,
        echo=SQL_ECHO,  # Set SQL_ECHO=true for SQL query logging
        future=True,
        connect_args={"timeout": 30} if is_sqlite else {},
    )
    if is_sqlite:
        _enable_sqlite_transactions(engine)
    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Created lazily so that importing models/services never opens a connection.
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker] = None


def get_session_factory() -> async_sessionmaker:
    global _engine, _session_factory
    if _session_factory is None:
        _engine = build_engine()
        _session_factory = build_session_factory(_engine)
    return _session_factory


async def get_async_session():
    """
    Dependency function to get database session.

    Usage in FastAPI endpoints:
        @router.post("/endpoint")
        async def my_endpoint(db: AsyncSession = Depends(get_async_session)):
            ...
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def get_session_factory_dependency() -> async_sessionmaker:
    """FastAPI dependency for handlers that open their own units of work."""
    return get_session_factory()


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker) -> AsyncIterator[AsyncSession]:
    """
    Unit of work: commits when the block exits normally and rolls back on
    any exception (including cancellation), then closes the session.

    Usage:
        async with transaction(session_factory) as session:
            ...
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except BaseException:
        await session.rollback()
        raise
    finally:
        await session.close()


def is_unique_constraint_error(exc: BaseException) -> bool:
    """Return True when exc is a unique-constraint violation from any supported driver."""
    if not isinstance(exc, IntegrityError):
        return False
    orig = getattr(exc, "orig", None)
    # asyncpg: UniqueViolationError / sqlstate 23505
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate == "23505":
        return True
    message = str(orig if orig is not None else exc).lower()
    return "unique" in message or "duplicate key" in message
