from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from masterdata.core.config import get_settings

READ_ONLY_OPTION = "masterdata_read_only"


def _serialize_sqlite_writers(engine: AsyncEngine) -> None:
    # Writers take the write lock up front since SQLite cannot upgrade a read lock safely under contention.
    # Sessions opened through read_only_session begin deferred and read a WAL snapshot without blocking writers.
    @event.listens_for(engine.sync_engine, "connect")
    def _configure_connection(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _begin(conn) -> None:
        if conn.get_execution_options().get(READ_ONLY_OPTION):
            conn.exec_driver_sql("BEGIN")
        else:
            conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str | None = None) -> AsyncEngine:
    settings = get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Let concurrent writers wait on the file lock instead of failing fast.
        engine_kwargs["connect_args"] = {"timeout": 30}
        engine = create_async_engine(url, **engine_kwargs)
        _serialize_sqlite_writers(engine)
        return engine
    # Configure bounded asyncpg pools for predictable latency under load.
    engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
    engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
    engine_kwargs["pool_timeout"] = 30
    engine_kwargs["pool_recycle"] = 1800
    if settings.db_statement_timeout_ms > 0:
        engine_kwargs["connect_args"] = {
            "server_settings": {"statement_timeout": str(int(settings.db_statement_timeout_ms))}
        }
    return create_async_engine(url, **engine_kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@lru_cache
def get_engine() -> AsyncEngine:
    return build_engine()


@lru_cache
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return build_session_factory(get_engine())


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with get_session_factory()() as session:
        yield session


@asynccontextmanager
async def read_only_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    async with session_factory() as session:
        # Bind the connection before the first statement so the begin hook sees the option.
        await session.connection(execution_options={READ_ONLY_OPTION: True})
        yield session
