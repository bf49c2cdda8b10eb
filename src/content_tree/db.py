from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from content_tree import models  # noqa: F401  # registers tables on SQLModel.metadata
from content_tree.config import settings
from content_tree.db_urls import normalize_database_url_for_async


def _enable_sqlite_foreign_keys(dbapi_connection: object, _record: object) -> None:
    cursor = dbapi_connection.cursor()  # pyright: ignore[reportAttributeAccessIssue]
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _create_async_engine(database_url: str) -> AsyncEngine:
    url = normalize_database_url_for_async(database_url)
    engine = create_async_engine(url, echo=False, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
    return engine


@lru_cache(maxsize=4)
def get_engine() -> AsyncEngine:
    # Rebuilt after settings.database_url changes (tests, deploys) via reset_engine_cache().
    return _create_async_engine(settings.database_url)


def dispose_engine_cache() -> None:
    if get_engine.cache_info().currsize == 0:
        return
    engine = get_engine()
    engine.sync_engine.dispose()


def reset_engine_cache() -> None:
    dispose_engine_cache()
    get_engine.cache_clear()


async def init_db() -> None:
    # Local/test bootstrap only; Alembic owns the production schema.
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def _session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session
