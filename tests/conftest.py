from __future__ import annotations

import inspect
from collections.abc import AsyncGenerator, Iterator
from pathlib import Path

import pytest
from alembic import command
from alembic.config import Config

from content_tree.config import settings
from content_tree.db import dispose_engine_cache, get_engine, reset_engine_cache


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_engine_cache_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose the cached AsyncEngine (aiosqlite worker thread) before the
    # per-test event loop is torn down.
    _ = anyio_backend
    yield

    # Prefer the async disposal so sqlite worker threads shut down while the
    # event loop is still alive.
    try:
        engine = get_engine()
    except Exception:
        engine = None

    if engine is not None:
        try:
            result = engine.dispose()
            if inspect.isawaitable(result):
                await result
        except Exception:
            # Best-effort: fall back to sync pool dispose below.
            pass

    dispose_engine_cache()

    # Clear cached engine so the next test doesn't reuse a half-closed engine.
    get_engine.cache_clear()


@pytest.fixture
def tree_db(tmp_path: Path) -> Iterator[str]:
    """Point settings at a fresh SQLite file migrated to head."""
    old_db = settings.database_url
    try:
        settings.database_url = f"sqlite:///{tmp_path / 'test-tree.db'}"
        reset_engine_cache()
        command.upgrade(Config("alembic.ini"), "head")
        yield settings.database_url
    finally:
        settings.database_url = old_db


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    # Safety net: close cached engine so CI can exit cleanly.
    _ = session, exitstatus
    dispose_engine_cache()
