from __future__ import annotations


def _normalize_postgres_scheme(url: str) -> str:
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]
    if url.startswith("postgresql://"):
        return "postgresql+psycopg://" + url[len("postgresql://") :]
    if url.startswith("postgresql+psycopg2://"):
        return url.replace("postgresql+psycopg2://", "postgresql+psycopg://", 1)
    return url


def normalize_database_url_for_async(database_url: str) -> str:
    """
    Map DATABASE_URL onto the async driver used at runtime.

    - SQLite: sqlite+aiosqlite://...
    - PostgreSQL: postgresql+psycopg://... (psycopg 3 serves both sync and async)
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite://") and "+aiosqlite" not in url:
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)

    return _normalize_postgres_scheme(url)


def normalize_database_url_for_alembic(database_url: str) -> str:
    """
    Alembic runs migrations on a sync engine, so async drivers are swapped out:

    - sqlite+aiosqlite:// -> sqlite://
    - postgresql:// -> postgresql+psycopg://
    """
    url = (database_url or "").strip()
    if not url:
        return url

    if url.startswith("sqlite+aiosqlite://"):
        return url.replace("sqlite+aiosqlite://", "sqlite://", 1)

    return _normalize_postgres_scheme(url)
