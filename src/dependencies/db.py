"""Database session dependency using SQLAlchemy async engine.

This sets up an AsyncSession factory bound to `Settings.DATABASE_URL`.
The engine isn't connected until first use, so importing this module
won't fail if the database file doesn't exist yet.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from core.config import get_settings


def _load_env_files() -> None:  # pragma: no cover - side-effect only
    # Try to load .env then .env.dev from repo root or any parent directory
    for fname in (".env", ".env.dev"):
        for p in Path(__file__).resolve().parents:
            candidate = p / fname
            if candidate.exists():
                load_dotenv(dotenv_path=candidate, override=False)
                return


def _normalize_database_url(url: str) -> str:
    """Coerce plain sqlite URLs to the aiosqlite driver."""
    if url.startswith("sqlite:///") or url == "sqlite://":
        url = "sqlite+aiosqlite" + url[len("sqlite") :]
    return url


def _engine_options(url: str) -> dict[str, Any]:
    # An in-memory sqlite database lives as long as its single connection.
    if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
        return {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    return {}


def _get_database_url() -> str:
    _load_env_files()
    return _normalize_database_url(get_settings().DATABASE_URL)


def build_engine(url: str) -> AsyncEngine:
    url = _normalize_database_url(url)
    return create_async_engine(url, future=True, echo=False, **_engine_options(url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)


DATABASE_URL = _get_database_url()
engine: AsyncEngine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(engine)


async def create_tables(bind: AsyncEngine | None = None) -> None:
    """Create any missing tables."""
    from models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

