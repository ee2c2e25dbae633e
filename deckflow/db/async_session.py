from __future__ import annotations

from pathlib import Path
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

SQLITE_PREFIX = "sqlite+aiosqlite:///"


def _ensure_sqlite_dirs(url: str) -> None:
    if not url.startswith(SQLITE_PREFIX):
        return
    path = url.replace(SQLITE_PREFIX, "", 1)
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def build_async_url(db_path: str | Path) -> str:
    """Accept a full SQLAlchemy URL or a filesystem path to a SQLite file."""
    raw = str(db_path)
    if "://" in raw:
        return raw
    return f"{SQLITE_PREFIX}{Path(raw)}"


def create_async_engine_and_session(db_url: str) -> Tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    _ensure_sqlite_dirs(db_url)
    kwargs = {}
    if db_url.startswith("sqlite"):
        # Concurrent writers wait on the file lock instead of failing immediately.
        kwargs["connect_args"] = {"timeout": 30}
    engine = create_async_engine(db_url, future=True, echo=False, **kwargs)
    SessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, SessionLocal
