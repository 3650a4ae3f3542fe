"""Async database engine and session factory.

Supports both PostgreSQL (production) and SQLite (local dev / tests).
"""

from pathlib import Path

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from paygate.config import get_settings


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine, swapping in aiosqlite for SQLite URLs."""
    if db_url.startswith("sqlite"):
        if not db_url.startswith("sqlite+aiosqlite"):
            db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        # Ensure parent dir exists for the .db file
        db_path = db_url.split("///")[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(db_url, echo=echo, connect_args={"check_same_thread": False})
    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()
engine = create_engine(settings.database_url, echo=settings.debug)
async_session_factory = create_session_factory(engine)
