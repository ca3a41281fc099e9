from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from notifyhub.core.config import Settings, get_settings
from notifyhub.domain.models import Base


def build_engine(settings: Settings | None = None, *, database_url: str | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = database_url or settings.database_url
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    # Configure bounded asyncpg pools for predictable latency under load.
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
        engine_kwargs["max_overflow"] = max(0, int(settings.db_max_overflow))
        engine_kwargs["pool_timeout"] = 30
        engine_kwargs["pool_recycle"] = 1800
    return create_async_engine(url, **engine_kwargs)


class Database:
    """Owns one async engine and its session factory for the process lifetime."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    @classmethod
    def from_settings(cls, settings: Settings | None = None, *, database_url: str | None = None) -> "Database":
        return cls(build_engine(settings, database_url=database_url))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self._sessionmaker() as session:
            yield session

    async def ping(self) -> bool:
        async with self._engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def create_schema(self) -> None:
        # Local runs and tests only; deployed databases are migrated with Alembic.
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self._engine.dispose()

    def pool_stats(self) -> dict[str, int | None]:
        # Expose pool counters for ops visibility without querying Postgres internals.
        pool = self._engine.sync_engine.pool
        checked_out_fn = getattr(pool, "checkedout", None)
        checked_in_fn = getattr(pool, "checkedin", None)
        overflow_fn = getattr(pool, "overflow", None)
        size_fn = getattr(pool, "size", None)
        return {
            "size": int(size_fn()) if callable(size_fn) else None,
            "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
            "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
            "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
        }
