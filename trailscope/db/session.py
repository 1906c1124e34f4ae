# trailscope/db/session.py
import os
from functools import lru_cache
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from trailscope.core.settings import get_settings
from trailscope.db.models import Base

# pytest or ENV=test/ci: no pooling, every checkout gets a fresh connection
_IS_TEST = bool(os.getenv("PYTEST_CURRENT_TEST")) or os.getenv("ENV") in {"test", "ci"}


def make_engine(url: str) -> AsyncEngine:
    opts = {"echo": False, "pool_pre_ping": True}
    if _IS_TEST or url.startswith("sqlite"):
        opts["poolclass"] = NullPool
    return create_async_engine(url, **opts)


@lru_cache
def get_engine() -> AsyncEngine:
    return make_engine(get_settings().DATABASE_URL)


@lru_cache
def get_replica_engine() -> AsyncEngine:
    settings = get_settings()
    if not settings.REPLICA_DATABASE_URL:
        return get_engine()
    return make_engine(settings.REPLICA_DATABASE_URL)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with make_sessionmaker(get_replica_engine())() as session:
        yield session


async def init_models(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
