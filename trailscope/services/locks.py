"""Best-effort, non-blocking named locks for the maintenance jobs.

PostgreSQL uses a session advisory lock held on a dedicated connection.
Other backends use a row in ``job_locks`` that expires on its own, so a
crashed job cannot keep a domain locked forever.
"""
import hashlib
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import AsyncIterator, Optional

from sqlalchemy import delete, func, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncEngine

from trailscope.core.clock import utcnow
from trailscope.db.models import JobLock

logger = logging.getLogger(__name__)


def purge_lock_name(domain: str) -> str:
    return f"trailscope:purge:{domain}"


def advisory_key(name: str) -> int:
    # pg advisory locks take a signed bigint
    return int.from_bytes(hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest(), "big", signed=True)


async def _acquire_row(engine: AsyncEngine, name: str, owner: str, timeout_sec: int) -> bool:
    now = utcnow()
    try:
        async with engine.begin() as conn:
            await conn.execute(delete(JobLock).where(JobLock.jl_name == name, JobLock.jl_expires < now))
            await conn.execute(
                insert(JobLock).values(
                    jl_name=name, jl_owner=owner, jl_expires=now + timedelta(seconds=timeout_sec)
                )
            )
    except IntegrityError:
        return False
    return True


async def _release_row(engine: AsyncEngine, name: str, owner: str) -> None:
    async with engine.begin() as conn:
        await conn.execute(delete(JobLock).where(JobLock.jl_name == name, JobLock.jl_owner == owner))


@asynccontextmanager
async def named_lock(
    engine: AsyncEngine, name: str, timeout_sec: int = 60, owner: Optional[str] = None
) -> AsyncIterator[bool]:
    """Try to take ``name`` without waiting; yields whether it was acquired."""
    owner = owner or uuid.uuid4().hex
    if engine.dialect.name == "postgresql":
        key = advisory_key(name)
        async with engine.connect() as conn:
            acquired = bool((await conn.execute(select(func.pg_try_advisory_lock(key)))).scalar())
            await conn.commit()
            try:
                yield acquired
            finally:
                if acquired:
                    await conn.execute(select(func.pg_advisory_unlock(key)))
                    await conn.commit()
        return

    acquired = await _acquire_row(engine, name, owner, timeout_sec)
    try:
        yield acquired
    finally:
        if acquired:
            await _release_row(engine, name, owner)


def domain_lock(engine: AsyncEngine, domain: str, timeout_sec: int = 60):
    """Per-domain purge lock, see :func:`named_lock`."""
    logger.debug("trying purge lock for %s", domain, extra={"domain": domain})
    return named_lock(engine, purge_lock_name(domain), timeout_sec=timeout_sec)
