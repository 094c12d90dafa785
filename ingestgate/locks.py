from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
import hashlib
import logging
import os
import socket

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from ingestgate.errors import LockContentionError
from ingestgate.store import release_lease, try_acquire_lease


logger = logging.getLogger(__name__)


def lock_name(job_name: str, partition: str) -> str:
    return f"{job_name}:{partition}"


def advisory_keys(name: str) -> tuple[int, int]:
    digest = hashlib.blake2b(name.encode("utf-8"), digest_size=8).digest()
    return (
        int.from_bytes(digest[:4], "big", signed=True),
        int.from_bytes(digest[4:], "big", signed=True),
    )


def _owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


@asynccontextmanager
async def sync_lock(engine: AsyncEngine, name: str, *, ttl_seconds: int) -> AsyncIterator[None]:
    if engine.dialect.name == "postgresql":
        key1, key2 = advisory_keys(name)
        # Session-level advisory locks belong to one connection, so hold it for the whole section.
        async with engine.connect() as conn:
            acquired = await conn.scalar(
                text("SELECT pg_try_advisory_lock(:key1, :key2)"), {"key1": key1, "key2": key2}
            )
            await conn.commit()
            if not acquired:
                raise LockContentionError(name)
            logger.info("sync lock acquired", extra={"lock_name": name, "keys": [key1, key2]})
            try:
                yield
            finally:
                await conn.execute(text("SELECT pg_advisory_unlock(:key1, :key2)"), {"key1": key1, "key2": key2})
                await conn.commit()
        return

    owner = _owner()
    async with AsyncSession(engine, expire_on_commit=False) as db:
        if not await try_acquire_lease(db, name=name, owner=owner, ttl_seconds=ttl_seconds):
            raise LockContentionError(name)
        logger.info("sync lock acquired", extra={"lock_name": name, "owner": owner})
        try:
            yield
        finally:
            await release_lease(db, name=name, owner=owner)
