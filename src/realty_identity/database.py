"""
═══════════════════════════════════════════════════════════════════════════════
Identity — Database Connection Pool
═══════════════════════════════════════════════════════════════════════════════

asyncpg pool of the identity service plus the ``serializable()`` transaction
helper used by every invariant-touching repository operation.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, TypeVar

import asyncpg

from realty_identity.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SERIALIZATION_RETRIES = 3

# ═══════════════════════════════════════════════════════════════════════════════
# Module-level pool singleton
# ═══════════════════════════════════════════════════════════════════════════════
_pool: asyncpg.Pool | None = None


async def get_pool() -> asyncpg.Pool:
    """
    Returns the global PostgreSQL pool of the identity database.

    The pool is created on first call from IdentitySettings.
    """
    global _pool
    if _pool is None:
        settings = get_settings()
        _pool = await asyncpg.create_pool(
            dsn=settings.database_url,
            min_size=settings.database_pool_min,
            max_size=settings.database_pool_max,
            command_timeout=settings.database_command_timeout,
        )
        logger.info(
            f"Identity DB pool created "
            f"(min={settings.database_pool_min}, max={settings.database_pool_max})"
        )
    return _pool


async def close_pool() -> None:
    """Closes the global identity DB pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None
        logger.info("Identity DB pool closed")


@asynccontextmanager
async def get_connection() -> AsyncGenerator[asyncpg.Connection, None]:
    """
    Borrows a connection from the pool and returns it afterwards.

    Usage::

        async with get_connection() as conn:
            row = await conn.fetchrow("SELECT * FROM identities WHERE id = $1", identity_id)
    """
    pool = await get_pool()
    async with pool.acquire() as conn:
        yield conn


async def serializable(work: Callable[[asyncpg.Connection], Awaitable[T]]) -> T:
    """
    Runs ``work(conn)`` inside a SERIALIZABLE transaction.

    Serialization failures are retried up to ``SERIALIZATION_RETRIES`` times;
    any other error aborts the transaction and propagates. Cancellation of
    the caller aborts the in-flight transaction.
    """
    for attempt in range(1, SERIALIZATION_RETRIES + 1):
        try:
            async with get_connection() as conn:
                async with conn.transaction(isolation="serializable"):
                    return await work(conn)
        except asyncpg.exceptions.SerializationError:
            if attempt == SERIALIZATION_RETRIES:
                raise
            logger.debug("Serialization conflict, retrying (attempt %d)", attempt)
            await asyncio.sleep(0.01 * attempt)
    raise RuntimeError("unreachable")


async def check_connection() -> bool:
    """Checks that the identity PostgreSQL answers (health check)."""
    try:
        async with get_connection() as conn:
            result = await conn.fetchval("SELECT 1")
            return result == 1
    except Exception as e:
        logger.error(f"Identity DB health check failed: {e}")
        return False
