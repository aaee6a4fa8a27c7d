"""
Async Postgres helpers for the identity store.

Organizations, users and memberships live in Postgres; the pool is created
lazily from DatabaseSettings and closed on server shutdown.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import asyncpg

from src.config import get_settings

logger = logging.getLogger(__name__)

_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


def get_database_url() -> Optional[str]:
    """Prefer a direct (non-pooler) URL for long-lived backends if provided."""
    return get_settings().database.effective_url


def is_database_configured() -> bool:
    return bool(get_database_url())


async def get_pool() -> Optional[asyncpg.Pool]:
    global _pool
    if _pool is not None:
        return _pool

    dsn = get_database_url()
    if not dsn:
        return None

    settings = get_settings().database

    async with _pool_lock:
        if _pool is not None:
            return _pool

        # Statement cache stays off so PgBouncer-style poolers behave like direct URLs.
        _pool = await asyncpg.create_pool(
            dsn=dsn,
            min_size=settings.database_pool_min_size,
            max_size=settings.database_pool_max_size,
            command_timeout=settings.database_command_timeout,
            statement_cache_size=0,
        )

    logger.info(
        "Postgres pool initialized (min=%s max=%s)",
        settings.database_pool_min_size,
        settings.database_pool_max_size,
    )
    return _pool


async def _require_pool() -> asyncpg.Pool:
    pool = await get_pool()
    if pool is None:
        raise RuntimeError("DATABASE_URL is not configured")
    return pool


async def fetchrow(query: str, *args):
    pool = await _require_pool()
    async with pool.acquire() as conn:
        return await conn.fetchrow(query, *args)


async def fetch(query: str, *args):
    pool = await _require_pool()
    async with pool.acquire() as conn:
        return await conn.fetch(query, *args)


async def execute(query: str, *args):
    pool = await _require_pool()
    async with pool.acquire() as conn:
        return await conn.execute(query, *args)


async def close_pool() -> None:
    """Close the global asyncpg pool (used during graceful shutdown)."""
    global _pool
    if _pool is None:
        return
    try:
        await _pool.close()
    finally:
        _pool = None
