"""Shared asyncpg pool for the identity store and reputation ledger."""

from __future__ import annotations

import logging
from typing import Optional

import asyncpg

from shared.config import get_pg_uri
from shared.health import set_component

__all__ = ["close_pool", "get_pool", "init_pool", "set_pool"]

log = logging.getLogger("pumpkin.db")

_POOL: Optional[asyncpg.Pool] = None


async def init_pool(dsn: str | None = None, *, min_size: int = 1, max_size: int = 10) -> Optional[asyncpg.Pool]:
    """Create the process-wide pool and check it once.

    Returns ``None`` (and marks the ``identity`` component unhealthy) when no
    DSN is configured or the database refuses the connection; account lookups
    then report "not linked" and karma is skipped.
    """

    global _POOL
    if _POOL is not None:
        return _POOL

    resolved = (dsn or get_pg_uri()).strip()
    if not resolved:
        log.warning("PG_URI not set; identity store disabled")
        set_component("identity", False)
        return None

    try:
        pool = await asyncpg.create_pool(resolved, min_size=min_size, max_size=max_size)
        async with pool.acquire() as conn:
            await conn.execute("SELECT 1")
    except (OSError, asyncpg.PostgresError) as exc:
        log.error("identity store connection failed: %s", exc)
        set_component("identity", False)
        return None

    _POOL = pool
    set_component("identity", True)
    log.info("identity store connected", extra={"min_size": min_size, "max_size": max_size})
    return _POOL


def get_pool() -> Optional[asyncpg.Pool]:
    return _POOL


def set_pool(pool: Optional[asyncpg.Pool]) -> None:
    """Install ``pool`` directly (tests inject fakes here)."""

    global _POOL
    _POOL = pool


async def close_pool() -> None:
    global _POOL
    pool, _POOL = _POOL, None
    if pool is not None:
        await pool.close()
        log.info("identity store pool closed")
