"""asyncpg pool backing the call-event recorder.

The pool is process-wide and optional: the gateway only opens it when
`DB_CONNECTION_STRING` is configured, and the `call_events` table is created
on first connect.
"""

from __future__ import annotations

import contextlib
import logging
from collections.abc import AsyncIterator

import asyncpg

from ..config import settings

_LOGGER = logging.getLogger(__name__)
_pool: asyncpg.Pool | None = None

CALL_EVENTS_DDL = """
    CREATE TABLE IF NOT EXISTS call_events (
        event_id BIGSERIAL PRIMARY KEY,
        call_id TEXT NOT NULL,
        event_kind TEXT NOT NULL,
        machine TEXT,
        state_name TEXT,
        payload_json JSONB NOT NULL DEFAULT '{}'::jsonb,
        occurred_at TIMESTAMPTZ NOT NULL DEFAULT now()
    );
    CREATE INDEX IF NOT EXISTS call_events_call_id_idx ON call_events (call_id, occurred_at)
"""


async def ensure_schema(conn: asyncpg.Connection) -> None:
    """Creates the `call_events` table and its lookup index if missing."""
    await conn.execute(CALL_EVENTS_DDL)


async def init_pool(dsn: str | None = None) -> asyncpg.Pool:
    """Opens the call-event pool once and prepares its schema.

    Args:
        dsn: Connection string; defaults to `DB_CONNECTION_STRING`.

    Raises:
        RuntimeError: If no connection string is available.
    """
    global _pool
    if _pool is not None:
        return _pool

    dsn = dsn or settings.DB_CONNECTION_STRING
    if not dsn:
        raise RuntimeError("DB_CONNECTION_STRING is required to record call events")
    pool = await asyncpg.create_pool(dsn, min_size=1, max_size=settings.DB_POOL_MAX_SIZE)
    try:
        async with pool.acquire() as conn:
            await ensure_schema(conn)
    except Exception:
        await pool.close()
        raise
    _pool = pool
    _LOGGER.info("Call event pool ready.", extra={"max_size": settings.DB_POOL_MAX_SIZE})
    return pool


async def close_pool() -> None:
    """Closes the call-event pool if it was opened."""
    global _pool
    pool, _pool = _pool, None
    if pool is None:
        return
    await pool.close()
    _LOGGER.debug("Call event pool closed.")


@contextlib.asynccontextmanager
async def get_conn() -> AsyncIterator[asyncpg.Connection]:
    """Borrows a connection for one call-event write.

    Raises:
        RuntimeError: If the pool has not been opened.
    """
    if _pool is None:
        raise RuntimeError("Call event pool is not initialized")
    async with _pool.acquire() as conn:
        yield conn
