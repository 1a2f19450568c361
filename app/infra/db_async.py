# app/infra/db_async.py
"""
asyncpg pool for the postgres storage backend.

The pool is created on startup only when ``storage_backend=postgres``;
the in-memory backend never imports a connection. ``ensure_schema`` is
idempotent and runs right after the pool comes up.
"""
from __future__ import annotations
from typing import AsyncIterator
from contextlib import asynccontextmanager

import asyncpg
from app.config import settings
from app.infra.logging_config import get_logger

logger = get_logger(__name__)

_pool: asyncpg.Pool | None = None

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS dispatch_jobs(
        id                 text PRIMARY KEY,
        status             text NOT NULL,
        urgency            text NOT NULL,
        assigned_vendor_id text,
        created_at         timestamptz NOT NULL,
        version            integer NOT NULL,
        doc                jsonb NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS dispatch_jobs_status_idx ON dispatch_jobs(status)",
    """
    CREATE TABLE IF NOT EXISTS dispatch_bids(
        id           text PRIMARY KEY,
        job_id       text NOT NULL,
        vendor_phone text NOT NULL,
        vendor_name  text NOT NULL,
        vendor_id    text,
        eta_minutes  integer NOT NULL,
        price        numeric(12, 2) NOT NULL,
        revision     integer NOT NULL DEFAULT 1,
        created_at   timestamptz NOT NULL,
        updated_at   timestamptz,
        UNIQUE (job_id, vendor_phone)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dispatch_notifications(
        recipient  text PRIMARY KEY,
        state      jsonb NOT NULL,
        updated_at timestamptz NOT NULL DEFAULT now()
    )
    """,
)


def _connect_kwargs() -> dict:
    # DATABASE_URL wins over the discrete PG* settings
    if settings.database_url:
        return {"dsn": settings.database_url}
    return {
        "host": settings.pghost,
        "port": settings.pgport,
        "user": settings.pguser,
        "password": settings.pgpassword,
        "database": settings.pgdatabase,
        "timeout": settings.pg_connect_timeout,
    }


async def init_pool() -> None:
    global _pool
    if _pool is not None:
        return

    _pool = await asyncpg.create_pool(
        min_size=settings.pg_pool_min,
        max_size=settings.pg_pool_max,
        command_timeout=60,
        server_settings={
            "application_name": "roadside_dispatch",
            "statement_timeout": str(settings.pg_statement_timeout_ms),
            "idle_in_transaction_session_timeout": str(settings.pg_idle_in_tx_timeout_ms),
        },
        **_connect_kwargs(),
    )
    logger.info("Dispatch DB pool ready (min=%s max=%s)", settings.pg_pool_min, settings.pg_pool_max)


async def close_pool() -> None:
    global _pool
    if _pool is None:
        return
    pool, _pool = _pool, None
    await pool.close()
    logger.info("Dispatch DB pool closed")


@asynccontextmanager
async def db_conn(autocommit: bool = True) -> AsyncIterator[asyncpg.Connection]:
    """
    Borrow a pooled connection.

    With ``autocommit=False`` the block runs in a transaction that commits
    on a clean exit and rolls back when anything raises.

        async with db_conn(autocommit=False) as conn:
            await conn.execute("UPDATE dispatch_jobs SET ... WHERE id = $1", job_id)
    """
    if _pool is None:
        raise RuntimeError("Dispatch DB pool is not initialized; call init_pool() on startup")

    async with _pool.acquire() as conn:
        if autocommit:
            yield conn
        else:
            async with conn.transaction():
                yield conn


async def ensure_schema() -> int:
    """Create the dispatch tables if they are missing; returns the number of statements run."""
    async with db_conn(autocommit=False) as conn:
        for statement in SCHEMA_STATEMENTS:
            await conn.execute(statement)
    logger.info("Dispatch schema verified (%d statements)", len(SCHEMA_STATEMENTS))
    return len(SCHEMA_STATEMENTS)
