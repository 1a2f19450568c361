# app/infra/db_resilience_async.py
"""
Retrying around transient asyncpg failures.

Two entry points with different guarantees:

* ``retry_on_transient_error`` replays a whole coroutine. Only use it on
  reads and on writes that are idempotent as a unit (upserts).
* ``safe_db_conn`` retries acquiring the connection only. The ``async with``
  body runs once, so a version-checked UPDATE is never replayed.
"""
from __future__ import annotations
import asyncio
from typing import AsyncIterator, Callable, Iterator
from contextlib import asynccontextmanager
from functools import wraps

import asyncpg
from app.infra.db_async import db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics

logger = get_logger(__name__)

_ALWAYS_TRANSIENT = (
    asyncpg.PostgresConnectionError,
    asyncpg.TooManyConnectionsError,
    asyncpg.DeadlockDetectedError,
    ConnectionError,
    asyncio.TimeoutError,
)
_DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)
_TRANSIENT_MARKERS = (
    "connection",
    "timeout",
    "closed",
    "network",
    "deadlock",
    "too many connections",
)


def is_transient_error(exc: BaseException) -> bool:
    """Infrastructure hiccups only; domain errors (stale writes, validation) never qualify."""
    if isinstance(exc, _ALWAYS_TRANSIENT):
        return True
    if isinstance(exc, _DRIVER_ERRORS):
        message = str(exc).lower()
        return any(marker in message for marker in _TRANSIENT_MARKERS)
    return False


def _backoff(retries: int, first: float, factor: float, ceiling: float) -> Iterator[float]:
    delay = first
    for _ in range(retries):
        yield delay
        delay = min(delay * factor, ceiling)


def retry_on_transient_error(
    max_retries: int = 3,
    initial_delay: float = 0.1,
    backoff_factor: float = 2.0,
    max_delay: float = 5.0,
):
    """
    Replay the decorated coroutine after transient errors, with exponential backoff.

        @retry_on_transient_error(max_retries=2)
        async def count_backlog(self) -> int: ...
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            delays = _backoff(max_retries, initial_delay, backoff_factor, max_delay)
            attempt = 0
            while True:
                attempt += 1
                try:
                    return await func(*args, **kwargs)
                except Exception as exc:
                    transient = is_transient_error(exc)
                    DispatchMetrics.database_error(func.__name__, transient)
                    if not transient:
                        raise
                    delay = next(delays, None)
                    if delay is None:
                        logger.error("%s still failing after %d attempts", func.__name__, attempt, exc_info=True)
                        raise
                    logger.warning("%s attempt %d hit %r, retrying in %.2fs", func.__name__, attempt, exc, delay)
                    await asyncio.sleep(delay)

        return wrapper
    return decorator


@asynccontextmanager
async def safe_db_conn(autocommit: bool = True, retries: int = 3) -> AsyncIterator:
    """Connection whose acquisition is retried; the block itself runs exactly once."""
    delays = _backoff(retries, 0.1, 2.0, 5.0)
    while True:
        source = db_conn(autocommit=autocommit)
        try:
            conn = await source.__aenter__()
            break
        except Exception as exc:
            transient = is_transient_error(exc)
            DispatchMetrics.database_error("acquire", transient)
            delay = next(delays, None) if transient else None
            if delay is None:
                raise
            logger.warning("Connection acquire failed (%r), retrying in %.2fs", exc, delay)
            await asyncio.sleep(delay)

    try:
        yield conn
    except BaseException as exc:
        if not await source.__aexit__(type(exc), exc, exc.__traceback__):
            raise
    else:
        await source.__aexit__(None, None, None)
