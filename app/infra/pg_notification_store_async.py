# app/infra/pg_notification_store_async.py
"""
Async PostgreSQL notification store (asyncpg).

One row per recipient holding the whole bounded state:

    dispatch_notifications(
        recipient  text PRIMARY KEY,     -- "role:id"
        state      jsonb NOT NULL,       -- {"notifications": [...], "seen_keys": {...}}
        updated_at timestamptz NOT NULL DEFAULT now()
    )

``update`` holds the row lock from read to write, so workers in different
processes publishing to the same recipient queue up behind each other.
"""
from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from app.core.notifications.models import NotificationState, Recipient, recipient_key
from app.core.notifications.ports import StateMutation
from app.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

logger = get_logger(__name__)


def _parse_state(raw: Any, key: str) -> NotificationState:
    if raw is None:
        return NotificationState()
    if isinstance(raw, str):
        raw = json.loads(raw)
    try:
        return NotificationState.model_validate(raw)
    except ValidationError:
        # A corrupt row should not lock the recipient out of notifications.
        logger.warning("Discarding unreadable notification state", extra={"recipient": key})
        inc_counter("notification_state_discarded")
        return NotificationState()


class AsyncPostgresNotificationStore:
    @retry_on_transient_error(max_retries=2)
    async def load(self, recipient: Recipient) -> NotificationState:
        key = recipient_key(recipient)
        async with safe_db_conn() as conn:
            raw = await conn.fetchval(
                "SELECT state FROM dispatch_notifications WHERE recipient = $1",
                key,
            )
        return _parse_state(raw, key)

    async def save(self, recipient: Recipient, state: NotificationState) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                INSERT INTO dispatch_notifications (recipient, state, updated_at)
                VALUES ($1, $2::jsonb, now())
                ON CONFLICT (recipient) DO UPDATE
                SET state = EXCLUDED.state, updated_at = now()
                """,
                recipient_key(recipient),
                state.model_dump_json(),
            )

    @retry_on_transient_error(max_retries=2)
    async def update(self, recipient: Recipient, mutate: StateMutation) -> Any:
        """
        Read-modify-write under ``SELECT ... FOR UPDATE`` in one transaction.

        The row is created first when missing so there is always something
        to lock.  A transient failure rolls the whole transaction back before
        the retry, so ``mutate`` sees fresh state each attempt.
        """
        key = recipient_key(recipient)
        async with safe_db_conn(autocommit=False) as conn:
            await conn.execute(
                """
                INSERT INTO dispatch_notifications (recipient, state)
                VALUES ($1, '{}'::jsonb)
                ON CONFLICT (recipient) DO NOTHING
                """,
                key,
            )
            raw = await conn.fetchval(
                "SELECT state FROM dispatch_notifications WHERE recipient = $1 FOR UPDATE",
                key,
            )
            state = _parse_state(raw, key)
            result, dirty = mutate(state)
            if dirty:
                await conn.execute(
                    "UPDATE dispatch_notifications SET state = $2::jsonb, updated_at = now() WHERE recipient = $1",
                    key,
                    state.model_dump_json(),
                )
        return result
