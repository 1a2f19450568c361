"""
Notification dedupe / delivery engine.

Guarantees at-most-once visible delivery per dedupe key per recipient,
even when the same underlying change is published on every polling cycle.

Per-recipient state is a bounded ring (newest first) plus a bounded map of
seen dedupe keys.  Seen keys outlive eviction from the ring, so a change
that scrolled out of view is still not re-announced.  A key that keeps
being published is moved back towards the newest end whenever it matches,
so a standing alert is never forgotten however much else is published
around it.

Every change goes through ``store.update``, which serializes writers per
recipient across processes; delivery happens only after that returns.
"""
from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Iterable, Optional

from app.core.dispatch.domain import utcnow
from app.core.notifications.models import (
    Notification,
    NotificationState,
    Recipient,
    normalize_notification,
    recipient_key,
)
from app.core.notifications.ports import AsyncNotificationStore
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter

if TYPE_CHECKING:
    from app.infra.delivery_channels import DeliveryChannel

logger = get_logger(__name__)


class NotificationEngine:
    def __init__(
        self,
        store: AsyncNotificationStore,
        channel: Optional["DeliveryChannel"] = None,
        *,
        capacity: int = 80,
        seen_keys_limit: int = 2000,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.channel = channel
        self.capacity = capacity
        self.seen_keys_limit = seen_keys_limit
        self._clock = clock

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    def _refresh_seen(self, state: NotificationState, key: str) -> bool:
        """Move a matched key to the newest end once it drifts into the older half."""
        keys = list(state.seen_keys)
        fresh_window = max(1, self.seen_keys_limit // 2)
        if keys.index(key) >= len(keys) - fresh_window:
            return False
        state.seen_keys[key] = state.seen_keys.pop(key)
        return True

    def _apply(self, state: NotificationState, incoming: Any) -> tuple[Optional[Notification], bool]:
        """
        Store one notification in ``state``.

        Returns ``(entry, dirty)``; entry is None when its key was already
        seen, and dirty says whether ``state`` changed either way.
        """
        entry = normalize_notification(incoming, self._clock())

        if entry.dedupe_key and entry.dedupe_key in state.seen_keys:
            inc_counter("notifications_deduped")
            return None, self._refresh_seen(state, entry.dedupe_key)

        remaining = [n for n in state.notifications if n.id != entry.id]
        state.notifications = [entry, *remaining][: self.capacity]

        if entry.dedupe_key:
            state.seen_keys[entry.dedupe_key] = entry.created_at
            overflow = len(state.seen_keys) - self.seen_keys_limit
            if overflow > 0:
                for key in list(state.seen_keys)[:overflow]:
                    del state.seen_keys[key]

        inc_counter("notifications_published", type=entry.type)
        return entry, True

    def _apply_all(self, state: NotificationState, items: list[Any]) -> tuple[list[Notification], bool]:
        accepted: list[Notification] = []
        dirty = False
        for item in items:
            entry, changed = self._apply(state, item)
            dirty = dirty or changed
            if entry is not None:
                accepted.append(entry)
        return accepted, dirty

    async def publish(self, recipient: Recipient, notification: Any) -> Optional[Notification]:
        """
        Store and deliver one notification.

        Returns the stored entry, or None when the dedupe key was seen
        before (nothing stored, nothing delivered).
        """
        accepted = await self.publish_many(recipient, [notification])
        return accepted[0] if accepted else None

    async def publish_many(self, recipient: Recipient, items: Iterable[Any]) -> list[Notification]:
        """
        Publish several notifications in one store update.

        The returned list holds the accepted entries in input order;
        delivery starts only after all of them are stored.
        """
        items = list(items)
        accepted = await self.store.update(recipient, lambda state: self._apply_all(state, items))

        for entry in accepted:
            await self._deliver(recipient, entry)
        return accepted

    async def _deliver(self, recipient: Recipient, entry: Notification) -> None:
        if self.channel is None:
            return
        try:
            delivered = await self.channel.deliver(recipient, entry)
        except Exception:
            logger.error(
                "Notification delivery raised: id=%s channel=%s",
                entry.id, self.channel.name,
                exc_info=True,
                extra={"recipient": recipient_key(recipient)},
            )
            inc_counter("notifications_delivery_failed", channel=self.channel.name)
            return

        if delivered:
            inc_counter("notifications_delivered", channel=self.channel.name)
        else:
            logger.warning(
                "Notification not delivered: id=%s channel=%s",
                entry.id, self.channel.name,
                extra={"recipient": recipient_key(recipient)},
            )
            inc_counter("notifications_delivery_failed", channel=self.channel.name)

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_read(self, recipient: Recipient, notification_id: str) -> bool:
        """Mark one entry read.  Returns False when it is not stored."""

        def mark(state: NotificationState) -> tuple[bool, bool]:
            for entry in state.notifications:
                if entry.id == notification_id:
                    was_unread = not entry.read
                    entry.read = True
                    return True, was_unread
            return False, False

        return await self.store.update(recipient, mark)

    async def mark_all_read(self, recipient: Recipient) -> int:
        """Mark everything read; returns how many entries changed."""

        def mark_all(state: NotificationState) -> tuple[int, bool]:
            changed = 0
            for entry in state.notifications:
                if not entry.read:
                    entry.read = True
                    changed += 1
            return changed, changed > 0

        return await self.store.update(recipient, mark_all)

    async def clear_all(self, recipient: Recipient) -> None:
        def clear(state: NotificationState) -> tuple[None, bool]:
            state.notifications = []
            state.seen_keys = {}
            return None, True

        await self.store.update(recipient, clear)

    async def list(self, recipient: Recipient) -> list[Notification]:
        state = await self.store.load(recipient)
        return list(state.notifications)

    async def unread_count(self, recipient: Recipient) -> int:
        state = await self.store.load(recipient)
        return sum(1 for entry in state.notifications if not entry.read)
