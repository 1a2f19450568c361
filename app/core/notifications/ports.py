from __future__ import annotations

from typing import Any, Callable, Protocol

from app.core.notifications.models import NotificationState, Recipient

# Mutates the state in place; returns (result, dirty).  Nothing is written
# back unless dirty is true.
StateMutation = Callable[[NotificationState], tuple[Any, bool]]


class AsyncNotificationStore(Protocol):
    async def load(self, recipient: Recipient) -> NotificationState:
        """Return the recipient's state (empty state when nothing is stored)."""
        ...

    async def save(self, recipient: Recipient, state: NotificationState) -> None: ...

    async def update(self, recipient: Recipient, mutate: StateMutation) -> Any:
        """
        Load, mutate and save as one step; returns what ``mutate`` returned.

        No other ``update`` for the same recipient, from this process or any
        other sharing the store, may interleave with it.  The new state is
        durable when this returns.
        """
        ...
