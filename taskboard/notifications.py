"""
Per-user notification feed: latest messages, unread count, live inserts.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from .accessor import Subscription, TableAccessor
from .schema import ChangeEvent, ChangeType, StreamStatus

logger = logging.getLogger(__name__)

TABLE = "notifications"


class NotificationFeed:
    """Newest-first notifications for one user."""

    def __init__(self, accessor: TableAccessor, user_id: str, limit: int = 10):
        self.accessor = accessor
        self.user_id = user_id
        self.limit = limit
        self.items: List[Dict[str, Any]] = []
        self.subscription: Optional[Subscription] = None
        self._pump: Optional[asyncio.Task] = None

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self.items if not n.get("is_read"))

    async def refresh(self) -> None:
        self.items = await self.accessor.query(
            TABLE, {"user_id": self.user_id},
            order_by=[("created_at", False)], limit=self.limit,
        )

    async def start(self) -> None:
        await self.refresh()
        self.subscription = await self.accessor.subscribe(TABLE, {"user_id": self.user_id})
        self._pump = asyncio.get_running_loop().create_task(self._run(self.subscription))

    async def stop(self) -> None:
        if self.subscription is not None:
            await self.accessor.unsubscribe(self.subscription)
            self.subscription = None
        if self._pump is not None:
            self._pump.cancel()
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None

    async def _run(self, sub: Subscription) -> None:
        first = True
        async for item in sub:
            if item == StreamStatus.SUBSCRIBED:
                # Initial ack follows the refresh in start(); later ones are reconnects
                if not first:
                    await self.refresh()
                first = False
            elif isinstance(item, ChangeEvent):
                self.handle_event(item)

    def handle_event(self, event: ChangeEvent) -> None:
        if event.type == ChangeType.INSERT:
            if any(n.get("id") == event.new.get("id") for n in self.items):
                return
            self.items.insert(0, dict(event.new))
            del self.items[self.limit:]
        elif event.type == ChangeType.UPDATE:
            self.items = [dict(event.new) if n.get("id") == event.new.get("id") else n for n in self.items]
        elif event.type == ChangeType.DELETE:
            self.items = [n for n in self.items if n.get("id") != event.old.get("id")]

    async def mark_all_read(self) -> int:
        """Mark every unread notification read; returns how many changed."""
        rows = await self.accessor.update(
            TABLE, {"user_id": self.user_id, "is_read": False}, {"is_read": True}
        )
        for n in self.items:
            n["is_read"] = True
        logger.debug(f"Marked {len(rows)} notification(s) read for {self.user_id}")
        return len(rows)
