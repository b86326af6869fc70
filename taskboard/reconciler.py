"""
Change-stream reconciler: keeps a LocalOrderedCollection in step with the
remote task table.

State machine:
  UNSUBSCRIBED → SUBSCRIBING → ACTIVE → UNSUBSCRIBED   (teardown)
                     ↑            │
                     └────────────┘                    (stream reconnect)

Events arriving while SUBSCRIBING are dropped, not queued: every time the
stream (re)acknowledges, a full load() is performed, which subsumes
anything missed during the gap.
"""
import asyncio
import logging
from enum import Enum
from typing import Callable, List, Optional

from .accessor import Subscription, TableAccessor
from .collection import LocalOrderedCollection
from .schema import ChangeEvent, ChangeType, StreamStatus

logger = logging.getLogger(__name__)

TASK_ORDER = [("order_index", True), ("created_at", True)]


class SubscriptionState(Enum):
    UNSUBSCRIBED = "unsubscribed"
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"


class ChangeStreamReconciler:
    """Feeds one board's change stream into its collection."""

    def __init__(
        self,
        accessor: TableAccessor,
        collection: LocalOrderedCollection,
        table: str = "kanban_tasks",
    ):
        self.accessor = accessor
        self.collection = collection
        self.table = table
        self.state = SubscriptionState.UNSUBSCRIBED
        self.subscription: Optional[Subscription] = None
        self.loads = 0
        self.dropped = 0
        self._pump: Optional[asyncio.Task] = None
        self._active = asyncio.Event()
        self._state_listeners: List[Callable] = []

    @property
    def filters(self):
        return {"project_id": self.collection.project_id}

    def on_state(self, callback: Callable) -> None:
        """Register callback(old_state, new_state)."""
        self._state_listeners.append(callback)

    def _set_state(self, new_state: SubscriptionState) -> None:
        old, self.state = self.state, new_state
        if old == new_state:
            return
        logger.debug(f"Board {self.collection.project_id}: {old.value} -> {new_state.value}")
        if new_state == SubscriptionState.ACTIVE:
            self._active.set()
        else:
            self._active.clear()
        for callback in self._state_listeners:
            try:
                callback(old, new_state)
            except Exception as e:
                logger.error(f"Error in reconciler state callback: {e}")

    # ── Lifecycle ────────────────────────────────────────────

    async def start(self, timeout: Optional[float] = 10.0) -> None:
        """
        Subscribe and wait until ACTIVE (initial load done).

        Any previous subscription is released first; there is never more
        than one per board. On timeout the new subscription is released too
        and asyncio.TimeoutError propagates.
        """
        if self.state != SubscriptionState.UNSUBSCRIBED:
            await self.stop()
        self._set_state(SubscriptionState.SUBSCRIBING)
        self.subscription = await self.accessor.subscribe(self.table, self.filters)
        self._pump = asyncio.get_running_loop().create_task(self._run(self.subscription))
        try:
            if timeout is None:
                await self._active.wait()
            else:
                await asyncio.wait_for(self._active.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Board {self.collection.project_id}: no acknowledgement within {timeout}s")
            await self.stop()
            raise

    async def stop(self) -> None:
        """Release the subscription. In-flight reorder writes are left to finish."""
        sub, self.subscription = self.subscription, None
        pump, self._pump = self._pump, None
        if sub is not None:
            await self.accessor.unsubscribe(sub)
        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            try:
                await pump
            except asyncio.CancelledError:
                pass
        self._set_state(SubscriptionState.UNSUBSCRIBED)

    async def refresh(self) -> None:
        """Full refetch of the board; supersedes any pending reorder batch."""
        rows = await self.accessor.query(self.table, self.filters, order_by=TASK_ORDER)
        self.collection.load(rows)
        self.loads += 1

    async def _run(self, sub: Subscription) -> None:
        async for item in sub:
            if isinstance(item, StreamStatus):
                await self._on_status(item)
            else:
                self.handle_event(item)

    async def _on_status(self, status: StreamStatus) -> None:
        if status == StreamStatus.RECONNECTING:
            logger.warning(f"Change stream for board {self.collection.project_id} dropped, waiting")
            self._set_state(SubscriptionState.SUBSCRIBING)
        elif status == StreamStatus.SUBSCRIBED:
            try:
                await self.refresh()
            except Exception as e:
                logger.error(f"Board {self.collection.project_id} reload failed: {e}")
            self._set_state(SubscriptionState.ACTIVE)

    # ── Events ───────────────────────────────────────────────

    def handle_event(self, event: ChangeEvent) -> bool:
        """
        Route one change into the collection; returns whether it applied.

        Updates for ids in the pending reorder batch are confirmations: their
        ordering fields are stripped so an in-flight optimistic move is kept.
        """
        if self.state != SubscriptionState.ACTIVE:
            self.dropped += 1
            return False
        if event.table != self.table:
            return False

        task_id = event.record_id
        if not task_id:
            return False

        batch = self.collection.pending
        if event.type == ChangeType.DELETE:
            if batch:
                batch.discard(task_id)
            return self.collection.remove(task_id)

        changed = dict(event.new)
        if event.type == ChangeType.UPDATE and batch and batch.covers(task_id):
            changed = batch.confirm(task_id, changed)
        return self.collection.apply_remote_patch(task_id, changed, event.type)
