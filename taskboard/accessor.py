"""
Remote table accessor interface.

The board never talks to a backend directly; it goes through an accessor
exposing generic query/insert/update/delete on named tables plus a
subscribe-by-filter change stream. Implementations: store.SQLiteTableAccessor
(local) and rest.RestTableAccessor (hosted PostgREST-style service).
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .schema import ChangeEvent, StreamStatus

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
Filters = Dict[str, Any]
OrderBy = Sequence[Tuple[str, bool]]   # (column, ascending)
StreamItem = Union[ChangeEvent, StreamStatus]


class AccessorError(Exception):
    """Raised when a remote table operation fails."""

    def __init__(self, table: str, operation: str, message: str):
        super().__init__(f"{operation} on {table} failed: {message}")
        self.table = table
        self.operation = operation
        self.message = message


def matches(row: Optional[Row], filters: Optional[Filters]) -> bool:
    """Equality match of a row against a filter dict (empty filter = all)."""
    if not filters:
        return True
    if not row:
        return False
    return all(row.get(key) == value for key, value in filters.items())


class Subscription:
    """
    Cancellable handle delivering a typed stream of ChangeEvent and
    StreamStatus items.

    Producers call push(); consumers iterate with `async for` or get().
    Once closed, iteration ends after the CLOSED notice.
    """

    def __init__(self, table: str, filters: Optional[Filters] = None):
        self.table = table
        self.filters = dict(filters or {})
        self.closed = False
        self._queue: "asyncio.Queue[StreamItem]" = asyncio.Queue()

    def wants(self, event: ChangeEvent) -> bool:
        """Whether an event on this table passes the subscription filter."""
        if self.closed or event.table != self.table:
            return False
        return matches(event.new, self.filters) or matches(event.old, self.filters)

    def push(self, item: StreamItem) -> None:
        if self.closed:
            return
        self._queue.put_nowait(item)

    def close(self) -> None:
        if self.closed:
            return
        self._queue.put_nowait(StreamStatus.CLOSED)
        self.closed = True

    def pending(self) -> int:
        return self._queue.qsize()

    async def get(self) -> StreamItem:
        return await self._queue.get()

    def __aiter__(self):
        return self

    async def __anext__(self) -> StreamItem:
        item = await self._queue.get()
        if item is StreamStatus.CLOSED:
            raise StopAsyncIteration
        return item

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Subscription {self.table} {self.filters} {state}>"


class TableAccessor:
    """Abstract remote table accessor. All operations are coroutines."""

    async def query(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        raise NotImplementedError

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        raise NotImplementedError

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        raise NotImplementedError

    async def delete(self, table: str, filters: Filters) -> List[Row]:
        raise NotImplementedError

    async def subscribe(self, table: str, filters: Optional[Filters] = None) -> Subscription:
        raise NotImplementedError

    async def unsubscribe(self, subscription: Subscription) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        """Release every open subscription."""


class ChangeFanout:
    """
    In-process fan-out of row changes to matching subscriptions.

    Used by accessors that observe their own writes (SQLite) or derive
    events from polling (REST).
    """

    def __init__(self):
        self.subscriptions: List[Subscription] = []

    def add(self, subscription: Subscription) -> None:
        self.subscriptions.append(subscription)

    def remove(self, subscription: Subscription) -> None:
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)
        subscription.close()

    def publish(self, event: ChangeEvent) -> int:
        """Deliver to every subscription that wants it; returns delivery count."""
        delivered = 0
        for sub in list(self.subscriptions):
            if sub.wants(event):
                sub.push(event)
                delivered += 1
        if delivered:
            logger.debug(f"{event.type.value} on {event.table} -> {delivered} subscriber(s)")
        return delivered

    def close_all(self) -> None:
        for sub in list(self.subscriptions):
            self.remove(sub)
