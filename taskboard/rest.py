"""
REST table accessor (PostgREST-style hosted backend).

Table operations map onto `GET/POST/PATCH/DELETE {base}/rest/v1/{table}`
with `col=eq.value` filters. requests is blocking, so each call runs in a
worker thread to keep the event loop free.

The change stream is a polling snapshot diff: each subscription re-queries
its filtered rows every `poll_interval` seconds and emits insert/update/
delete events for whatever changed. A failed poll emits RECONNECTING; the
next successful one re-baselines and emits SUBSCRIBED again.
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

import requests

from .accessor import (
    AccessorError,
    Filters,
    OrderBy,
    Row,
    Subscription,
    TableAccessor,
)
from .schema import ChangeEvent, ChangeType, StreamStatus
from .store import primary_key

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    if value is True:
        return "true"
    if value is False:
        return "false"
    return str(value)


def build_params(
    filters: Optional[Filters] = None,
    order_by: Optional[OrderBy] = None,
    limit: Optional[int] = None,
) -> Dict[str, str]:
    """Translate an equality filter into PostgREST query parameters."""
    params: Dict[str, str] = {}
    for key, value in (filters or {}).items():
        params[key] = "is.null" if value is None else f"eq.{_encode(value)}"
    if order_by:
        params["order"] = ",".join(
            f"{col}.{'asc' if asc else 'desc'}" for col, asc in order_by
        )
    if limit is not None:
        params["limit"] = str(int(limit))
    return params


class RestTableAccessor(TableAccessor):
    """HTTP client for a PostgREST-compatible table API."""

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        access_token: str = "",
        poll_interval: float = 2.0,
        timeout: float = 5.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": api_key,
            "Authorization": f"Bearer {access_token or api_key}",
            "Content-Type": "application/json",
        })
        self._pollers: Dict[Subscription, asyncio.Task] = {}

    def _url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _request(self, method: str, table: str, operation: str, **kwargs) -> List[Row]:
        """Blocking request; any transport or HTTP error becomes AccessorError."""
        try:
            r = self.session.request(method, self._url(table), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise AccessorError(table, operation, str(e))
        if not r.ok:
            try:
                detail = r.json().get("message", r.text)
            except ValueError:
                detail = r.text
            raise AccessorError(table, operation, f"HTTP {r.status_code}: {detail}")
        if not r.content:
            return []
        data = r.json()
        return data if isinstance(data, list) else [data]

    async def _call(self, method: str, table: str, operation: str, **kwargs) -> List[Row]:
        return await asyncio.to_thread(self._request, method, table, operation, **kwargs)

    # ── Table operations ─────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        params = {"select": "*", **build_params(filters, order_by, limit)}
        return await self._call("GET", table, "query", params=params)

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        return await self._call(
            "POST", table, "insert",
            json=rows,
            headers={"Prefer": "return=representation"},
        )

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        if not filters:
            raise AccessorError(table, "update", "refusing unfiltered update")
        return await self._call(
            "PATCH", table, "update",
            params=build_params(filters),
            json=patch,
            headers={"Prefer": "return=representation"},
        )

    async def delete(self, table: str, filters: Filters) -> List[Row]:
        if not filters:
            raise AccessorError(table, "delete", "refusing unfiltered delete")
        return await self._call(
            "DELETE", table, "delete",
            params=build_params(filters),
            headers={"Prefer": "return=representation"},
        )

    # ── Change stream (polling) ──────────────────────────────

    async def subscribe(self, table: str, filters: Optional[Filters] = None) -> Subscription:
        sub = Subscription(table, filters)
        self._pollers[sub] = asyncio.get_running_loop().create_task(self._poll(sub))
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        task = self._pollers.pop(subscription, None)
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        subscription.close()

    async def close(self) -> None:
        for sub in list(self._pollers):
            await self.unsubscribe(sub)
        self.session.close()

    async def _poll(self, sub: Subscription) -> None:
        """Poll loop for one subscription; runs until cancelled."""
        pk = primary_key(sub.table)
        snapshot: Optional[Dict[str, Row]] = None
        while not sub.closed:
            try:
                rows = await self.query(sub.table, sub.filters)
            except AccessorError as e:
                if snapshot is not None:
                    logger.warning(f"Change feed for {sub.table} lost: {e}")
                    sub.push(StreamStatus.RECONNECTING)
                    snapshot = None
                await asyncio.sleep(self.poll_interval)
                continue

            current = {str(r.get(pk)): r for r in rows}
            if snapshot is None:
                snapshot = current
                sub.push(StreamStatus.SUBSCRIBED)
            else:
                for event in diff_snapshots(sub.table, snapshot, current):
                    sub.push(event)
                snapshot = current
            await asyncio.sleep(self.poll_interval)


def diff_snapshots(table: str, before: Dict[str, Row], after: Dict[str, Row]) -> List[ChangeEvent]:
    """Row-level diff of two id->row snapshots, as change events."""
    events = []
    for key, row in after.items():
        old = before.get(key)
        if old is None:
            events.append(ChangeEvent(table=table, type=ChangeType.INSERT, new=row))
        elif old != row:
            events.append(ChangeEvent(table=table, type=ChangeType.UPDATE, new=row, old=old))
    for key, row in before.items():
        if key not in after:
            events.append(ChangeEvent(table=table, type=ChangeType.DELETE, old=row))
    return events
