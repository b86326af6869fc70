"""
SQLite table accessor.

Local stand-in for the hosted backend: same generic table surface, rows
persisted in SQLite, and every committed write fanned out as a ChangeEvent
to in-process subscribers (so two board sessions on one store behave like
two browser tabs).
"""
import asyncio
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .accessor import (
    AccessorError,
    ChangeFanout,
    Filters,
    OrderBy,
    Row,
    Subscription,
    TableAccessor,
)
from .schema import ChangeEvent, ChangeType, StreamStatus, utc_now

logger = logging.getLogger(__name__)

SCHEMA = {
    "kanban_tasks": """
        CREATE TABLE IF NOT EXISTS kanban_tasks (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            column_id TEXT,
            title TEXT NOT NULL DEFAULT '',
            description TEXT DEFAULT '',
            status TEXT DEFAULT 'Not Started',
            priority TEXT DEFAULT 'Medium',
            start_date TEXT,
            deadline TEXT,
            assigned_to TEXT,
            assigned_by TEXT,
            order_index INTEGER,  -- retrofit: historical rows may be NULL
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "project_columns": """
        CREATE TABLE IF NOT EXISTS project_columns (
            column_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            name TEXT NOT NULL,
            position INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "project_remarks": """
        CREATE TABLE IF NOT EXISTS project_remarks (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            task_id TEXT,
            created_by TEXT,
            remark TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "notifications": """
        CREATE TABLE IF NOT EXISTS notifications (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            message TEXT NOT NULL,
            is_read INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "task_date_change_requests": """
        CREATE TABLE IF NOT EXISTS task_date_change_requests (
            id TEXT PRIMARY KEY,
            task_id TEXT NOT NULL,
            requested_by TEXT,
            old_start_date TEXT,
            new_start_date TEXT,
            old_deadline TEXT,
            new_deadline TEXT,
            reason TEXT,
            status TEXT DEFAULT 'Pending',
            rejection_reason TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "profiles": """
        CREATE TABLE IF NOT EXISTS profiles (
            id TEXT PRIMARY KEY,
            full_name TEXT,
            department TEXT,
            role TEXT DEFAULT 'member',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "projects": """
        CREATE TABLE IF NOT EXISTS projects (
            project_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            project_type TEXT DEFAULT 'development',
            incharge TEXT,
            start_date TEXT,
            tentative_deadline TEXT,
            created_by TEXT,
            archived INTEGER DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """,
    "project_members": """
        CREATE TABLE IF NOT EXISTS project_members (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            user_id TEXT NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (project_id, user_id)
        )
    """,
}

INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_project ON kanban_tasks(project_id, column_id, order_index)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_assignee ON kanban_tasks(assigned_to)",
    "CREATE INDEX IF NOT EXISTS idx_columns_project ON project_columns(project_id, position)",
    "CREATE INDEX IF NOT EXISTS idx_remarks_project ON project_remarks(project_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_requests_status ON task_date_change_requests(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_members_user ON project_members(user_id)",
]

PRIMARY_KEYS = {"project_columns": "column_id", "projects": "project_id"}


def primary_key(table: str) -> str:
    return PRIMARY_KEYS.get(table, "id")


@contextmanager
def _connect(db_path: str) -> Iterator[sqlite3.Connection]:
    """Open a connection with WAL mode; commit on success, always close."""
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode = WAL")
    try:
        yield conn
        conn.commit()
    finally:
        conn.close()


def _where(filters: Optional[Filters]) -> Tuple[str, List[Any]]:
    """Build a WHERE clause from an equality filter (None -> IS NULL)."""
    if not filters:
        return "", []
    clauses, params = [], []
    for key, value in filters.items():
        if value is None:
            clauses.append(f"{key} IS NULL")
        else:
            clauses.append(f"{key} = ?")
            params.append(value)
    return " WHERE " + " AND ".join(clauses), params


class SQLiteTableAccessor(TableAccessor):
    """SQLite-backed accessor with in-process change fan-out."""

    def __init__(self, db_path: str = None, latency: float = 0.0):
        """
        Initialize store and create tables if needed.

        `latency` is awaited before every operation; zero still yields to the
        event loop so callers see a real suspension point.
        """
        if db_path is None:
            db_path = str(Path.home() / ".local" / "share" / "taskboard" / "board.db")
        self.db_path = db_path
        self.latency = latency
        self.fanout = ChangeFanout()
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._columns: Dict[str, List[str]] = {}
        self._init_schema()

    def _init_schema(self):
        """Create tables if they don't exist and cache their column names."""
        with _connect(self.db_path) as conn:
            for ddl in SCHEMA.values():
                conn.execute(ddl)
            for ddl in INDEXES:
                conn.execute(ddl)
            for table in SCHEMA:
                info = conn.execute(f"PRAGMA table_info({table})").fetchall()
                self._columns[table] = [r["name"] for r in info]

    def _check(self, table: str, operation: str, keys) -> None:
        """Reject unknown tables/columns before they reach SQL text."""
        if table not in self._columns:
            raise AccessorError(table, operation, "unknown table")
        unknown = [k for k in keys if k not in self._columns[table]]
        if unknown:
            raise AccessorError(table, operation, f"unknown column(s) {unknown}")

    async def _pause(self) -> None:
        await asyncio.sleep(self.latency)

    def _select(self, conn, table: str, filters: Optional[Filters]) -> List[Row]:
        where, params = _where(filters)
        rows = conn.execute(f"SELECT * FROM {table}{where}", params).fetchall()
        return [dict(r) for r in rows]

    # ── Table operations ─────────────────────────────────────

    async def query(
        self,
        table: str,
        filters: Optional[Filters] = None,
        order_by: Optional[OrderBy] = None,
        limit: Optional[int] = None,
    ) -> List[Row]:
        await self._pause()
        order_by = list(order_by or [])
        self._check(table, "query", list(filters or {}) + [c for c, _ in order_by])
        where, params = _where(filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by:
            sql += " ORDER BY " + ", ".join(
                f"{col} {'ASC' if asc else 'DESC'}" for col, asc in order_by
            )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        try:
            with _connect(self.db_path) as conn:
                rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise AccessorError(table, "query", str(e))
        return [dict(r) for r in rows]

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        await self._pause()
        pk = primary_key(table)
        now = utc_now()
        prepared = []
        for row in rows:
            data = dict(row)
            data.setdefault(pk, uuid.uuid4().hex)
            data.setdefault("created_at", now)
            data["updated_at"] = now
            self._check(table, "insert", data.keys())
            prepared.append(data)

        inserted = []
        try:
            with _connect(self.db_path) as conn:
                for data in prepared:
                    cols = ", ".join(data.keys())
                    marks = ", ".join("?" for _ in data)
                    conn.execute(
                        f"INSERT INTO {table} ({cols}) VALUES ({marks})",
                        list(data.values()),
                    )
                    inserted.extend(self._select(conn, table, {pk: data[pk]}))
        except sqlite3.Error as e:
            raise AccessorError(table, "insert", str(e))

        for row in inserted:
            self.fanout.publish(ChangeEvent(table=table, type=ChangeType.INSERT, new=row))
        return inserted

    async def update(self, table: str, filters: Filters, patch: Row) -> List[Row]:
        await self._pause()
        pk = primary_key(table)
        data = {k: v for k, v in patch.items() if k != pk}
        data["updated_at"] = utc_now()
        self._check(table, "update", list(filters) + list(data))

        pairs: List[Tuple[Row, Row]] = []
        try:
            with _connect(self.db_path) as conn:
                before = self._select(conn, table, filters)
                if before:
                    where, params = _where(filters)
                    assignments = ", ".join(f"{k} = ?" for k in data)
                    conn.execute(
                        f"UPDATE {table} SET {assignments}{where}",
                        list(data.values()) + params,
                    )
                for old in before:
                    new = self._select(conn, table, {pk: old[pk]})
                    if new:
                        pairs.append((old, new[0]))
        except sqlite3.Error as e:
            raise AccessorError(table, "update", str(e))

        for old, new in pairs:
            self.fanout.publish(ChangeEvent(table=table, type=ChangeType.UPDATE, new=new, old=old))
        return [new for _, new in pairs]

    async def delete(self, table: str, filters: Filters) -> List[Row]:
        await self._pause()
        self._check(table, "delete", filters.keys())
        try:
            with _connect(self.db_path) as conn:
                removed = self._select(conn, table, filters)
                where, params = _where(filters)
                conn.execute(f"DELETE FROM {table}{where}", params)
        except sqlite3.Error as e:
            raise AccessorError(table, "delete", str(e))

        for old in removed:
            self.fanout.publish(ChangeEvent(table=table, type=ChangeType.DELETE, old=old))
        return removed

    # ── Change stream ────────────────────────────────────────

    async def subscribe(self, table: str, filters: Optional[Filters] = None) -> Subscription:
        await self._pause()
        self._check(table, "subscribe", (filters or {}).keys())
        sub = Subscription(table, filters)
        self.fanout.add(sub)
        sub.push(StreamStatus.SUBSCRIBED)
        logger.debug(f"Subscribed to {table} {filters or {}}")
        return sub

    async def unsubscribe(self, subscription: Subscription) -> None:
        self.fanout.remove(subscription)
        logger.debug(f"Unsubscribed from {subscription.table} {subscription.filters}")

    async def close(self) -> None:
        self.fanout.close_all()
