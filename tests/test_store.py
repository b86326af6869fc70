"""
Tests for the SQLite table accessor: CRUD, filters, and change fan-out.
"""
import asyncio
import tempfile
from pathlib import Path

import pytest

from taskboard.accessor import AccessorError, matches
from taskboard.schema import ChangeType, StreamStatus
from taskboard.store import SQLiteTableAccessor


def seed(store):
    return asyncio.run(store.insert("kanban_tasks", [
        {"id": "A", "project_id": "p1", "title": "A", "order_index": 0},
        {"id": "B", "project_id": "p1", "title": "B", "order_index": 1},
        {"id": "X", "project_id": "p2", "title": "X", "order_index": 0},
    ]))


def test_store_creates_db_file():
    with tempfile.TemporaryDirectory() as tmp:
        db_path = Path(tmp) / "nested" / "board.db"
        SQLiteTableAccessor(str(db_path))
        assert db_path.exists()


def test_insert_assigns_id_and_timestamps(store):
    rows = asyncio.run(store.insert("kanban_tasks", [{"project_id": "p1", "title": "New"}]))
    assert len(rows) == 1
    assert len(rows[0]["id"]) == 32
    assert rows[0]["created_at"]
    assert rows[0]["updated_at"]
    assert rows[0]["order_index"] is None


def test_columns_table_uses_column_id_key(store):
    rows = asyncio.run(store.insert("project_columns", [{"project_id": "p1", "name": "To Do"}]))
    assert rows[0]["column_id"]
    assert "id" not in rows[0]


def test_query_filter_order_limit(store):
    seed(store)

    async def scenario():
        p1 = await store.query("kanban_tasks", {"project_id": "p1"}, order_by=[("order_index", False)])
        first = await store.query("kanban_tasks", order_by=[("id", True)], limit=1)
        unset = await store.query("kanban_tasks", {"column_id": None})
        return p1, first, unset

    p1, first, unset = asyncio.run(scenario())
    assert [r["id"] for r in p1] == ["B", "A"]
    assert [r["id"] for r in first] == ["A"]
    assert len(unset) == 3


def test_update_returns_affected_rows(store):
    seed(store)
    rows = asyncio.run(store.update("kanban_tasks", {"id": "A"}, {"order_index": 5, "id": "ignored"}))
    assert len(rows) == 1
    assert rows[0]["id"] == "A"
    assert rows[0]["order_index"] == 5


def test_update_matching_nothing_is_empty_not_error(store):
    seed(store)
    assert asyncio.run(store.update("kanban_tasks", {"id": "ghost"}, {"title": "?"})) == []


def test_delete_returns_removed_rows(store):
    seed(store)

    async def scenario():
        removed = await store.delete("kanban_tasks", {"project_id": "p1"})
        left = await store.query("kanban_tasks")
        return removed, left

    removed, left = asyncio.run(scenario())
    assert {r["id"] for r in removed} == {"A", "B"}
    assert [r["id"] for r in left] == ["X"]


@pytest.mark.parametrize("call", [
    lambda s: s.query("kanban_tasks", {"bogus": 1}),
    lambda s: s.insert("kanban_tasks", [{"project_id": "p1", "bogus": 1}]),
    lambda s: s.update("kanban_tasks", {"id": "A"}, {"bogus": 1}),
    lambda s: s.delete("no_such_table", {"id": "A"}),
])
def test_unknown_table_or_column_raises(store, call):
    with pytest.raises(AccessorError):
        asyncio.run(call(store))


def test_constraint_violation_raises_accessor_error(store):
    seed(store)
    with pytest.raises(AccessorError) as exc:
        asyncio.run(store.insert("kanban_tasks", [{"id": "A", "project_id": "p1"}]))
    assert exc.value.operation == "insert"
    assert exc.value.table == "kanban_tasks"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Change stream
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_subscription_receives_ack_then_matching_events(store):
    seed(store)

    async def scenario():
        sub = await store.subscribe("kanban_tasks", {"project_id": "p1"})
        await store.update("kanban_tasks", {"id": "A"}, {"title": "A2"})
        await store.update("kanban_tasks", {"id": "X"}, {"title": "X2"})   # other project
        await store.delete("kanban_tasks", {"id": "B"})
        items = [await sub.get() for _ in range(sub.pending())]
        return items

    items = asyncio.run(scenario())
    assert items[0] == StreamStatus.SUBSCRIBED
    events = items[1:]
    assert [(e.type, e.record_id) for e in events] == [
        (ChangeType.UPDATE, "A"),
        (ChangeType.DELETE, "B"),
    ]
    assert events[0].old["title"] == "A"
    assert events[0].new["title"] == "A2"


def test_update_leaving_filter_still_delivered(store):
    """A task moved out of the project is seen by the board it left."""
    seed(store)

    async def scenario():
        sub = await store.subscribe("kanban_tasks", {"project_id": "p1"})
        await sub.get()
        await store.update("kanban_tasks", {"id": "A"}, {"project_id": "p2"})
        return await sub.get()

    event = asyncio.run(scenario())
    assert event.type == ChangeType.UPDATE
    assert event.new["project_id"] == "p2"


def test_unsubscribe_closes_stream(store):
    async def scenario():
        sub = await store.subscribe("kanban_tasks", {"project_id": "p1"})
        await store.unsubscribe(sub)
        await store.insert("kanban_tasks", [{"project_id": "p1", "title": "late"}])
        received = [item async for item in sub]
        return sub, received

    sub, received = asyncio.run(scenario())
    assert sub.closed
    assert received == [StreamStatus.SUBSCRIBED]
    assert store.fanout.subscriptions == []


def test_matches_helper():
    assert matches({"a": 1}, None)
    assert matches({"a": 1, "b": 2}, {"a": 1})
    assert not matches({"a": 1}, {"a": 2})
    assert not matches(None, {"a": 1})
    assert matches({"a": None}, {"a": None})
