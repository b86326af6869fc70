"""
Tests for BoardSession: open/switch/close, default lanes, task edits,
system remarks, and the rendered view.
"""
import asyncio

import pytest

from taskboard.board import DEFAULT_COLUMNS, BoardSession, PermissionDenied, ValidationError
from taskboard.schema import BoardContext, BoardMode

ADMIN = BoardContext(user_id="admin-1", role="admin")


def run(store, work, context=ADMIN, mode=BoardMode.LANES, project="p1"):
    """Open a board, run `work(session)`, close it, return the result."""
    async def scenario():
        session = BoardSession(store, context, mode=mode, subscribe_timeout=2)
        await session.open(project)
        try:
            return await work(session)
        finally:
            await session.close()
    return asyncio.run(scenario())


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Lifecycle
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_open_creates_default_columns_once(store):
    async def names(session):
        return [c.name for c in session.columns]

    assert run(store, names) == DEFAULT_COLUMNS
    assert run(store, names) == DEFAULT_COLUMNS
    rows = asyncio.run(store.query("project_columns", {"project_id": "p1"}))
    assert len(rows) == 3


def test_member_cannot_open_foreign_board(store):
    outsider = BoardContext(user_id="u1", role="member", project_ids=frozenset({"p2"}))

    async def scenario():
        session = BoardSession(store, outsider)
        await session.open("p1")

    with pytest.raises(PermissionDenied):
        asyncio.run(scenario())
    assert store.fanout.subscriptions == []


def test_member_opens_own_board(store):
    member = BoardContext(user_id="u1", role="member", project_ids=frozenset({"p1"}))

    async def pid(session):
        return session.project_id

    assert run(store, pid, context=member) == "p1"


def test_switch_project_releases_previous_subscription(store):
    async def scenario():
        session = BoardSession(store, ADMIN, subscribe_timeout=2)
        await session.open("p1")
        first = session.reconciler.subscription
        await session.switch_project("p2")
        snapshot = (first.closed, session.project_id, len(store.fanout.subscriptions))
        await session.close()
        return snapshot

    first_closed, project_id, subs = asyncio.run(scenario())
    assert first_closed
    assert project_id == "p2"
    assert subs == 1


def test_closed_session_refuses_work(store):
    session = BoardSession(store, ADMIN)
    with pytest.raises(RuntimeError):
        session.render()


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Task edits and remarks
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_add_task_lands_at_end_of_first_lane(store):
    async def work(session):
        first = await session.add_task("Write docs")
        second = await session.add_task("Ship it", priority="High")
        todo = session.columns[0].column_id
        return first, second, session.collection.scope_ids(todo), await session.remarks()

    first, second, todo_ids, remarks = run(store, work)
    assert first.order_index == 0
    assert second.order_index == 1
    assert second.priority == "High"
    assert todo_ids == [first.id, second.id]
    assert {r["remark"] for r in remarks} == {
        'System: Task "Write docs" created.',
        'System: Task "Ship it" created.',
    }


def test_add_task_requires_title(store):
    async def work(session):
        await session.add_task("   ")

    with pytest.raises(ValidationError):
        run(store, work)


def test_move_to_column_writes_remark(store):
    async def work(session):
        todo, _, done = [c.column_id for c in session.columns]
        task = await session.add_task("Card")
        result = await session.move_to_column(task.id, done, 0)
        remarks = await session.remarks()
        return result, session.collection.scope_ids(todo), session.collection.scope_ids(done), task.id, remarks

    result, todo_ids, done_ids, task_id, remarks = run(store, work)
    assert result.moved and task_id in result.written
    assert todo_ids == []
    assert done_ids == [task_id]
    assert remarks[0]["remark"] == 'System: Task "Card" moved from To Do → Done.'
    assert remarks[0]["task_id"] == task_id
    assert remarks[0]["created_by"] == "admin-1"


def test_update_task_ignores_ordering_fields(store):
    async def work(session):
        task = await session.add_task("Card")
        return await session.update_task(task.id, title="Renamed", order_index=42)

    task = run(store, work)
    assert task.title == "Renamed"
    assert task.order_index == 0


def test_delete_task_removes_and_remarks(store):
    async def work(session):
        task = await session.add_task("Doomed")
        removed = await session.delete_task(task.id)
        return removed, len(session.collection), await session.remarks(1)

    removed, remaining, latest = run(store, work)
    assert removed
    assert remaining == 0
    assert latest[0]["remark"] == 'System: Task "Doomed" deleted.'


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# View
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_render_lanes_with_unassigned(store):
    asyncio.run(store.insert("kanban_tasks", [
        {"id": "loose", "project_id": "p1", "title": "No lane", "order_index": 0},
    ]))

    async def work(session):
        await session.add_task("Card")
        return session.render()

    view = run(store, work)
    assert view["mode"] == "lanes"
    assert view["state"] == "active"
    assert view["pending"] == []
    names = [lane["name"] for lane in view["columns"]]
    assert names == DEFAULT_COLUMNS + ["Unassigned"]
    assert [t["title"] for t in view["columns"][0]["tasks"]] == ["Card"]
    assert [t["id"] for t in view["columns"][-1]["tasks"]] == ["loose"]


def test_render_list_mode(store):
    asyncio.run(store.insert("kanban_tasks", [
        {"id": "A", "project_id": "p1", "title": "A", "order_index": 1},
        {"id": "B", "project_id": "p1", "title": "B", "order_index": 0},
    ]))

    async def work(session):
        return session.render()

    view = run(store, work, mode=BoardMode.LIST)
    assert "columns" not in view
    assert [t["id"] for t in view["tasks"]] == ["B", "A"]


def test_reload_picks_up_missed_rows(store):
    async def work(session):
        # Bypass the change stream: write while unsubscribed from the fan-out
        store.fanout.subscriptions.clear()
        await store.insert("kanban_tasks", [{"id": "late", "project_id": "p1", "title": "Late"}])
        before = len(session.collection)
        await session.reload()
        return before, session.collection.ids()

    before, ids = run(store, work, mode=BoardMode.LIST)
    assert before == 0
    assert ids == ["late"]
