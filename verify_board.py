#!/usr/bin/env python3
"""
Quick verification that two board tabs converge after a drag.
"""
import asyncio
import sys
import tempfile
from pathlib import Path

from taskboard.board import BoardSession
from taskboard.schema import BoardContext, BoardMode
from taskboard.store import SQLiteTableAccessor


async def settle(rounds: int = 20):
    """Let queued change events reach every subscriber."""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def run(db_path: str) -> bool:
    print("=" * 60)
    print("Task Board Reorder/Reconcile Verification")
    print("=" * 60)

    print("\n[1/5] Creating SQLite store...")
    store = SQLiteTableAccessor(db_path)
    await store.insert("kanban_tasks", [
        {"id": "A", "project_id": "demo", "title": "Task A", "order_index": 0},
        {"id": "B", "project_id": "demo", "title": "Task B", "order_index": 1},
        {"id": "C", "project_id": "demo", "title": "Task C", "order_index": 2},
    ])
    print("✅ Store seeded with A, B, C")

    print("\n[2/5] Opening the board in two tabs...")
    ctx = BoardContext(user_id="demo-user", role="admin")
    tab1 = BoardSession(store, ctx, mode=BoardMode.LIST)
    tab2 = BoardSession(store, ctx, mode=BoardMode.LIST)
    await tab1.open("demo")
    await tab2.open("demo")
    print(f"   Tab 1: {tab1.collection.ids()}")
    print(f"   Tab 2: {tab2.collection.ids()}")

    print("\n[3/5] Dragging C to the top in tab 1...")
    pending = asyncio.ensure_future(tab1.reorder("C", 2, 0))
    await asyncio.sleep(0)
    print(f"   Tab 1 (optimistic): {tab1.collection.ids()}")
    result = await pending
    print(f"   Written: {sorted(result.written)}  Warning: {result.warning or '-'}")

    print("\n[4/5] Waiting for the change stream...")
    await settle()
    print(f"   Tab 1: {tab1.collection.ids()}")
    print(f"   Tab 2: {tab2.collection.ids()}")

    print("\n[5/5] Checking persisted order_index...")
    rows = await store.query("kanban_tasks", {"project_id": "demo"}, order_by=[("order_index", True)])
    print("   " + ", ".join(f"{r['id']}={r['order_index']}" for r in rows))

    ok = tab1.collection.ids() == tab2.collection.ids() == ["C", "A", "B"]
    await tab1.close()
    await tab2.close()

    print("\n" + "=" * 60)
    print("✅ ALL CHECKS PASSED" if ok else "❌ TABS DID NOT CONVERGE")
    print("=" * 60)
    return ok


def main():
    with tempfile.TemporaryDirectory() as tmp:
        ok = asyncio.run(run(str(Path(tmp) / "verify_board.db")))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
