"""
Board session: everything one open board view needs.

Wires a LocalOrderedCollection, its ChangeStreamReconciler and its
ReorderController to one project, and owns the board-level chores around
them: permission check on open, default lane bootstrap, task creation,
and the "System: ..." remarks written to the project feed.

Usage:
    session = BoardSession(accessor, BoardContext(user_id="u1", role="admin"))
    await session.open("proj-1")
    await session.reorder(task_id, 2, 0)
    await session.close()
"""
import logging
from typing import Any, Dict, List, Optional

from .accessor import TableAccessor
from .collection import LocalOrderedCollection
from .reconciler import ChangeStreamReconciler
from .reorder import ReorderController
from .schema import BoardContext, BoardMode, ChangeType, Column, ReorderResult, Task

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = ["To Do", "In Progress", "Done"]


class PermissionDenied(Exception):
    """Raised when the board context may not perform an operation."""
    pass


class ValidationError(Exception):
    """Raised when user input fails validation."""
    pass


class BoardSession:
    """One open board (per tab). Not shared between views."""

    def __init__(
        self,
        accessor: TableAccessor,
        context: BoardContext,
        mode: BoardMode = BoardMode.LANES,
        table: str = "kanban_tasks",
        default_columns: Optional[List[str]] = None,
        subscribe_timeout: float = 10.0,
    ):
        self.accessor = accessor
        self.context = context
        self.mode = mode
        self.table = table
        self.default_columns = default_columns if default_columns is not None else DEFAULT_COLUMNS
        self.subscribe_timeout = subscribe_timeout

        self.collection: Optional[LocalOrderedCollection] = None
        self.reconciler: Optional[ChangeStreamReconciler] = None
        self.controller: Optional[ReorderController] = None
        self.columns: List[Column] = []

    @classmethod
    def from_config(cls, cfg, context: BoardContext, accessor: TableAccessor = None) -> "BoardSession":
        return cls(
            accessor or cfg.build_accessor(),
            context,
            mode=cfg.mode,
            table=cfg.task_table,
            default_columns=cfg.default_columns,
            subscribe_timeout=cfg.subscribe_timeout,
        )

    @property
    def project_id(self) -> Optional[str]:
        return self.collection.project_id if self.collection else None

    @property
    def is_open(self) -> bool:
        return self.collection is not None

    def _require_open(self) -> LocalOrderedCollection:
        if self.collection is None:
            raise RuntimeError("No board is open")
        return self.collection

    # ── Lifecycle ────────────────────────────────────────────

    async def open(self, project_id: str) -> None:
        """
        Open (or switch to) a project's board.

        The previous board's subscription is released before the new one is
        opened, and the new collection is built from scratch.
        """
        if not self.context.can_open(project_id):
            raise PermissionDenied(
                f"User {self.context.user_id} ({self.context.role}) is not a member of {project_id}"
            )
        if self.is_open:
            await self.close()

        self.collection = LocalOrderedCollection(project_id, self.mode)
        self.reconciler = ChangeStreamReconciler(self.accessor, self.collection, self.table)
        self.controller = ReorderController(self.accessor, self.collection, self.table)
        if self.mode == BoardMode.LANES:
            await self.load_columns()
        await self.reconciler.start(timeout=self.subscribe_timeout)
        logger.info(f"Opened board {project_id}: {len(self.collection)} task(s)")

    async def close(self) -> None:
        if self.reconciler is not None:
            await self.reconciler.stop()
        if self.collection is not None:
            logger.info(f"Closed board {self.collection.project_id}")
        self.collection = None
        self.reconciler = None
        self.controller = None
        self.columns = []

    switch_project = open

    async def reload(self) -> None:
        """User-triggered full refetch (the recovery path after a partial failure)."""
        self._require_open()
        await self.reconciler.refresh()

    # ── Columns ──────────────────────────────────────────────

    async def load_columns(self) -> List[Column]:
        """Fetch lanes, creating the default set for a board that has none."""
        project_id = self._require_open().project_id
        rows = await self.accessor.query(
            "project_columns", {"project_id": project_id}, order_by=[("position", True)]
        )
        if not rows and self.default_columns:
            await self.accessor.insert("project_columns", [
                {"project_id": project_id, "name": name, "position": i}
                for i, name in enumerate(self.default_columns)
            ])
            logger.info(f"Created default columns for {project_id}")
            rows = await self.accessor.query(
                "project_columns", {"project_id": project_id}, order_by=[("position", True)]
            )
        self.columns = [Column.from_dict(r) for r in rows]
        return self.columns

    def column_name(self, column_id: Optional[str]) -> str:
        for col in self.columns:
            if col.column_id == column_id:
                return col.name
        return column_id or "(none)"

    # ── Drag & drop ──────────────────────────────────────────

    async def reorder(
        self, task_id: str, source_index: int, destination_index: int,
        column_id: Optional[str] = None,
    ) -> ReorderResult:
        self._require_open()
        return await self.controller.reorder(task_id, source_index, destination_index, column_id)

    async def move_to_column(
        self, task_id: str, to_column_id: str, destination_index: int
    ) -> ReorderResult:
        """Cross-lane drag. Writes a system remark once the move is persisted."""
        collection = self._require_open()
        task = collection.get(task_id)
        if task is None:
            return ReorderResult(moved=False)
        from_name = self.column_name(task.column_id)
        changed_lane = task.column_id != to_column_id

        result = await self.controller.move_to_column(task_id, to_column_id, destination_index)
        if result.moved and changed_lane and task_id in result.written:
            await self.add_remark(
                f'System: Task "{task.title}" moved from {from_name} → '
                f"{self.column_name(to_column_id)}.",
                task_id=task_id,
            )
        return result

    # ── Task edits ───────────────────────────────────────────

    async def add_task(self, title: str, column_id: Optional[str] = None, **fields) -> Task:
        """Create a task at the end of its lane."""
        collection = self._require_open()
        title = (title or "").strip()
        if not title:
            raise ValidationError("Task title is required")
        if self.mode == BoardMode.LANES and column_id is None and self.columns:
            column_id = self.columns[0].column_id

        row = {
            **fields,
            "project_id": collection.project_id,
            "column_id": column_id,
            "title": title,
            "order_index": len(collection.scope(column_id if self.mode == BoardMode.LANES else None)),
        }
        inserted = await self.accessor.insert(self.table, [row])
        # The insert echo will merge into the same record
        collection.apply_remote_patch(inserted[0]["id"], inserted[0], ChangeType.INSERT)
        await self.add_remark(f'System: Task "{title}" created.', task_id=inserted[0]["id"])
        return collection.get(inserted[0]["id"]) or Task.from_dict(inserted[0])

    async def update_task(self, task_id: str, **fields) -> Optional[Task]:
        """Edit descriptive fields; ordering goes through reorder()/move_to_column()."""
        collection = self._require_open()
        patch = {k: v for k, v in fields.items() if k not in ("id", "order_index", "column_id", "project_id")}
        if not patch:
            return collection.get(task_id)
        rows = await self.accessor.update(self.table, {"id": task_id}, patch)
        if rows:
            collection.apply_remote_patch(task_id, rows[0])
        return collection.get(task_id)

    async def delete_task(self, task_id: str) -> bool:
        collection = self._require_open()
        task = collection.get(task_id)
        await self.accessor.delete(self.table, {"id": task_id})
        removed = collection.remove(task_id)
        if task is not None:
            await self.add_remark(f'System: Task "{task.title}" deleted.')
        return removed

    # ── Remarks ──────────────────────────────────────────────

    async def add_remark(self, text: str, task_id: Optional[str] = None) -> None:
        """Append to the project remark feed. Failures are logged, not raised."""
        project_id = self._require_open().project_id
        try:
            await self.accessor.insert("project_remarks", [{
                "project_id": project_id,
                "task_id": task_id,
                "created_by": self.context.user_id,
                "remark": text,
            }])
        except Exception as e:
            logger.error(f"Failed to write remark for {project_id}: {e}")

    async def remarks(self, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recent remarks first."""
        project_id = self._require_open().project_id
        return await self.accessor.query(
            "project_remarks", {"project_id": project_id},
            order_by=[("created_at", False)], limit=limit,
        )

    # ── View model ───────────────────────────────────────────

    def render(self) -> Dict[str, Any]:
        """Snapshot for the board view: lanes with their ordered tasks."""
        collection = self._require_open()
        pending = collection.pending
        view: Dict[str, Any] = {
            "project_id": collection.project_id,
            "mode": self.mode.value,
            "pending": sorted(pending.task_ids) if pending else [],
            "state": self.reconciler.state.value,
        }
        if self.mode == BoardMode.LANES:
            lanes = []
            for col in self.columns:
                lane = col.to_dict()
                lane["tasks"] = [t.to_dict() for t in collection.scope(col.column_id)]
                lanes.append(lane)
            orphans = [t.to_dict() for t in collection.scope(None)]
            if orphans:
                lanes.append({"column_id": None, "name": "Unassigned", "position": len(lanes), "tasks": orphans})
            view["columns"] = lanes
        else:
            view["tasks"] = [t.to_dict() for t in collection]
        return view
