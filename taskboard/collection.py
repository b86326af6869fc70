"""
Local ordered collection: the in-memory, render-authoritative task order
for one open board, plus the pending reorder batch it may be carrying.

Ordering rule (applied by load() and on inserts):
  1. tasks with an order_index, ascending (ties: created_at, then id)
  2. then tasks without one, by deadline ascending (missing last),
     then created_at, then id

order_index is a retrofit, so historical rows may lack it; they are grouped
after the numbered ones rather than interleaved.

In LANES mode every column is its own ordering scope; in LIST mode the
whole project is one scope. Positions passed to apply_local_move() are
scope positions. A remote patch carrying order_index or column_id re-sorts
the task's scope by order_index, so once every row of a renumbering has
arrived the order depends only on the final values.
"""
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Union

from .schema import BoardMode, ChangeType, Task

logger = logging.getLogger(__name__)

ORDERING_FIELDS = ("order_index", "column_id")

_NO_DEADLINE = "\uffff"


def sort_key(task: Task):
    if task.order_index is not None:
        return (0, task.order_index, "", task.created_at or "", task.id)
    return (1, 0, task.deadline or _NO_DEADLINE, task.created_at or "", task.id)


def _placement_key(task: Task, tie: int = 0):
    if task.order_index is not None:
        return (0, task.order_index, tie)
    return (1, task.deadline or _NO_DEADLINE, task.created_at or "", task.id)


class PendingReorderBatch:
    """
    In-flight order_index writes not yet confirmed by the remote store.

    While a batch is pending, change events for its task ids are treated as
    confirmations: their ordering fields are ignored so the optimistic order
    survives stale or out-of-order echoes.
    """

    def __init__(self, targets: Dict[str, Dict[str, Any]]):
        self.targets = targets          # task id -> ordering patch being written
        self.confirmed: Set[str] = set()
        self.discarded: Set[str] = set()
        self.settled = False

    @property
    def task_ids(self) -> List[str]:
        return list(self.targets)

    def covers(self, task_id: str) -> bool:
        return task_id in self.targets and task_id not in self.discarded

    def confirm(self, task_id: str, changed: Dict[str, Any]) -> Dict[str, Any]:
        """Record an echo and return the part of it that is safe to merge."""
        self.confirmed.add(task_id)
        return {k: v for k, v in changed.items() if k not in ORDERING_FIELDS}

    def discard(self, task_id: str) -> None:
        """The task was deleted remotely mid-batch; its write no longer matters."""
        if task_id in self.targets:
            self.discarded.add(task_id)

    def __repr__(self) -> str:
        return (
            f"<PendingReorderBatch {len(self.targets)} rows, "
            f"{len(self.confirmed)} confirmed, settled={self.settled}>"
        )


class LocalOrderedCollection:
    """Ordered task list for one project; the single source of truth for rendering."""

    def __init__(self, project_id: str, mode: BoardMode = BoardMode.LIST):
        self.project_id = project_id
        self.mode = mode
        self.tasks: List[Task] = []
        self.pending: Optional[PendingReorderBatch] = None
        self._listeners: List[Callable] = []

    # ── Observers ────────────────────────────────────────────

    def on_change(self, callback: Callable) -> None:
        """Register a re-render callback: callback(collection, reason)."""
        self._listeners.append(callback)

    def _emit(self, reason: str) -> None:
        for callback in self._listeners:
            try:
                callback(self, reason)
            except Exception as e:
                logger.error(f"Error in board change callback ({reason}): {e}")

    # ── Reads ────────────────────────────────────────────────

    def __len__(self) -> int:
        return len(self.tasks)

    def __iter__(self):
        return iter(self.tasks)

    def ids(self) -> List[str]:
        """Every task id in display order."""
        return [t.id for t in self.tasks]

    def scope_ids(self, column_id: Optional[str] = None) -> List[str]:
        return [t.id for t in self.scope(column_id)]

    def index_of(self, task_id: str) -> int:
        for i, task in enumerate(self.tasks):
            if task.id == task_id:
                return i
        return -1

    def get(self, task_id: str) -> Optional[Task]:
        i = self.index_of(task_id)
        return self.tasks[i] if i >= 0 else None

    def scope_of(self, task: Task) -> Optional[str]:
        return task.column_id if self.mode == BoardMode.LANES else None

    def scope(self, column_id: Optional[str] = None) -> List[Task]:
        """Tasks sharing one order_index sequence, in display order."""
        if self.mode == BoardMode.LIST:
            return list(self.tasks)
        return [t for t in self.tasks if t.column_id == column_id]

    def position_in_scope(self, task: Task) -> int:
        return [t.id for t in self.scope(self.scope_of(task))].index(task.id)

    # ── Mutations ────────────────────────────────────────────

    def load(self, tasks: Iterable[Union[Task, Dict[str, Any]]]) -> None:
        """Replace the whole sequence; a fresh load supersedes any pending batch."""
        loaded = [t if isinstance(t, Task) else Task.from_dict(t) for t in tasks]
        self.tasks = sorted(loaded, key=sort_key)
        self.pending = None
        self._emit("load")

    def apply_local_move(
        self, source_index: int, destination_index: int, column_id: Optional[str] = None
    ) -> bool:
        """
        Move one element within a scope, in memory only.

        Returns False (and changes nothing) for a no-op drag or any index
        outside the scope's current bounds.
        """
        scope = self.scope(column_id)
        if source_index == destination_index:
            return False
        if not (0 <= source_index < len(scope) and 0 <= destination_index < len(scope)):
            return False

        positions = [self.index_of(t.id) for t in scope]
        moved = scope.pop(source_index)
        scope.insert(destination_index, moved)
        for pos, task in zip(positions, scope):
            self.tasks[pos] = task
        self._emit("local_move")
        return True

    def place(self, task_id: str, column_id: Optional[str], index: int) -> bool:
        """Move a task into another lane at a scope position (optimistic)."""
        task = self.get(task_id)
        if task is None:
            return False
        task.column_id = column_id
        self._insert_at(task, index)
        self._emit("local_move")
        return True

    def renumber(self, column_id: Optional[str] = None) -> Dict[str, int]:
        """Assign a dense 0..n-1 order_index to one scope; returns id -> index."""
        numbering = {}
        for i, task in enumerate(self.scope(column_id)):
            task.order_index = i
            numbering[task.id] = i
        return numbering

    def apply_remote_patch(
        self,
        task_id: str,
        changed: Dict[str, Any],
        change_type: ChangeType = ChangeType.UPDATE,
    ) -> bool:
        """
        Merge a remote change into the sequence; returns whether anything applied.

        Updates for unknown ids are dropped (the task may already be gone
        locally). Inserts of an id already present merge like updates.
        An order_index past the end of the scope sorts last.
        """
        if change_type == ChangeType.DELETE:
            return self.remove(task_id)

        i = self.index_of(task_id)
        if i < 0:
            if change_type != ChangeType.INSERT:
                logger.debug(f"Dropping update for unknown task {task_id}")
                return False
            task = Task.from_dict({**changed, "id": task_id})
            if task.project_id and task.project_id != self.project_id:
                return False
            task.project_id = self.project_id
            self.tasks.append(task)
            self._reseat(task, after_ties=True)
            self._emit("insert")
            return True

        task = self.tasks[i]
        new_project = changed.get("project_id")
        if new_project and new_project != self.project_id:
            # Moved to another board
            return self.remove(task_id)

        old_scope, old_index = self.scope_of(task), task.order_index
        task.merge(changed)
        if self.scope_of(task) != old_scope or "order_index" in changed:
            moved_down = (
                self.scope_of(task) == old_scope
                and old_index is not None
                and task.order_index is not None
                and task.order_index > old_index
            )
            self._reseat(task, after_ties=moved_down)
        self._emit("update")
        return True

    def remove(self, task_id: str) -> bool:
        i = self.index_of(task_id)
        if i < 0:
            return False
        del self.tasks[i]
        if self.pending:
            self.pending.discard(task_id)
        self._emit("delete")
        return True

    def _insert_at(self, task: Task, index: int) -> None:
        """Re-seat a task at a clamped position within its (current) scope."""
        del self.tasks[self.index_of(task.id)]
        siblings = self.scope(self.scope_of(task))
        index = max(0, min(index, len(siblings)))
        if not siblings:
            self.tasks.append(task)
        elif index < len(siblings):
            self.tasks.insert(self.index_of(siblings[index].id), task)
        else:
            self.tasks.insert(self.index_of(siblings[-1].id) + 1, task)

    def _reseat(self, task: Task, after_ties: bool = False) -> None:
        """
        Move a task into its scope and stably re-sort that scope by position.

        Siblings still holding the task's order_index keep their relative
        order; the task lands before them, or after them when after_ties.
        When every row of a renumbering has arrived the indexes are distinct,
        so the result no longer depends on the order the rows came in.
        """
        self._insert_at(task, len(self.tasks))
        scope = self.scope(self.scope_of(task))
        positions = [self.index_of(t.id) for t in scope]
        tie = 1 if after_ties else -1
        scope.sort(key=lambda t: _placement_key(t, tie if t is task else 0))
        for pos, sibling in zip(positions, scope):
            self.tasks[pos] = sibling
