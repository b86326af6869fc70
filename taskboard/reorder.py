"""
Reorder controller: turns a drag gesture into an optimistic local move plus
a batch of per-row order_index writes.

Policy: renumber the whole affected scope densely (0..n-1) on every move.
More rows are written per drag, but index collisions and fractional drift
cannot happen. Writes are independent per-row updates (no cross-row
transaction is available); a failed row is reported, never rolled back,
since undoing the user's own drag is worse than a numbering gap that the
next full load() repairs.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from .accessor import TableAccessor
from .collection import LocalOrderedCollection, PendingReorderBatch
from .schema import ReorderResult

logger = logging.getLogger(__name__)


class ReorderController:
    """Drag-end handler for one board."""

    def __init__(
        self,
        accessor: TableAccessor,
        collection: LocalOrderedCollection,
        table: str = "kanban_tasks",
    ):
        self.accessor = accessor
        self.collection = collection
        self.table = table

    async def reorder(
        self,
        task_id: str,
        source_index: int,
        destination_index: int,
        column_id: Optional[str] = None,
    ) -> ReorderResult:
        """
        Move a task within its scope and persist the new numbering.

        The local move happens before the first await, so the board
        re-renders without waiting on the network.
        """
        task = self.collection.get(task_id)
        if task is None:
            return ReorderResult(moved=False)
        if column_id is None:
            column_id = self.collection.scope_of(task)

        scope_ids = self.collection.scope_ids(column_id)
        if task_id not in scope_ids:
            return ReorderResult(moved=False)
        if not (0 <= source_index < len(scope_ids)) or scope_ids[source_index] != task_id:
            # The view's index is stale (a remote event landed mid-drag); trust the id
            logger.debug(f"Drag source {source_index} is stale for {task_id}")
            source_index = scope_ids.index(task_id)

        if not self.collection.apply_local_move(source_index, destination_index, column_id):
            return ReorderResult(moved=False)

        numbering = self.collection.renumber(column_id)
        targets = {tid: {"order_index": idx} for tid, idx in numbering.items()}
        return await self._write_batch(targets)

    async def move_to_column(
        self, task_id: str, to_column_id: str, destination_index: int
    ) -> ReorderResult:
        """Move a task into another lane; renumbers both lanes."""
        task = self.collection.get(task_id)
        if task is None:
            return ReorderResult(moved=False)

        from_column = task.column_id
        if from_column == to_column_id:
            return await self.reorder(
                task_id,
                self.collection.position_in_scope(task),
                destination_index,
                self.collection.scope_of(task),
            )

        from_scope = self.collection.scope_of(task)
        self.collection.place(task_id, to_column_id, destination_index)
        to_scope = self.collection.scope_of(task)

        targets: Dict[str, Dict[str, Any]] = {}
        for scope in dict.fromkeys([from_scope, to_scope]):
            for tid, idx in self.collection.renumber(scope).items():
                targets[tid] = {"order_index": idx}
        targets[task_id]["column_id"] = to_column_id
        return await self._write_batch(targets)

    async def _write_batch(self, targets: Dict[str, Dict[str, Any]]) -> ReorderResult:
        batch = PendingReorderBatch(targets)
        previous = self.collection.pending
        if previous is not None and not previous.settled:
            # Known soft spot: the older batch's writes keep going and may land after ours
            logger.info(f"Reorder started while {previous} is in flight")
        self.collection.pending = batch

        outcomes = await asyncio.gather(
            *(self._write_row(tid, patch) for tid, patch in targets.items()),
            return_exceptions=True,
        )

        result = ReorderResult(moved=True)
        for tid, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                if tid in batch.discarded or self.collection.get(tid) is None:
                    result.vanished.append(tid)
                else:
                    result.failed[tid] = str(outcome)
            elif not outcome:
                # Matched no row: deleted remotely, its delete echo may still be queued
                result.vanished.append(tid)
            else:
                result.written.append(tid)

        batch.settled = True
        if self.collection.pending is batch:
            self.collection.pending = None

        if result.failed:
            logger.warning(
                f"Reorder on {self.collection.project_id}: {len(result.failed)} of "
                f"{len(targets)} row write(s) failed: {sorted(result.failed)}"
            )
        return result

    async def _write_row(self, task_id: str, patch: Dict[str, Any]):
        return await self.accessor.update(self.table, {"id": task_id}, patch)
