"""
Client-orchestrated task workflows.

DateChangeWorkflow:
    Members cannot move a task's dates directly: a change (with a reason)
    becomes a Pending request that a team leader/manager/admin approves or
    rejects. Approvers' own edits apply immediately. The requester is
    notified either way.

AssignmentWorkflow:
    Leaders assign tasks to a user after looking at that user's current
    workload (open tasks by status, overdue, due soon).
"""
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from .accessor import TableAccessor
from .board import PermissionDenied, ValidationError
from .schema import (
    CLOSED_STATUSES,
    BoardContext,
    DateChangeRequest,
    RequestStatus,
    Task,
)

logger = logging.getLogger(__name__)

REQUESTS_TABLE = "task_date_change_requests"
NOTIFICATIONS_TABLE = "notifications"


def parse_date(value: Optional[str]) -> Optional[date]:
    """Date part of an ISO date/datetime string; None for empty."""
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationError(f"Invalid date: {value!r}")


def check_date_order(start_date: Optional[str], deadline: Optional[str]) -> None:
    start, end = parse_date(start_date), parse_date(deadline)
    if start and end and end < start:
        raise ValidationError("Deadline cannot be before Start Date")


async def notify(accessor: TableAccessor, user_id: Optional[str], message: str) -> None:
    """Drop a message in a user's notification feed; failures are logged."""
    if not user_id:
        return
    try:
        await accessor.insert(NOTIFICATIONS_TABLE, [{"user_id": user_id, "message": message}])
    except Exception as e:
        logger.error(f"Failed to notify {user_id}: {e}")


class DateChangeWorkflow:
    """Request/approve/reject flow for task date edits."""

    def __init__(self, accessor: TableAccessor, context: BoardContext, table: str = "kanban_tasks"):
        self.accessor = accessor
        self.context = context
        self.table = table

    async def _task(self, task_id: str) -> Task:
        rows = await self.accessor.query(self.table, {"id": task_id})
        if not rows:
            raise ValidationError(f"Task {task_id} not found")
        return Task.from_dict(rows[0])

    async def _request(self, request_id: str) -> DateChangeRequest:
        rows = await self.accessor.query(REQUESTS_TABLE, {"id": request_id})
        if not rows:
            raise ValidationError(f"Request {request_id} not found")
        return DateChangeRequest.from_dict(rows[0])

    def _require_approver(self) -> None:
        if not self.context.can_approve:
            raise PermissionDenied(
                f"Role '{self.context.role}' cannot review date change requests"
            )

    async def edit_dates(
        self,
        task_id: str,
        start_date: Optional[str],
        deadline: Optional[str],
        reason: str = "",
    ) -> str:
        """
        Edit a task's dates.

        Returns "unchanged", "applied" (approver edit) or "requested"
        (member edit, now awaiting approval).
        """
        check_date_order(start_date, deadline)
        task = await self._task(task_id)
        if parse_date(start_date) == parse_date(task.start_date) and \
                parse_date(deadline) == parse_date(task.deadline):
            return "unchanged"
        if not (reason or "").strip():
            raise ValidationError('Please provide a reason for changing the date')

        if self.context.can_approve:
            await self.accessor.update(
                self.table, {"id": task_id}, {"start_date": start_date, "deadline": deadline}
            )
            logger.info(f"{self.context.user_id} changed dates of {task_id} directly")
            return "applied"

        await self.accessor.insert(REQUESTS_TABLE, [{
            "task_id": task_id,
            "requested_by": self.context.user_id,
            "old_start_date": task.start_date,
            "old_deadline": task.deadline,
            "new_start_date": start_date,
            "new_deadline": deadline,
            "reason": reason.strip(),
            "status": RequestStatus.PENDING.value,
        }])
        logger.info(f"Date change for {task_id} submitted for approval by {self.context.user_id}")
        return "requested"

    async def pending_requests(self) -> List[DateChangeRequest]:
        """Oldest pending requests first (approvers only)."""
        self._require_approver()
        rows = await self.accessor.query(
            REQUESTS_TABLE,
            {"status": RequestStatus.PENDING.value},
            order_by=[("created_at", True)],
        )
        return [DateChangeRequest.from_dict(r) for r in rows]

    async def approve(self, request_id: str) -> DateChangeRequest:
        self._require_approver()
        req = await self._request(request_id)
        if req.status != RequestStatus.PENDING:
            raise ValidationError(f"Request {request_id} is already {req.status.value}")
        task = await self._task(req.task_id)

        await self.accessor.update(self.table, {"id": req.task_id}, {
            "start_date": req.new_start_date,
            "deadline": req.new_deadline,
        })
        await self.accessor.update(
            REQUESTS_TABLE, {"id": request_id}, {"status": RequestStatus.APPROVED.value}
        )
        await notify(
            self.accessor, req.requested_by,
            f'✅ Your request for task "{task.title}" has been approved.',
        )
        logger.info(f"{self.context.user_id} approved date change {request_id}")
        req.status = RequestStatus.APPROVED
        return req

    async def reject(self, request_id: str, reason: str) -> DateChangeRequest:
        self._require_approver()
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("A reason is required to reject a request")
        req = await self._request(request_id)
        if req.status != RequestStatus.PENDING:
            raise ValidationError(f"Request {request_id} is already {req.status.value}")
        task = await self._task(req.task_id)

        await self.accessor.update(REQUESTS_TABLE, {"id": request_id}, {
            "status": RequestStatus.REJECTED.value,
            "rejection_reason": reason,
        })
        await notify(
            self.accessor, req.requested_by,
            f'❌ Your request for task "{task.title}" was rejected. Reason: {reason}',
        )
        logger.info(f"{self.context.user_id} rejected date change {request_id}")
        req.status = RequestStatus.REJECTED
        req.rejection_reason = reason
        return req


class AssignmentWorkflow:
    """Assign tasks to users, with a preview of what they already carry."""

    def __init__(
        self,
        accessor: TableAccessor,
        context: BoardContext,
        table: str = "kanban_tasks",
        due_soon_days: int = 7,
    ):
        self.accessor = accessor
        self.context = context
        self.table = table
        self.due_soon_days = due_soon_days

    async def workload_preview(self, user_id: str, today: Optional[date] = None) -> Dict[str, Any]:
        """Summarize a user's open tasks: counts by status, overdue, due soon."""
        today = today or date.today()
        horizon = today + timedelta(days=self.due_soon_days)
        rows = await self.accessor.query(self.table, {"assigned_to": user_id})
        tasks = [Task.from_dict(r) for r in rows]
        open_tasks = [t for t in tasks if t.status not in CLOSED_STATUSES]

        by_status: Dict[str, int] = {}
        overdue, due_soon = [], []
        for t in open_tasks:
            by_status[t.status] = by_status.get(t.status, 0) + 1
            deadline = parse_date(t.deadline)
            if deadline is None:
                continue
            if deadline < today:
                overdue.append(t.title)
            elif deadline <= horizon:
                due_soon.append(t.title)

        return {
            "user_id": user_id,
            "open": len(open_tasks),
            "closed": len(tasks) - len(open_tasks),
            "by_status": by_status,
            "overdue": overdue,
            "due_soon": due_soon,
        }

    async def assign(
        self,
        title: str,
        assigned_to: str,
        project_id: str,
        column_id: Optional[str] = None,
        start_date: Optional[str] = None,
        deadline: Optional[str] = None,
        **fields,
    ) -> Task:
        """Create a task for someone else; it lands at the end of its lane."""
        if not self.context.can_approve:
            raise PermissionDenied(f"Role '{self.context.role}' cannot assign tasks")
        if not self.context.can_open(project_id):
            raise PermissionDenied(f"Not a member of {project_id}")
        title = (title or "").strip()
        if not title or not assigned_to:
            raise ValidationError("Task title and assigned user are required.")
        check_date_order(start_date, deadline)

        siblings = await self.accessor.query(
            self.table, {"project_id": project_id, "column_id": column_id}
        )
        inserted = await self.accessor.insert(self.table, [{
            **fields,
            "title": title,
            "project_id": project_id,
            "column_id": column_id,
            "assigned_to": assigned_to,
            "assigned_by": self.context.user_id,
            "start_date": start_date or None,
            "deadline": deadline or None,
            "order_index": len(siblings),
        }])
        await notify(self.accessor, assigned_to, f'📌 New task assigned to you: "{title}"')
        logger.info(f"{self.context.user_id} assigned '{title}' to {assigned_to}")
        return Task.from_dict(inserted[0])
