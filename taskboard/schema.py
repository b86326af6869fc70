"""
Task board schema.

Task records are plain rows owned by the remote table accessor. The board
keeps them as dataclasses for rendering and ordering; every remote write
goes back out as a dict patch.
"""
from enum import Enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Optional, List, Dict, Any, FrozenSet


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


class ChangeType(Enum):
    """Row change kinds delivered by a change stream."""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class StreamStatus(Enum):
    """Control notices a subscription emits alongside row changes."""
    SUBSCRIBED = "subscribed"      # Acknowledged (first time or after reconnect)
    RECONNECTING = "reconnecting"  # Transport dropped, retrying
    CLOSED = "closed"              # Released by unsubscribe()


class BoardMode(Enum):
    """How a board scopes its order_index numbering."""
    LIST = "list"      # One dense sequence per project
    LANES = "lanes"    # One dense sequence per column

    @classmethod
    def from_str(cls, value: str) -> "BoardMode":
        try:
            return cls[value.upper()]
        except KeyError:
            return cls.LANES


class RequestStatus(Enum):
    """Lifecycle of a date change request."""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"


APPROVER_ROLES = ("team_leader", "manager", "admin")
GLOBAL_ROLES = ("manager", "admin")

# Statuses that take a task off everyone's plate
CLOSED_STATUSES = ("Completed", "Cancelled")


@dataclass(frozen=True)
class BoardContext:
    """
    Read-only identity of whoever is driving a board.

    Passed explicitly to every session/workflow; nothing reads the current
    user from global state.
    """
    user_id: str
    role: str = "member"
    project_ids: FrozenSet[str] = frozenset()

    @property
    def can_approve(self) -> bool:
        return self.role in APPROVER_ROLES

    def can_open(self, project_id: str) -> bool:
        """Managers and admins see every board, others only their own."""
        return self.role in GLOBAL_ROLES or project_id in self.project_ids


@dataclass
class Task:
    """One card on a board."""

    id: str
    project_id: str
    title: str = ""
    column_id: Optional[str] = None
    description: str = ""
    status: str = "Not Started"
    priority: str = "Medium"
    start_date: Optional[str] = None
    deadline: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_by: Optional[str] = None
    order_index: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    def merge(self, changed: Dict[str, Any]) -> None:
        """Apply a partial row; unknown keys are ignored, id never changes."""
        for key, value in changed.items():
            if key == "id" or key not in TASK_FIELDS:
                continue
            if key == "order_index" and value is not None:
                value = int(value)
            setattr(self, key, value)

    def to_dict(self) -> Dict[str, Any]:
        return {name: getattr(self, name) for name in TASK_FIELDS}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        """Build from a row; tolerates extra columns and missing optionals."""
        kwargs = {k: v for k, v in data.items() if k in TASK_FIELDS}
        if kwargs.get("order_index") is not None:
            kwargs["order_index"] = int(kwargs["order_index"])
        kwargs.setdefault("id", "")
        kwargs.setdefault("project_id", "")
        for key in ("title", "description"):
            if kwargs.get(key) is None:
                kwargs[key] = ""
        return cls(**kwargs)


TASK_FIELDS = tuple(f.name for f in fields(Task))


@dataclass
class Column:
    """A status lane on a board."""
    column_id: str
    project_id: str
    name: str
    position: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Column":
        return cls(
            column_id=data.get("column_id") or data.get("id", ""),
            project_id=data.get("project_id", ""),
            name=data.get("name", ""),
            position=int(data.get("position") or 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "column_id": self.column_id,
            "project_id": self.project_id,
            "name": self.name,
            "position": self.position,
        }


@dataclass
class ChangeEvent:
    """One row change as delivered by a subscription."""
    table: str
    type: ChangeType
    new: Dict[str, Any] = field(default_factory=dict)
    old: Dict[str, Any] = field(default_factory=dict)
    received_at: str = field(default_factory=utc_now)

    @property
    def record_id(self) -> Optional[str]:
        return self.new.get("id") or self.old.get("id")


@dataclass
class DateChangeRequest:
    """A member's request to move a task's start date and/or deadline."""
    id: str
    task_id: str
    requested_by: str
    old_start_date: Optional[str] = None
    new_start_date: Optional[str] = None
    old_deadline: Optional[str] = None
    new_deadline: Optional[str] = None
    reason: str = ""
    status: RequestStatus = RequestStatus.PENDING
    rejection_reason: Optional[str] = None
    created_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DateChangeRequest":
        try:
            status = RequestStatus(data.get("status") or "Pending")
        except ValueError:
            status = RequestStatus.PENDING
        return cls(
            id=data.get("id", ""),
            task_id=data.get("task_id", ""),
            requested_by=data.get("requested_by", ""),
            old_start_date=data.get("old_start_date"),
            new_start_date=data.get("new_start_date"),
            old_deadline=data.get("old_deadline"),
            new_deadline=data.get("new_deadline"),
            reason=data.get("reason") or "",
            status=status,
            rejection_reason=data.get("rejection_reason"),
            created_at=data.get("created_at"),
        )


@dataclass
class ReorderResult:
    """Outcome of one reorder/move once every row write has settled."""
    moved: bool
    written: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)   # task id -> error
    vanished: List[str] = field(default_factory=list)      # deleted mid-batch

    @property
    def partial_failure(self) -> bool:
        return bool(self.failed)

    @property
    def warning(self) -> str:
        """Inline, non-blocking message for the board view ('' when clean)."""
        if not self.failed:
            return ""
        return (
            f"Order saved for {len(self.written)} task(s), "
            f"{len(self.failed)} failed. Reload the board to resync."
        )
