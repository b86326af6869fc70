"""
Projects, membership and the acting user's board context.

A user's role lives on their profile row and the boards they belong to
live in project_members. Nothing here trusts what a client says about
itself: load_context() is the only way a BoardContext is built for a
request.
"""
import logging
from typing import Any, Dict, List, Optional

from .accessor import TableAccessor
from .board import DEFAULT_COLUMNS, PermissionDenied, ValidationError
from .schema import GLOBAL_ROLES, BoardContext

logger = logging.getLogger(__name__)

PROFILES_TABLE = "profiles"
PROJECTS_TABLE = "projects"
MEMBERS_TABLE = "project_members"

PROJECT_TYPES = ("development", "research", "ops", "marketing")


async def load_context(accessor: TableAccessor, user_id: str) -> BoardContext:
    """Role from the user's profile (member when absent), boards from membership."""
    if not user_id:
        raise PermissionDenied("X-User-Id is required")
    profiles = await accessor.query(PROFILES_TABLE, {"id": user_id}, limit=1)
    role = (profiles[0].get("role") if profiles else None) or "member"
    memberships = await accessor.query(MEMBERS_TABLE, {"user_id": user_id})
    return BoardContext(
        user_id=user_id,
        role=role,
        project_ids=frozenset(m["project_id"] for m in memberships),
    )


async def list_projects(accessor: TableAccessor, context: BoardContext) -> List[Dict[str, Any]]:
    """Live projects the context may open, by name."""
    rows = await accessor.query(PROJECTS_TABLE, {"archived": False}, order_by=[("name", True)])
    return [p for p in rows if context.can_open(p["project_id"])]


async def add_member(
    accessor: TableAccessor, context: BoardContext, project_id: str, user_id: str
) -> bool:
    """Add a user to a project; False if they already belong to it."""
    if not context.can_approve:
        raise PermissionDenied("Only team leaders, managers and admins can add members")
    if not user_id:
        raise ValidationError("user_id is required")
    existing = await accessor.query(MEMBERS_TABLE, {"project_id": project_id, "user_id": user_id})
    if existing:
        return False
    await accessor.insert(MEMBERS_TABLE, [{"project_id": project_id, "user_id": user_id}])
    logger.info(f"{context.user_id} added {user_id} to project {project_id}")
    return True


async def create_project(
    accessor: TableAccessor,
    context: BoardContext,
    name: str,
    incharge: Optional[str] = None,
    project_type: str = "development",
    start_date: Optional[str] = None,
    tentative_deadline: Optional[str] = None,
    default_columns: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Create a project with its default lanes.

    The incharge becomes a member, and so does a creator whose role does
    not already see every board.
    """
    if not context.can_approve:
        raise PermissionDenied("Only team leaders, managers and admins can create projects")
    name = (name or "").strip()
    if not name:
        raise ValidationError("Project name required")
    if project_type not in PROJECT_TYPES:
        raise ValidationError(f"project_type must be one of {', '.join(PROJECT_TYPES)}")

    project = (await accessor.insert(PROJECTS_TABLE, [{
        "name": name,
        "project_type": project_type,
        "incharge": incharge or None,
        "start_date": start_date or None,
        "tentative_deadline": tentative_deadline or None,
        "created_by": context.user_id,
        "archived": False,
    }]))[0]
    project_id = project["project_id"]

    members = [incharge] if incharge else []
    if context.role not in GLOBAL_ROLES and context.user_id not in members:
        members.append(context.user_id)
    if members:
        await accessor.insert(MEMBERS_TABLE, [
            {"project_id": project_id, "user_id": user_id} for user_id in members
        ])

    columns = DEFAULT_COLUMNS if default_columns is None else default_columns
    if columns:
        await accessor.insert("project_columns", [
            {"project_id": project_id, "name": column, "position": i}
            for i, column in enumerate(columns)
        ])
    logger.info(f"Project {name!r} ({project_id}) created by {context.user_id}")
    return project
