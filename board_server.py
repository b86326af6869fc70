#!/usr/bin/env python3
"""
Task Board Server
-----------------
JSON API for the board view, backed by whichever accessor taskboard.yaml
configures (local SQLite by default).

Usage:
    python board_server.py --port 3000
    python board_server.py --db /tmp/board.db

Identity:
    Every /api route needs X-API-Key (TASKBOARD_API_SECRET). The acting user
    is X-User-Id; their role and projects are read from the profiles and
    project_members tables.

API:
    GET  /api/projects
    POST /api/projects                           → { name, incharge?, project_type?, start_date?, tentative_deadline? }
    POST /api/projects/<project_id>/members      → { user_id }
    GET  /api/board/<project_id>                 → { board, remarks }
    POST /api/board/<project_id>/reorder         → { task_id, source_index, destination_index, column_id? }
    POST /api/board/<project_id>/move            → { task_id, to_column, index }
    POST /api/board/<project_id>/tasks           → { title, column_id?, ... }
    POST /api/tasks/<task_id>/dates              → { start_date, deadline, reason }
    GET  /api/date-requests
    POST /api/date-requests/<id>/approve
    POST /api/date-requests/<id>/reject          → { reason }
    GET  /api/users/<user_id>/workload
    POST /api/assign                             → { title, assigned_to, project_id, ... }
    GET  /api/notifications
    POST /api/notifications/read
    GET  /health
"""

import asyncio
import hmac
import logging
import os
import sys
from functools import wraps

from flask import Flask, jsonify, request

from taskboard.accessor import AccessorError
from taskboard.board import BoardSession, PermissionDenied, ValidationError
from taskboard.config import Config, ConfigError
from taskboard.notifications import NotificationFeed
from taskboard.projects import add_member, create_project, list_projects, load_context
from taskboard.workflows import AssignmentWorkflow, DateChangeWorkflow

logger = logging.getLogger("board_server")

app = Flask(__name__)


# ── Auth ─────────────────────────────────────────────────────────────────────

def _api_secret() -> str:
    return os.environ.get("TASKBOARD_API_SECRET", "")


def require_api_key(f):
    """Decorator: reject requests without a valid X-API-Key header."""
    @wraps(f)
    def decorated(*args, **kwargs):
        secret = _api_secret()
        if not secret:
            return jsonify({"error": "TASKBOARD_API_SECRET not set"}), 503
        provided = request.headers.get("X-API-Key", "").strip()
        if not hmac.compare_digest(provided, secret):
            code = 401 if not provided else 403
            return jsonify({"error": "Unauthorized"}), code
        return f(*args, **kwargs)
    return decorated


def current_user() -> str:
    return request.headers.get("X-User-Id", "").strip()


# ── Config ───────────────────────────────────────────────────────────────────

def get_config() -> Config:
    cfg = Config.load()
    db = os.environ.get("TASKBOARD_DB")
    if db:
        cfg.backend = "sqlite"
        cfg.db_path = db
    return cfg


def run_with_accessor(work):
    """Run `work(cfg, accessor, context)` to completion on a fresh event loop."""
    cfg = get_config()
    user_id = current_user()

    async def runner():
        accessor = cfg.build_accessor()
        try:
            context = await load_context(accessor, user_id)
            return await work(cfg, accessor, context)
        finally:
            await accessor.close()

    return asyncio.run(runner())


def run_on_board(project_id: str, op):
    """Open the board, run `op(session)`, always close."""
    async def work(cfg, accessor, context):
        session = BoardSession.from_config(cfg, context, accessor)
        await session.open(project_id)
        try:
            return await op(session)
        finally:
            await session.close()

    return run_with_accessor(work)


@app.errorhandler(PermissionDenied)
def _forbidden(e):
    return jsonify({"error": str(e)}), 403


@app.errorhandler(ValidationError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(AccessorError)
def _upstream(e):
    app.logger.warning(f"Backend error: {e}")
    return jsonify({"error": str(e)}), 502


@app.errorhandler(ConfigError)
def _misconfigured(e):
    return jsonify({"error": str(e)}), 503


def _body() -> dict:
    return request.get_json(force=True, silent=True) or {}


def _int(data: dict, key: str) -> int:
    try:
        return int(data[key])
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"{key} must be an integer")


def _reorder_payload(result, session) -> dict:
    return {
        "moved": result.moved,
        "written": result.written,
        "failed": result.failed,
        "vanished": result.vanished,
        "warning": result.warning,
        "board": session.render(),
    }


# ── Projects ─────────────────────────────────────────────────────────────────

@app.route("/api/projects")
@require_api_key
def api_projects():
    async def work(cfg, accessor, context):
        return await list_projects(accessor, context)
    projects = run_with_accessor(work)
    return jsonify({"projects": projects, "count": len(projects)})


@app.route("/api/projects", methods=["POST"])
@require_api_key
def api_create_project():
    data = _body()

    async def work(cfg, accessor, context):
        return await create_project(
            accessor,
            context,
            data.get("name", ""),
            incharge=data.get("incharge"),
            project_type=data.get("project_type") or "development",
            start_date=data.get("start_date"),
            tentative_deadline=data.get("tentative_deadline"),
            default_columns=cfg.default_columns,
        )
    return jsonify({"project": run_with_accessor(work)}), 201


@app.route("/api/projects/<project_id>/members", methods=["POST"])
@require_api_key
def api_add_member(project_id):
    user_id = _body().get("user_id", "")

    async def work(cfg, accessor, context):
        return await add_member(accessor, context, project_id, user_id)
    added = run_with_accessor(work)
    return jsonify({"project_id": project_id, "user_id": user_id, "added": added})


# ── Board ────────────────────────────────────────────────────────────────────

@app.route("/api/board/<project_id>")
@require_api_key
def api_board(project_id):
    async def op(session):
        return {"board": session.render(), "remarks": await session.remarks(10)}
    return jsonify(run_on_board(project_id, op))


@app.route("/api/board/<project_id>/reorder", methods=["POST"])
@require_api_key
def api_reorder(project_id):
    data = _body()
    task_id = data.get("task_id", "")
    if not task_id:
        return jsonify({"error": "task_id is required"}), 400
    source, destination = _int(data, "source_index"), _int(data, "destination_index")

    async def op(session):
        result = await session.reorder(task_id, source, destination, data.get("column_id"))
        return _reorder_payload(result, session)
    return jsonify(run_on_board(project_id, op))


@app.route("/api/board/<project_id>/move", methods=["POST"])
@require_api_key
def api_move(project_id):
    data = _body()
    task_id, to_column = data.get("task_id", ""), data.get("to_column", "")
    if not task_id or not to_column:
        return jsonify({"error": "task_id and to_column are required"}), 400
    index = _int(data, "index")

    async def op(session):
        result = await session.move_to_column(task_id, to_column, index)
        return _reorder_payload(result, session)
    return jsonify(run_on_board(project_id, op))


@app.route("/api/board/<project_id>/tasks", methods=["POST"])
@require_api_key
def api_create_task(project_id):
    data = _body()
    title = data.pop("title", "")
    column_id = data.pop("column_id", None)
    allowed = ("description", "status", "priority", "start_date", "deadline", "assigned_to")
    fields = {k: v for k, v in data.items() if k in allowed}

    async def op(session):
        task = await session.add_task(title, column_id, **fields)
        return {"task": task.to_dict()}
    return jsonify(run_on_board(project_id, op)), 201


# ── Workflows ────────────────────────────────────────────────────────────────

@app.route("/api/tasks/<task_id>/dates", methods=["POST"])
@require_api_key
def api_edit_dates(task_id):
    data = _body()

    async def work(cfg, accessor, context):
        flow = DateChangeWorkflow(accessor, context, cfg.task_table)
        return await flow.edit_dates(
            task_id, data.get("start_date"), data.get("deadline"), data.get("reason", "")
        )
    return jsonify({"result": run_with_accessor(work)})


@app.route("/api/date-requests")
@require_api_key
def api_date_requests():
    async def work(cfg, accessor, context):
        flow = DateChangeWorkflow(accessor, context, cfg.task_table)
        return [vars(r) | {"status": r.status.value} for r in await flow.pending_requests()]
    requests_ = run_with_accessor(work)
    return jsonify({"requests": requests_, "count": len(requests_)})


@app.route("/api/date-requests/<request_id>/approve", methods=["POST"])
@require_api_key
def api_approve(request_id):
    async def work(cfg, accessor, context):
        flow = DateChangeWorkflow(accessor, context, cfg.task_table)
        return (await flow.approve(request_id)).status.value
    return jsonify({"id": request_id, "status": run_with_accessor(work)})


@app.route("/api/date-requests/<request_id>/reject", methods=["POST"])
@require_api_key
def api_reject(request_id):
    reason = _body().get("reason", "")

    async def work(cfg, accessor, context):
        flow = DateChangeWorkflow(accessor, context, cfg.task_table)
        return (await flow.reject(request_id, reason)).status.value
    return jsonify({"id": request_id, "status": run_with_accessor(work)})


@app.route("/api/users/<user_id>/workload")
@require_api_key
def api_workload(user_id):
    async def work(cfg, accessor, context):
        flow = AssignmentWorkflow(accessor, context, cfg.task_table, cfg.due_soon_days)
        return await flow.workload_preview(user_id)
    return jsonify(run_with_accessor(work))


@app.route("/api/assign", methods=["POST"])
@require_api_key
def api_assign():
    data = _body()

    async def work(cfg, accessor, context):
        flow = AssignmentWorkflow(accessor, context, cfg.task_table, cfg.due_soon_days)
        task = await flow.assign(
            data.get("title", ""),
            data.get("assigned_to", ""),
            data.get("project_id", ""),
            column_id=data.get("column_id"),
            start_date=data.get("start_date"),
            deadline=data.get("deadline"),
        )
        return task.to_dict()
    return jsonify({"task": run_with_accessor(work)}), 201


# ── Notifications ────────────────────────────────────────────────────────────

@app.route("/api/notifications")
@require_api_key
def api_notifications():
    async def work(cfg, accessor, context):
        feed = NotificationFeed(accessor, context.user_id)
        await feed.refresh()
        return {"notifications": feed.items, "unread": feed.unread_count}
    return jsonify(run_with_accessor(work))


@app.route("/api/notifications/read", methods=["POST"])
@require_api_key
def api_notifications_read():
    async def work(cfg, accessor, context):
        return await NotificationFeed(accessor, context.user_id).mark_all_read()
    return jsonify({"marked": run_with_accessor(work)})


@app.route("/health")
def health():
    cfg = get_config()
    return jsonify({"status": "ok", "backend": cfg.backend, "mode": cfg.board_mode})


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Task Board Server")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--db", help="Path to board.db (overrides TASKBOARD_DB env var)")
    parser.add_argument("--config", help="Path to taskboard.yaml (overrides TASKBOARD_CONFIG)")
    args = parser.parse_args()

    if args.db:
        os.environ["TASKBOARD_DB"] = args.db
    if args.config:
        os.environ["TASKBOARD_CONFIG"] = args.config

    cfg = get_config()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format="%(asctime)s [taskboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logger.info(f"Serving on http://{args.host}:{args.port} (backend={cfg.backend}, mode={cfg.board_mode})")
    app.run(host=args.host, port=args.port, debug=False, threaded=True)
