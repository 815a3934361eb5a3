#!/usr/bin/env python3
"""
Taskflow Kanban Server
-----------------------
Thin JSON API over the workflow engine (pkg/workflow). Every route resolves
the caller from the X-User-Id header, converts camelCase bodies to the
engine's snake_case fields and calls one Workflow operation.

Usage:
    python kanban_server.py --config config.yaml
    python kanban_server.py --db /tmp/workflow.db --port 3000

API (all JSON):
    POST   /api/projects                             → { id }
    DELETE /api/projects/<id>
    GET    /api/projects/<id>/members                → { members }
    POST   /api/projects/<id>/members                ← { userId, role }
    DELETE /api/projects/<id>/members/<userId>
    POST   /api/projects/<id>/milestones             → { id }
    GET    /api/projects/<id>/tasks?status=&dueDate= → { tasks, count }
    POST   /api/projects/<id>/tasks                  → { id }
    GET    /api/projects/<id>/tasks/status-counts
    GET    /api/projects/<id>/boards                 → { boards }
    POST   /api/projects/<id>/boards                 → { id }
    GET    /api/tasks/<id>       PUT  DELETE
    POST   /api/tasks/<id>/move                      ← { columnId, position }
    GET    /api/tasks/<id>/dependencies              → { prerequisites, dependents }
    POST   /api/tasks/<id>/dependencies              ← { dependsOnTaskId, dependencyType }
    DELETE /api/dependencies/<id>
    POST   /api/tasks/<id>/subtasks    PUT/DELETE /api/subtasks/<id>
    POST   /api/tasks/<id>/comments    DELETE     /api/comments/<id>
    POST   /api/tasks/<id>/time-entries   POST    /api/time-entries/<id>/stop
    GET    /api/boards/<id>      PUT  DELETE
    POST   /api/boards/<id>/columns                  → { id }
    PUT    /api/boards/<id>/columns/reorder          ← { columnIds: [ids] } (or columnOrder)
    PUT    /api/columns/<id>     DELETE

Errors come back as { error, kind } with not_found → 404, forbidden → 403,
invalid_argument → 400, conflict → 409.

Dependencies: flask, pyyaml
"""

import hmac
import logging
import re
from functools import wraps
from typing import Any, Dict, Optional

from flask import Flask, g, jsonify, request

from pkg.workflow import Workflow, WorkflowError
from pkg.workflow.config import WorkflowConfig, setup_logging

logger = logging.getLogger(__name__)

STATUS_BY_KIND = {
    "not_found": 404,
    "forbidden": 403,
    "invalid_argument": 400,
    "conflict": 409,
}

# Query-string filter names → engine filter keys
TASK_FILTERS = {
    "status": "status",
    "priority": "priority",
    "assignee": "assignee_id",
    "assigneeId": "assignee_id",
    "milestone": "milestone_id",
    "milestoneId": "milestone_id",
    "search": "search",
    "dueDate": "due_date",
    "tag": "tag",
    "sort": "sort",
    "limit": "limit",
    "offset": "offset",
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def snake_case(data: Dict[str, Any]) -> Dict[str, Any]:
    """{"wipLimit": 3} → {"wip_limit": 3}; snake_case keys pass through."""
    return {_CAMEL.sub("_", k).lower(): v for k, v in data.items()}


def _body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True) or {}
    return snake_case(data) if isinstance(data, dict) else {}


def create_app(config: Optional[WorkflowConfig] = None, workflow: Optional[Workflow] = None) -> Flask:
    """Build the Flask app around one Workflow instance."""
    config = config or WorkflowConfig.load()
    workflow = workflow or Workflow.from_config(config)

    app = Flask(__name__)
    app.config["WORKFLOW"] = workflow

    # ── Auth ─────────────────────────────────────────────────────────────────

    def require_caller(f):
        """Decorator: resolve the caller from X-User-Id."""
        @wraps(f)
        def decorated(*args, **kwargs):
            caller = request.headers.get("X-User-Id", "").strip()
            if not caller:
                return jsonify({"error": "X-User-Id header is required"}), 401
            g.caller = caller
            return f(*args, **kwargs)
        return decorated

    def require_api_key(f):
        """Decorator: when a secret is configured, reject writes without a valid X-API-Key."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if config.api_secret:
                provided = request.headers.get("X-API-Key", "").strip()
                if not hmac.compare_digest(provided, config.api_secret):
                    code = 401 if not provided else 403
                    return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    @app.errorhandler(WorkflowError)
    def handle_workflow_error(e: WorkflowError):
        return jsonify(e.to_dict()), STATUS_BY_KIND.get(e.kind, 500)

    # ── Projects ─────────────────────────────────────────────────────────────

    @app.route("/api/projects", methods=["POST"])
    @require_api_key
    @require_caller
    def api_create_project():
        data = _body()
        project_id = workflow.create_project(g.caller, data.get("title"), data.get("description", ""))
        return jsonify({"id": project_id}), 201

    @app.route("/api/projects/<int:project_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_project(project_id):
        workflow.delete_project(project_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/api/projects/<int:project_id>/members", methods=["GET"])
    @require_caller
    def api_list_members(project_id):
        return jsonify({"members": workflow.list_members(project_id, g.caller)})

    @app.route("/api/projects/<int:project_id>/members", methods=["POST"])
    @require_api_key
    @require_caller
    def api_add_member(project_id):
        data = _body()
        workflow.add_member(project_id, g.caller, data.get("user_id"), data.get("role") or "member")
        return jsonify({"ok": True}), 201

    @app.route("/api/projects/<int:project_id>/members/<user_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_remove_member(project_id, user_id):
        workflow.remove_member(project_id, g.caller, user_id)
        return jsonify({"ok": True})

    @app.route("/api/projects/<int:project_id>/milestones", methods=["POST"])
    @require_api_key
    @require_caller
    def api_add_milestone(project_id):
        data = _body()
        milestone_id = workflow.add_milestone(
            project_id, g.caller, data.get("title"), data.get("description", ""), data.get("due_date"),
        )
        return jsonify({"id": milestone_id}), 201

    # ── Tasks ────────────────────────────────────────────────────────────────

    @app.route("/api/projects/<int:project_id>/tasks", methods=["GET"])
    @require_caller
    def api_project_tasks(project_id):
        filters = {
            key: request.args[name]
            for name, key in TASK_FILTERS.items()
            if request.args.get(name)
        }
        tasks = workflow.get_project_tasks(project_id, g.caller, filters)
        return jsonify({"tasks": tasks, "count": len(tasks)})

    @app.route("/api/projects/<int:project_id>/tasks", methods=["POST"])
    @require_api_key
    @require_caller
    def api_create_task(project_id):
        task_id = workflow.create_task(project_id, g.caller, _body())
        return jsonify({"id": task_id}), 201

    @app.route("/api/projects/<int:project_id>/tasks/status-counts", methods=["GET"])
    @require_caller
    def api_status_counts(project_id):
        return jsonify(workflow.get_task_status_counts(project_id, g.caller))

    @app.route("/api/tasks/<int:task_id>", methods=["GET"])
    @require_caller
    def api_task_details(task_id):
        return jsonify({"task": workflow.get_task_details(task_id, g.caller)})

    @app.route("/api/tasks/<int:task_id>", methods=["PUT"])
    @require_api_key
    @require_caller
    def api_update_task(task_id):
        return jsonify({"task": workflow.update_task(task_id, g.caller, _body())})

    @app.route("/api/tasks/<int:task_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_task(task_id):
        workflow.delete_task(task_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/api/tasks/<int:task_id>/move", methods=["POST"])
    @require_api_key
    @require_caller
    def api_move_task(task_id):
        return jsonify(workflow.move_task(task_id, g.caller, _body()))

    # ── Dependencies ─────────────────────────────────────────────────────────

    @app.route("/api/tasks/<int:task_id>/dependencies", methods=["GET"])
    @require_caller
    def api_dependencies(task_id):
        return jsonify(workflow.get_dependencies(task_id, g.caller))

    @app.route("/api/tasks/<int:task_id>/dependencies", methods=["POST"])
    @require_api_key
    @require_caller
    def api_add_dependency(task_id):
        dependency_id = workflow.add_dependency(task_id, g.caller, _body())
        return jsonify({"id": dependency_id}), 201

    @app.route("/api/dependencies/<int:dependency_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_remove_dependency(dependency_id):
        workflow.remove_dependency(dependency_id, g.caller)
        return jsonify({"ok": True})

    # ── Subtasks, comments, time entries ─────────────────────────────────────

    @app.route("/api/tasks/<int:task_id>/subtasks", methods=["POST"])
    @require_api_key
    @require_caller
    def api_add_subtask(task_id):
        data = _body()
        subtask_id = workflow.add_subtask(task_id, g.caller, data.get("title"), data.get("description", ""))
        return jsonify({"id": subtask_id}), 201

    @app.route("/api/subtasks/<int:subtask_id>", methods=["PUT"])
    @require_api_key
    @require_caller
    def api_update_subtask(subtask_id):
        workflow.update_subtask(subtask_id, g.caller, _body())
        return jsonify({"ok": True})

    @app.route("/api/subtasks/<int:subtask_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_subtask(subtask_id):
        workflow.delete_subtask(subtask_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/api/tasks/<int:task_id>/comments", methods=["POST"])
    @require_api_key
    @require_caller
    def api_add_comment(task_id):
        comment = workflow.add_comment(task_id, g.caller, _body().get("comment"))
        return jsonify({"comment": comment}), 201

    @app.route("/api/comments/<int:comment_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_comment(comment_id):
        workflow.delete_comment(comment_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/api/tasks/<int:task_id>/time-entries", methods=["POST"])
    @require_api_key
    @require_caller
    def api_start_time(task_id):
        data = _body()
        entry = workflow.start_time_tracking(
            task_id, g.caller, data.get("description", ""), bool(data.get("is_billable", True)),
        )
        return jsonify({"time_entry": entry}), 201

    @app.route("/api/time-entries/<int:entry_id>/stop", methods=["POST"])
    @require_api_key
    @require_caller
    def api_stop_time(entry_id):
        return jsonify({"time_entry": workflow.stop_time_tracking(entry_id, g.caller)})

    # ── Boards and columns ───────────────────────────────────────────────────

    @app.route("/api/projects/<int:project_id>/boards", methods=["GET"])
    @require_caller
    def api_list_boards(project_id):
        return jsonify({"boards": workflow.list_boards(project_id, g.caller)})

    @app.route("/api/projects/<int:project_id>/boards", methods=["POST"])
    @require_api_key
    @require_caller
    def api_create_board(project_id):
        board_id = workflow.create_board(project_id, g.caller, _body())
        return jsonify({"id": board_id}), 201

    @app.route("/api/boards/<int:board_id>", methods=["GET"])
    @require_caller
    def api_get_board(board_id):
        return jsonify({"board": workflow.get_board(board_id, g.caller)})

    @app.route("/api/boards/<int:board_id>", methods=["PUT"])
    @require_api_key
    @require_caller
    def api_update_board(board_id):
        workflow.update_board(board_id, g.caller, _body())
        return jsonify({"ok": True})

    @app.route("/api/boards/<int:board_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_board(board_id):
        workflow.delete_board(board_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/api/boards/<int:board_id>/columns", methods=["POST"])
    @require_api_key
    @require_caller
    def api_create_column(board_id):
        column_id = workflow.create_column(board_id, g.caller, _body())
        return jsonify({"id": column_id}), 201

    @app.route("/api/boards/<int:board_id>/columns/reorder", methods=["PUT"])
    @require_api_key
    @require_caller
    def api_reorder_columns(board_id):
        body = _body()
        column_ids = body["column_ids"] if "column_ids" in body else body.get("column_order")
        workflow.reorder_columns(board_id, g.caller, column_ids)
        return jsonify({"ok": True})

    @app.route("/api/columns/<int:column_id>", methods=["PUT"])
    @require_api_key
    @require_caller
    def api_update_column(column_id):
        workflow.update_column(column_id, g.caller, _body())
        return jsonify({"ok": True})

    @app.route("/api/columns/<int:column_id>", methods=["DELETE"])
    @require_api_key
    @require_caller
    def api_delete_column(column_id):
        workflow.delete_column(column_id, g.caller)
        return jsonify({"ok": True})

    @app.route("/health")
    def health():
        return jsonify({"status": "ok", "db": workflow.gateway.db_path})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Taskflow Kanban Server")
    parser.add_argument("--config", help="Path to config.yaml (overrides TASKFLOW_CONFIG env var)")
    parser.add_argument("--host", help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int)
    parser.add_argument("--db", help="Path to workflow.db (overrides TASKFLOW_DB env var)")
    args = parser.parse_args()

    cfg = WorkflowConfig.load(args.config)
    if args.db:
        cfg.db_path = args.db
        cfg.resolve_paths()
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port

    setup_logging(cfg.log_level)
    logger.info(f"Taskflow server on http://{cfg.host}:{cfg.port} (db: {cfg.db_path})")
    create_app(cfg).run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
