#!/usr/bin/env python3
"""
Focusboard Server
-----------------
JSON API for the focus task board, backed by a single SQLite database.

Usage:
    python focusboard_server.py
    python focusboard_server.py --db /tmp/board.db --port 3000
    focusboard-server --config config.yaml

API (under --api-prefix, default /api):
    GET    /tasks                         → ordered task list
    GET    /tasks/board                   → tasks grouped by tier
    GET    /tasks/<id>                    → one task
    POST   /tasks                         → create { title, priority?, meta?, tier?, ... }
    PUT    /tasks/<id>                    → partial update
    DELETE /tasks/<id>, DELETE /tasks     → delete one / all
    PATCH  /tasks/<id>/toggle             → flip completion
    PATCH  /tasks/<id>/assign-priority    → { priority }, swaps with the holder
    PATCH  /tasks/bulk-reorder            → { tasks: [{ id, display_order }] }
    PATCH  /tasks/<id>/focus-duration     → { focus_duration }
    PATCH  /tasks/<id>/tier               → { tier, position? }
    GET    /focus/active                  → active session or null
    GET    /focus/<task_id>/history       → sessions of a task
    POST   /focus/<task_id>/start|pause|resume|stop
    GET    /settings, PUT /settings
    GET    /health                        → also served at the root

Every response is { success, data?, error?, message?, count? }.
"""

import argparse
import logging
import sys
from typing import Any, Dict, Optional

from flask import Blueprint, Flask, current_app, jsonify, request
from werkzeug.exceptions import HTTPException

from focusboard.config import Config
from focusboard.errors import FocusboardError, StorageError, ValidationError
from focusboard.expiry import ExpiryScheduler
from focusboard.focus import FocusEngine
from focusboard.priority import PriorityEngine, board_view
from focusboard.settings import SettingsStore
from focusboard.store import TaskStore

logger = logging.getLogger("focusboard")

api = Blueprint("api", __name__)

UPDATABLE_FIELDS = ("title", "priority", "completed", "meta", "display_order", "focus_duration")
FOCUS_ACTIONS = ("start", "pause", "resume", "stop")


class Services:
    """Store and engines shared by all requests of one app."""

    def __init__(self, cfg: Config):
        self.cfg = cfg
        self.store = TaskStore(cfg.db_path)
        self.priority = PriorityEngine(self.store)
        self.focus = FocusEngine(self.store)
        self.settings = SettingsStore(self.store)
        self.scheduler = ExpiryScheduler(
            self.store,
            self.focus,
            retention=cfg.retention,
            sweep_interval=cfg.sweep_interval_seconds,
            focus_interval=cfg.focus_check_seconds,
        )


def _svc() -> Services:
    return current_app.extensions["focusboard"]


# ── Response helpers ─────────────────────────────────────────────────────────

def ok(data: Any = None, message: Optional[str] = None, count: Optional[int] = None, status: int = 200):
    body: Dict[str, Any] = {"success": True, "data": data}
    if message:
        body["message"] = message
    if count is not None:
        body["count"] = count
    return jsonify(body), status


def fail(error: str, status: int, message: Optional[str] = None):
    body: Dict[str, Any] = {"success": False, "error": error}
    if message:
        body["message"] = message
    return jsonify(body), status


def _body() -> Dict[str, Any]:
    data = request.get_json(force=True, silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ── Tasks ────────────────────────────────────────────────────────────────────

@api.route("/tasks", methods=["GET"])
def list_tasks():
    order = request.args.get("order", "priority")
    tasks = _svc().store.list(order)
    return ok([t.to_dict() for t in tasks], count=len(tasks))


@api.route("/tasks/board", methods=["GET"])
def task_board():
    view = board_view(_svc().store.list())
    return ok({tier: [t.to_dict() for t in tasks] for tier, tasks in view.items()})


@api.route("/tasks/<task_id>", methods=["GET"])
def get_task(task_id):
    return ok(_svc().store.get(task_id).to_dict())


@api.route("/tasks", methods=["POST"])
def create_task():
    data = _body()
    svc = _svc()
    limit = svc.settings.get()["numberOfTasks"] if svc.cfg.enforce_task_limit else None
    task = svc.store.create(
        data.get("title"),
        priority=data.get("priority"),
        completed=data.get("completed", False),
        meta=data.get("meta"),
        focus_duration=data.get("focus_duration"),
        tier=data.get("tier"),
        limit=limit,
    )
    return ok(task.to_dict(), message="Task created successfully", status=201)


@api.route("/tasks/<task_id>", methods=["PUT"])
def update_task(task_id):
    data = _body()
    changes = {k: data[k] for k in UPDATABLE_FIELDS if k in data}
    task = _svc().store.update(task_id, **changes)
    return ok(task.to_dict(), message="Task updated successfully")


@api.route("/tasks/<task_id>", methods=["DELETE"])
def delete_task(task_id):
    task = _svc().store.delete(task_id)
    return ok(task.to_dict(), message="Task deleted successfully")


@api.route("/tasks", methods=["DELETE"])
def delete_all_tasks():
    tasks = _svc().store.delete_all()
    return ok([t.to_dict() for t in tasks],
              message=f"Deleted {len(tasks)} task(s) successfully", count=len(tasks))


@api.route("/tasks/<task_id>/toggle", methods=["PATCH"])
def toggle_task(task_id):
    task = _svc().store.toggle(task_id)
    state = "completed" if task.completed else "marked as incomplete"
    return ok(task.to_dict(), message=f"Task {state}")


@api.route("/tasks/<task_id>/assign-priority", methods=["PATCH"])
def assign_priority(task_id):
    data = _body()
    if "priority" not in data:
        raise ValidationError("priority is required")
    task, swapped = _svc().priority.assign_priority(task_id, data["priority"])
    body = task.to_dict()
    body["swapped"] = swapped.to_dict() if swapped else None
    return ok(body, message="Priority assigned")


@api.route("/tasks/bulk-reorder", methods=["PATCH"])
def bulk_reorder():
    count = _svc().store.bulk_reorder(_body().get("tasks"))
    return ok(message="Task order updated successfully", count=count)


@api.route("/tasks/<task_id>/focus-duration", methods=["PATCH"])
def set_focus_duration(task_id):
    data = _body()
    if "focus_duration" not in data:
        raise ValidationError("focus_duration is required")
    task = _svc().store.set_focus_duration(task_id, data["focus_duration"])
    return ok(task.to_dict(), message="Focus duration updated")


@api.route("/tasks/<task_id>/tier", methods=["PATCH"])
def move_to_tier(task_id):
    data = _body()
    row = _svc().priority.move_task(task_id, data.get("tier"), data.get("position"))
    return ok([t.to_dict() for t in row], count=len(row))


# ── Focus ────────────────────────────────────────────────────────────────────

@api.route("/focus/active", methods=["GET"])
def active_focus():
    svc = _svc()
    session = svc.focus.active()
    if session is None:
        return ok(None, message="No active focus session")
    return ok(session.to_dict(now=svc.store.now()))


@api.route("/focus/<task_id>/history", methods=["GET"])
def focus_history(task_id):
    sessions = _svc().focus.history(task_id)
    return ok([s.to_dict() for s in sessions], count=len(sessions))


@api.route("/focus/<task_id>/<action>", methods=["POST"])
def focus_action(task_id, action):
    if action not in FOCUS_ACTIONS:
        return fail("Route not found", 404)
    svc = _svc()
    session = getattr(svc.focus, action)(task_id)
    past = {"start": "started", "pause": "paused", "resume": "resumed", "stop": "stopped"}[action]
    return ok(session.to_dict(now=svc.store.now()),
              message=f"Focus session {past}",
              status=201 if action == "start" else 200)


# ── Settings ─────────────────────────────────────────────────────────────────

@api.route("/settings", methods=["GET"])
def get_settings():
    return ok(_svc().settings.get())


@api.route("/settings", methods=["PUT"])
def put_settings():
    data = _body()
    settings = _svc().settings.update(
        data.get("numberOfTasks"),
        data.get("showRemainingTodoCount"),
        data.get("rowColors"),
    )
    return ok(settings, message="Settings updated successfully")


# ── Health ───────────────────────────────────────────────────────────────────

@api.route("/health", methods=["GET"])
def health():
    if _svc().store.ping():
        return jsonify({"success": True, "status": "ok",
                        "message": "Server is running", "database": "connected"})
    return jsonify({"success": False, "status": "error",
                    "message": "Server is running but database is unavailable",
                    "database": "disconnected"}), 503


# ── App ──────────────────────────────────────────────────────────────────────

def _register_error_handlers(app: Flask):

    @app.errorhandler(FocusboardError)
    def board_error(e):
        if isinstance(e, StorageError):
            app.logger.error("Storage failure on %s %s: %s", request.method, request.path, e.message)
            return fail("Internal server error", e.status_code, e.public_message)
        return fail(e.message, e.status_code)

    @app.errorhandler(HTTPException)
    def http_error(e):
        error = "Route not found" if e.code == 404 else e.name
        return fail(error, e.code or 500)

    @app.errorhandler(Exception)
    def unexpected_error(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return fail("Internal server error", 500, "An unexpected error occurred")


def create_app(cfg: Optional[Config] = None) -> Flask:
    """Build the Flask app. Background sweeps are started by main(), not here."""
    cfg = cfg or Config.load()
    app = Flask(__name__)
    app.extensions["focusboard"] = Services(cfg)

    prefix = cfg.api_prefix.strip("/")
    app.register_blueprint(api, url_prefix=f"/{prefix}" if prefix else None)
    if prefix:
        app.add_url_rule("/health", "root_health", health)

    _register_error_handlers(app)
    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main():
    parser = argparse.ArgumentParser(description="Focusboard Server")
    parser.add_argument("--host", default=None,
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--db", help="Path to the SQLite database (overrides FOCUSBOARD_DB)")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--no-scheduler", action="store_true",
                        help="Do not run the expiry and focus sweeps")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [focusboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    cfg = Config.load(args.config)
    if args.db:
        cfg.db_path = args.db
    if args.host:
        cfg.host = args.host
    if args.port:
        cfg.port = args.port
    if args.no_scheduler:
        cfg.run_scheduler = False

    app = create_app(cfg)
    services = app.extensions["focusboard"]
    if cfg.run_scheduler:
        # Runs one sweep right away to catch tasks completed while we were down
        services.scheduler.start()

    logger.info("Focusboard on http://%s:%s%s (db %s)", cfg.host, cfg.port, cfg.api_prefix, cfg.db_path)
    try:
        app.run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
    finally:
        services.scheduler.stop()


if __name__ == "__main__":
    main()
