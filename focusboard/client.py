# Focusboard: HTTP client and client-side helpers
#
# BoardClient     - thin wrapper over the REST API
# DeletionTimers  - best-effort per-task deletion at completed_at + retention
# FocusCountdown  - one-shot latch for focus-duration completion
# LocalBoard      - optimistic local task list with rollback on failure
#
# The server sweep is authoritative for expiry; the timers here only make the
# board tidy sooner while a client is open.

import copy
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import requests

from .schema import parse_iso, utc_now

logger = logging.getLogger(__name__)


class ApiError(Exception):
    """Non-2xx response (or transport failure) from the board API."""

    def __init__(self, status: int, error: str, message: str = ""):
        super().__init__(f"{status}: {error}")
        self.status = status
        self.error = error
        self.message = message


class BoardClient:
    """HTTP client for the Focusboard API."""

    def __init__(self, base_url: str = "http://localhost:3000/api", timeout: float = 5,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.http = session or requests.Session()

    def _call(self, method: str, path: str, json: Any = None) -> Dict[str, Any]:
        try:
            r = self.http.request(method, f"{self.base_url}{path}", json=json, timeout=self.timeout)
        except requests.RequestException as e:
            raise ApiError(0, "Server unreachable", str(e)) from e
        try:
            body = r.json()
        except ValueError:
            body = {}
        if not r.ok or not body.get("success", False):
            raise ApiError(r.status_code, body.get("error", r.reason or "Request failed"),
                           body.get("message", ""))
        return body

    # Tasks
    def list_tasks(self, order: str = "priority") -> List[Dict[str, Any]]:
        return self._call("GET", f"/tasks?order={order}")["data"]

    def get_task(self, task_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/tasks/{task_id}")["data"]

    def create_task(self, title: str, **fields) -> Dict[str, Any]:
        return self._call("POST", "/tasks", {"title": title, **fields})["data"]

    def update_task(self, task_id: str, **fields) -> Dict[str, Any]:
        return self._call("PUT", f"/tasks/{task_id}", fields)["data"]

    def toggle_task(self, task_id: str) -> Dict[str, Any]:
        return self._call("PATCH", f"/tasks/{task_id}/toggle")["data"]

    def delete_task(self, task_id: str) -> Dict[str, Any]:
        return self._call("DELETE", f"/tasks/{task_id}")["data"]

    def delete_all_tasks(self) -> int:
        return self._call("DELETE", "/tasks").get("count", 0)

    def assign_priority(self, task_id: str, priority: int) -> Dict[str, Any]:
        return self._call("PATCH", f"/tasks/{task_id}/assign-priority", {"priority": priority})["data"]

    def reorder(self, orders: List[Dict[str, Any]]) -> int:
        return self._call("PATCH", "/tasks/bulk-reorder", {"tasks": orders}).get("count", 0)

    def set_focus_duration(self, task_id: str, minutes: Optional[int]) -> Dict[str, Any]:
        return self._call("PATCH", f"/tasks/{task_id}/focus-duration",
                          {"focus_duration": minutes})["data"]

    # Focus
    def active_focus(self) -> Optional[Dict[str, Any]]:
        return self._call("GET", "/focus/active").get("data")

    def start_focus(self, task_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/focus/{task_id}/start")["data"]

    def pause_focus(self, task_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/focus/{task_id}/pause")["data"]

    def resume_focus(self, task_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/focus/{task_id}/resume")["data"]

    def stop_focus(self, task_id: str) -> Dict[str, Any]:
        return self._call("POST", f"/focus/{task_id}/stop")["data"]

    def health(self) -> bool:
        """Check if the server and its database are reachable."""
        try:
            self._call("GET", "/health")
            return True
        except ApiError:
            return False


class DeletionTimers:
    """
    Per-task delayed deletion, fired at completed_at + retention.

    A task is scheduled at most once; uncompleting or deleting it cancels the
    pending timer.
    """

    def __init__(self, delete: Callable[[str], Any], retention: timedelta = timedelta(hours=4),
                 now: Callable[[], datetime] = utc_now):
        self.delete = delete
        self.retention = retention
        self.now = now
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()

    def delay_for(self, completed_at: str) -> float:
        due = parse_iso(completed_at) + self.retention
        return max(0.0, (due - self.now()).total_seconds())

    def schedule(self, task: Dict[str, Any]) -> bool:
        """Arm a timer for a completed task. Returns False if nothing was scheduled."""
        task_id = task.get("id")
        if not task_id or not task.get("completed") or not task.get("completed_at"):
            return False
        with self._lock:
            if task_id in self._timers:
                return False
            timer = threading.Timer(self.delay_for(task["completed_at"]), self._fire, args=(task_id,))
            timer.daemon = True
            self._timers[task_id] = timer
        timer.start()
        return True

    def cancel(self, task_id: str) -> bool:
        with self._lock:
            timer = self._timers.pop(task_id, None)
        if timer is None:
            return False
        timer.cancel()
        return True

    def cancel_all(self):
        with self._lock:
            timers, self._timers = list(self._timers.values()), {}
        for timer in timers:
            timer.cancel()

    def sync(self, tasks: List[Dict[str, Any]]):
        """Schedule completed tasks; drop timers for tasks no longer completed or present."""
        completed = {t["id"] for t in tasks if t.get("completed")}
        for task_id in self.pending():
            if task_id not in completed:
                self.cancel(task_id)
        for task in tasks:
            self.schedule(task)

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._timers)

    def _fire(self, task_id: str):
        with self._lock:
            if self._timers.pop(task_id, None) is None:
                return
        try:
            self.delete(task_id)
            logger.info("Auto-deleted completed task %s", task_id)
        except ApiError as e:
            if e.status == 404:
                logger.debug("Task %s already gone", task_id)
            else:
                logger.warning("Auto-delete of %s failed: %s", task_id, e)


class FocusCountdown:
    """
    Fires `on_complete` exactly once when observed elapsed time reaches the target.

    Elapsed time may be observed many times per second around the threshold;
    only the first observation at or past it triggers.
    """

    def __init__(self, target_seconds: int, on_complete: Callable[[], Any]):
        self.target_seconds = target_seconds
        self.on_complete = on_complete
        self._fired = False
        self._lock = threading.Lock()

    @property
    def fired(self) -> bool:
        return self._fired

    def observe(self, elapsed_seconds: int) -> bool:
        """Returns True only for the call that triggered completion."""
        with self._lock:
            if self._fired or elapsed_seconds < self.target_seconds:
                return False
            self._fired = True
        self.on_complete()
        return True

    @classmethod
    def for_session(cls, client: BoardClient, session: Dict[str, Any]) -> Optional["FocusCountdown"]:
        """Countdown that stops the session and completes its task, if it has a duration."""
        minutes = session.get("focus_duration")
        if not minutes:
            return None
        task_id = session["task_id"]

        def finish():
            try:
                client.stop_focus(task_id)
            except ApiError as e:
                # The server's focus check may have stopped it first
                if e.status != 404:
                    raise
                logger.debug("Focus session on %s already stopped", task_id)
            task = client.get_task(task_id)
            if not task.get("completed"):
                client.toggle_task(task_id)

        return cls(minutes * 60, finish)


class LocalBoard:
    """
    Client-side task list with optimistic updates.

    Each mutation is applied locally first, then reconciled with the server's
    answer; on failure the last known-good snapshot is restored and the error
    re-raised.
    """

    def __init__(self, client: BoardClient, timers: Optional[DeletionTimers] = None):
        self.client = client
        self.timers = timers
        self.tasks: List[Dict[str, Any]] = []

    def refresh(self) -> List[Dict[str, Any]]:
        self.tasks = self.client.list_tasks()
        if self.timers:
            self.timers.sync(self.tasks)
        return self.tasks

    def _find(self, task_id: str) -> Optional[Dict[str, Any]]:
        return next((t for t in self.tasks if t["id"] == task_id), None)

    def _optimistic(self, apply: Callable[[], None], commit: Callable[[], Any]) -> Any:
        snapshot = copy.deepcopy(self.tasks)
        apply()
        try:
            return commit()
        except Exception:
            self.tasks = snapshot
            raise

    def toggle(self, task_id: str) -> Dict[str, Any]:
        def apply():
            task = self._find(task_id)
            if task is not None:
                task["completed"] = not task.get("completed")

        def commit():
            updated = self.client.toggle_task(task_id)
            self.tasks = [updated if t["id"] == task_id else t for t in self.tasks]
            if self.timers:
                if updated.get("completed"):
                    self.timers.schedule(updated)
                else:
                    self.timers.cancel(task_id)
            return updated

        return self._optimistic(apply, commit)

    def remove(self, task_id: str) -> Dict[str, Any]:
        def apply():
            self.tasks = [t for t in self.tasks if t["id"] != task_id]

        def commit():
            deleted = self.client.delete_task(task_id)
            if self.timers:
                self.timers.cancel(task_id)
            return deleted

        return self._optimistic(apply, commit)

    def reorder(self, ordered_ids: List[str]) -> int:
        """Persist a new manual order given as a list of task IDs."""
        orders = [{"id": task_id, "display_order": i} for i, task_id in enumerate(ordered_ids, start=1)]

        def apply():
            rank = {o["id"]: o["display_order"] for o in orders}
            for task in self.tasks:
                if task["id"] in rank:
                    task["display_order"] = rank[task["id"]]
            self.tasks.sort(key=lambda t: t.get("display_order", 0))

        return self._optimistic(apply, lambda: self.client.reorder(orders))
