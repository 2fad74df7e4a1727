"""
Task storage backend (SQLite).

Provides CRUD operations, completion toggling, and display-order maintenance.
Write paths run inside `BEGIN IMMEDIATE`, which serializes writers on the
database file; reads use their own short-lived connection.
"""
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import ConflictError, FocusboardError, NotFoundError, StorageError, ValidationError
from .priority import holder_of, lowest_free_priority, parse_priority, place_in_tier, swap_priority
from .schema import Clock, Task, make_task_id, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DB = Path.home() / ".local" / "share" / "focusboard" / "focusboard.db"

_UNSET = object()


def _connect(db_path: str) -> sqlite3.Connection:
    """Open an autocommit connection with FK enforcement and WAL mode."""
    conn = sqlite3.connect(db_path, timeout=30.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    return conn


# ── Input checks ─────────────────────────────────────────────────────────────

def _clean_title(title: Any) -> str:
    if not isinstance(title, str) or not title.strip():
        raise ValidationError("Task title is required")
    return title.strip()


def _clean_meta(meta: Any) -> Dict[str, Any]:
    if meta is None:
        return {}
    if not isinstance(meta, dict):
        raise ValidationError("meta must be an object")
    return meta


def _clean_focus_duration(minutes: Any) -> Optional[int]:
    if minutes is None:
        return None
    if isinstance(minutes, bool) or not isinstance(minutes, int) or minutes < 1:
        raise ValidationError("focus_duration must be a positive number of minutes")
    return minutes


def _clean_display_order(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError("display_order must be an integer")
    return value


class TaskStore:
    """SQLite-backed store for tasks. Also hosts the focus_sessions table."""

    def __init__(self, db_path: Optional[str] = None, now: Clock = utc_now):
        """Initialize store and create tables if needed."""
        self.db_path = str(db_path or DEFAULT_DB)
        self.now = now
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ── Connections ──────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Write transaction. Commits on success, rolls back on any error.

        sqlite3 errors surface as StorageError (ConflictError for constraint
        violations); board errors propagate unchanged.
        """
        conn = _connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        except FocusboardError:
            raise
        except sqlite3.IntegrityError as e:
            logger.warning("Constraint violation in %s: %s", self.db_path, e)
            raise ConflictError("Operation conflicts with another task") from e
        except sqlite3.Error as e:
            logger.exception("Database error in %s", self.db_path)
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    @contextmanager
    def reading(self) -> Iterator[sqlite3.Connection]:
        """Read-only connection; sqlite3 errors surface as StorageError."""
        try:
            conn = _connect(self.db_path)
        except sqlite3.Error as e:
            logger.exception("Cannot open %s", self.db_path)
            raise StorageError(str(e)) from e
        try:
            yield conn
        except sqlite3.Error as e:
            logger.exception("Database error in %s", self.db_path)
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    def _init_schema(self):
        """Create tables if they don't exist."""
        with self.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    priority INTEGER,
                    completed INTEGER NOT NULL DEFAULT 0,
                    completed_at TEXT,
                    display_order INTEGER NOT NULL DEFAULT 0,
                    meta TEXT NOT NULL DEFAULT '{}',  -- JSON object
                    focus_duration INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._migrate_columns(conn)
            # One incomplete task per slot; completed tasks may share.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_open_priority
                ON tasks(priority) WHERE completed = 0
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_completed_at ON tasks(completed, completed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_display_order ON tasks(display_order)")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS focus_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    paused_at TEXT,
                    stopped_at TEXT,
                    elapsed_seconds INTEGER NOT NULL DEFAULT 0,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
                )
            """)
            # At most one active session system-wide.
            conn.execute("""
                CREATE UNIQUE INDEX IF NOT EXISTS idx_focus_single_active
                ON focus_sessions(is_active) WHERE is_active = 1
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_focus_task ON focus_sessions(task_id)")

    def _migrate_columns(self, conn: sqlite3.Connection):
        """Add columns introduced after the first schema to older databases."""
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(tasks)")}
        new_columns = [
            ("priority", "INTEGER"),
            ("completed_at", "TEXT"),
            ("display_order", "INTEGER NOT NULL DEFAULT 0"),
            ("focus_duration", "INTEGER"),
        ]
        for col_name, col_type in new_columns:
            if col_name not in existing:
                conn.execute(f"ALTER TABLE tasks ADD COLUMN {col_name} {col_type}")
                logger.info("TaskStore migration: added column %s", col_name)

    # ── Shared row helpers (also used by the engines) ────────────────────────

    @staticmethod
    def load_task(conn: sqlite3.Connection, task_id: str) -> Task:
        row = conn.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
        if not row:
            raise NotFoundError("Task not found")
        return Task.from_row(row)

    @staticmethod
    def fetch_tasks(conn: sqlite3.Connection, order: str = "priority") -> List[Task]:
        if order == "display":
            sql = "SELECT * FROM tasks ORDER BY display_order ASC, timestamp ASC"
        else:
            sql = ("SELECT * FROM tasks ORDER BY priority IS NULL, priority ASC, "
                   "display_order ASC, timestamp ASC")
        return [Task.from_row(r) for r in conn.execute(sql).fetchall()]

    @staticmethod
    def _count_incomplete(conn: sqlite3.Connection) -> int:
        return conn.execute("SELECT COUNT(*) FROM tasks WHERE completed = 0").fetchone()[0]

    def _apply_completion(self, conn: sqlite3.Connection, task: Task, completed: bool, stamp: str):
        """Set completion state; a revived task whose slot was reused takes the first gap."""
        if completed:
            conn.execute(
                "UPDATE tasks SET completed = 1, completed_at = ?, updated_at = ? WHERE id = ?",
                (stamp, stamp, task.id),
            )
            return

        priority = task.priority
        if priority is None or holder_of(conn, priority, exclude_id=task.id):
            priority = lowest_free_priority(conn)
            logger.info("Task %s revived onto free slot %s", task.id, priority)
        conn.execute(
            "UPDATE tasks SET completed = 0, completed_at = NULL, priority = ?, updated_at = ? "
            "WHERE id = ?",
            (priority, stamp, task.id),
        )

    # ── Public API ───────────────────────────────────────────────────────────

    def create(
        self,
        title: Any,
        priority: Any = None,
        completed: bool = False,
        meta: Any = None,
        focus_duration: Any = None,
        tier: Any = None,
        limit: Optional[int] = None,
    ) -> Task:
        """
        Create a task.

        Without an explicit priority the task takes the lowest free slot.
        `display_order` is appended as max + 1 inside the same transaction.
        `tier` ("auto" or a tier name) places the task on the tier board.
        `limit` caps the number of incomplete tasks.
        """
        title = _clean_title(title)
        meta = _clean_meta(meta)
        focus_duration = _clean_focus_duration(focus_duration)
        if priority is not None:
            priority = parse_priority(priority)
        completed = bool(completed)

        now = self.now()
        stamp = to_iso(now)
        task_id = make_task_id(now)

        with self.transaction() as conn:
            if limit is not None and not completed and self._count_incomplete(conn) >= limit:
                raise ConflictError(
                    f"Task limit of {limit} reached. Complete or delete some tasks first."
                )

            if priority is None:
                priority = lowest_free_priority(conn)
            elif not completed and holder_of(conn, priority):
                raise ConflictError(f"Priority {priority} is already taken")

            if tier is not None:
                meta = place_in_tier(self.fetch_tasks(conn), meta, tier)

            next_order = conn.execute(
                "SELECT COALESCE(MAX(display_order), 0) + 1 FROM tasks"
            ).fetchone()[0]

            conn.execute(
                """
                INSERT INTO tasks (id, title, timestamp, priority, completed, completed_at,
                                   display_order, meta, focus_duration, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    title,
                    int(now.timestamp() * 1000),
                    priority,
                    1 if completed else 0,
                    stamp if completed else None,
                    next_order,
                    json.dumps(meta),
                    focus_duration,
                    stamp,
                    stamp,
                ),
            )
            task = self.load_task(conn, task_id)

        logger.info("Task created id=%s priority=%s order=%s", task.id, task.priority, task.display_order)
        return task

    def get(self, task_id: str) -> Task:
        """Retrieve a task by ID."""
        with self.reading() as conn:
            return self.load_task(conn, task_id)

    def list(self, order: str = "priority") -> List[Task]:
        """All tasks, by priority then display order (or display order only)."""
        if order not in ("priority", "display"):
            raise ValidationError("order must be 'priority' or 'display'")
        with self.reading() as conn:
            return self.fetch_tasks(conn, order)

    def update(
        self,
        task_id: str,
        *,
        title: Any = _UNSET,
        priority: Any = _UNSET,
        completed: Any = _UNSET,
        meta: Any = _UNSET,
        display_order: Any = _UNSET,
        focus_duration: Any = _UNSET,
    ) -> Task:
        """Patch the given fields. Priority changes swap with the current holder."""
        fields: List[str] = []
        params: List[Any] = []

        if title is not _UNSET:
            fields.append("title = ?")
            params.append(_clean_title(title))
        if meta is not _UNSET:
            fields.append("meta = ?")
            params.append(json.dumps(_clean_meta(meta)))
        if display_order is not _UNSET:
            fields.append("display_order = ?")
            params.append(_clean_display_order(display_order))
        if focus_duration is not _UNSET:
            fields.append("focus_duration = ?")
            params.append(_clean_focus_duration(focus_duration))
        if priority is not _UNSET:
            priority = parse_priority(priority)
        if completed is not _UNSET and not isinstance(completed, bool):
            raise ValidationError("completed must be a boolean")

        stamp = to_iso(self.now())
        with self.transaction() as conn:
            task = self.load_task(conn, task_id)

            if completed is not _UNSET and completed != task.completed:
                self._apply_completion(conn, task, completed, stamp)
                task = self.load_task(conn, task_id)

            if priority is not _UNSET:
                swap_priority(conn, task, priority, stamp)

            fields.append("updated_at = ?")
            params.extend([stamp, task_id])
            conn.execute(f"UPDATE tasks SET {', '.join(fields)} WHERE id = ?", params)
            return self.load_task(conn, task_id)

    def toggle(self, task_id: str) -> Task:
        """Flip completion; completed_at follows, priority is kept."""
        stamp = to_iso(self.now())
        with self.transaction() as conn:
            task = self.load_task(conn, task_id)
            self._apply_completion(conn, task, not task.completed, stamp)
            task = self.load_task(conn, task_id)
        logger.info("Task %s %s", task_id, "completed" if task.completed else "reopened")
        return task

    def set_focus_duration(self, task_id: str, minutes: Any) -> Task:
        return self.update(task_id, focus_duration=minutes)

    def bulk_reorder(self, entries: Any) -> int:
        """
        Apply [{id, display_order}, ...] as one unit.

        Any bad entry (missing id/order, unknown id) aborts the whole batch.
        """
        if not isinstance(entries, list) or not entries:
            raise ValidationError("Tasks array is required")

        stamp = to_iso(self.now())
        with self.transaction() as conn:
            for entry in entries:
                if not isinstance(entry, dict) or not entry.get("id") or "display_order" not in entry:
                    raise ValidationError("Each task must have id and display_order")
                order = _clean_display_order(entry["display_order"])
                cur = conn.execute(
                    "UPDATE tasks SET display_order = ?, updated_at = ? WHERE id = ?",
                    (order, stamp, entry["id"]),
                )
                if cur.rowcount != 1:
                    raise NotFoundError(f"Task not found: {entry['id']}")

        logger.info("Reordered %d task(s)", len(entries))
        return len(entries)

    def delete(self, task_id: str) -> Task:
        """Delete a task (its focus sessions go with it). Returns the deleted task."""
        with self.transaction() as conn:
            task = self.load_task(conn, task_id)
            conn.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
        logger.info("Task deleted id=%s", task_id)
        return task

    def delete_all(self) -> List[Task]:
        with self.transaction() as conn:
            tasks = self.fetch_tasks(conn)
            conn.execute("DELETE FROM tasks")
        logger.info("Deleted all tasks (%d)", len(tasks))
        return tasks

    def delete_completed_before(self, cutoff: datetime) -> List[Task]:
        """Delete tasks completed strictly before `cutoff`. Returns them."""
        bound = to_iso(cutoff)
        with self.transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE completed = 1 AND completed_at IS NOT NULL "
                "AND completed_at < ?",
                (bound,),
            ).fetchall()
            conn.execute(
                "DELETE FROM tasks WHERE completed = 1 AND completed_at IS NOT NULL "
                "AND completed_at < ?",
                (bound,),
            )
        return [Task.from_row(r) for r in rows]

    def count_incomplete(self) -> int:
        with self.reading() as conn:
            return self._count_incomplete(conn)

    def ping(self) -> bool:
        """True if the database answers a trivial query."""
        try:
            with self.reading() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except StorageError:
            return False
