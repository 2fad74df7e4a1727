"""
Focus session engine.

One global timed work session at a time:

  start   - stops whatever session is active (any task), opens a new one
  pause   - folds the running interval into elapsed_seconds
  resume  - restarts the running clock
  stop    - folds the running interval (if any) and closes the session

The single-active rule lives in the database (a partial unique index on
`is_active`), and every transition is one write transaction, so it holds
across threads, processes and restarts.
"""
import logging
import sqlite3
from datetime import datetime
from typing import List, Optional

from .errors import NotFoundError
from .schema import FocusSession, SessionState, parse_iso, to_iso, whole_seconds_between

logger = logging.getLogger(__name__)

_SESSION_WITH_TASK = """
    SELECT fs.*, t.title AS title, t.focus_duration AS focus_duration
    FROM focus_sessions fs
    JOIN tasks t ON fs.task_id = t.id
"""


class FocusEngine:
    """Focus-session state machine backed by the store's database."""

    def __init__(self, store):
        self.store = store

    # ── Row helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _load(conn: sqlite3.Connection, session_id: int) -> FocusSession:
        row = conn.execute(_SESSION_WITH_TASK + " WHERE fs.id = ?", (session_id,)).fetchone()
        return FocusSession.from_row(row)

    @staticmethod
    def _active_row(conn: sqlite3.Connection, task_id: Optional[str] = None,
                    paused: Optional[bool] = None) -> Optional[FocusSession]:
        sql = _SESSION_WITH_TASK + " WHERE fs.is_active = 1"
        params = []
        if task_id is not None:
            sql += " AND fs.task_id = ?"
            params.append(task_id)
        if paused is True:
            sql += " AND fs.paused_at IS NOT NULL"
        elif paused is False:
            sql += " AND fs.paused_at IS NULL"
        row = conn.execute(sql + " LIMIT 1", params).fetchone()
        return FocusSession.from_row(row) if row else None

    @staticmethod
    def _close(conn: sqlite3.Connection, session: FocusSession, now: datetime):
        """Finalize elapsed time and deactivate."""
        elapsed = session.elapsed_seconds
        if session.state == SessionState.RUNNING:
            elapsed += whole_seconds_between(parse_iso(session.started_at), now)
        conn.execute(
            "UPDATE focus_sessions SET is_active = 0, stopped_at = ?, elapsed_seconds = ? "
            "WHERE id = ?",
            (to_iso(now), elapsed, session.id),
        )

    # ── Queries ──────────────────────────────────────────────────────────────

    def active(self) -> Optional[FocusSession]:
        """The active session (with task title and focus_duration), or None."""
        with self.store.reading() as conn:
            return self._active_row(conn)

    def history(self, task_id: str) -> List[FocusSession]:
        """All sessions for a task, newest first."""
        with self.store.reading() as conn:
            self.store.load_task(conn, task_id)
            rows = conn.execute(
                _SESSION_WITH_TASK + " WHERE fs.task_id = ? ORDER BY fs.id DESC",
                (task_id,),
            ).fetchall()
        return [FocusSession.from_row(r) for r in rows]

    # ── Transitions ──────────────────────────────────────────────────────────

    def start(self, task_id: str) -> FocusSession:
        now = self.store.now()
        stamp = to_iso(now)
        with self.store.transaction() as conn:
            self.store.load_task(conn, task_id)

            previous = self._active_row(conn)
            if previous is not None:
                self._close(conn, previous, now)

            cur = conn.execute(
                "INSERT INTO focus_sessions (task_id, started_at, elapsed_seconds, is_active, created_at) "
                "VALUES (?, ?, 0, 1, ?)",
                (task_id, stamp, stamp),
            )
            session = self._load(conn, cur.lastrowid)

        if previous is not None:
            logger.info("Focus session %s on %s stopped by new start", previous.id, previous.task_id)
        logger.info("Focus session %s started on %s", session.id, task_id)
        return session

    def pause(self, task_id: str) -> FocusSession:
        now = self.store.now()
        with self.store.transaction() as conn:
            session = self._active_row(conn, task_id, paused=False)
            if session is None:
                raise NotFoundError("No running focus session found for this task")
            elapsed = session.elapsed_at(now)
            conn.execute(
                "UPDATE focus_sessions SET paused_at = ?, elapsed_seconds = ? WHERE id = ?",
                (to_iso(now), elapsed, session.id),
            )
            return self._load(conn, session.id)

    def resume(self, task_id: str) -> FocusSession:
        now = self.store.now()
        with self.store.transaction() as conn:
            session = self._active_row(conn, task_id, paused=True)
            if session is None:
                raise NotFoundError("No paused focus session found for this task")
            conn.execute(
                "UPDATE focus_sessions SET started_at = ?, paused_at = NULL WHERE id = ?",
                (to_iso(now), session.id),
            )
            return self._load(conn, session.id)

    def stop(self, task_id: str) -> FocusSession:
        now = self.store.now()
        with self.store.transaction() as conn:
            session = self._active_row(conn, task_id)
            if session is None:
                raise NotFoundError("No active focus session found for this task")
            self._close(conn, session, now)
            session = self._load(conn, session.id)
        logger.info("Focus session %s stopped after %ss", session.id, session.elapsed_seconds)
        return session

    def complete_if_due(self, now: Optional[datetime] = None) -> Optional[FocusSession]:
        """
        Stop the active session and complete its task once the task's
        focus_duration is used up.

        Runs as one transaction; afterwards no session is active, so repeated
        calls past the threshold are no-ops. Returns the stopped session when
        the transition happened.
        """
        now = now or self.store.now()
        with self.store.transaction() as conn:
            session = self._active_row(conn)
            if session is None or not session.target_seconds:
                return None
            if session.elapsed_at(now) < session.target_seconds:
                return None

            self._close(conn, session, now)
            stamp = to_iso(now)
            conn.execute(
                "UPDATE tasks SET completed = 1, completed_at = ?, updated_at = ? "
                "WHERE id = ? AND completed = 0",
                (stamp, stamp, session.task_id),
            )
            session = self._load(conn, session.id)

        logger.info("Focus duration reached for %s (%ss); task completed",
                    session.task_id, session.elapsed_seconds)
        return session
