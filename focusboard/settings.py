"""
Board settings: a single row, passed through to the client.
"""
import json
import logging
from typing import Any, Dict

from .errors import ValidationError
from .schema import TIER_ORDER, to_iso

logger = logging.getLogger(__name__)

ROW_COLOR_OPTIONS = ("red", "yellow", "blue", "green")

DEFAULT_ROW_COLORS = {
    "very_urgent": "red",
    "urgent": "yellow",
    "medium": "blue",
    "low": "green",
}

DEFAULT_NUMBER_OF_TASKS = 7


def _merge_row_colors(current: Dict[str, str], updates: Any) -> Dict[str, str]:
    if not isinstance(updates, dict):
        raise ValidationError("rowColors must be an object")
    tiers = {t.value for t in TIER_ORDER}
    merged = dict(current)
    for tier, color in updates.items():
        if tier not in tiers:
            raise ValidationError(f"Unknown row in rowColors: {tier}")
        if color not in ROW_COLOR_OPTIONS:
            raise ValidationError(f"rowColors values must be one of: {', '.join(ROW_COLOR_OPTIONS)}")
        merged[tier] = color
    return merged


class SettingsStore:
    """Reads and writes the settings row in the store's database."""

    def __init__(self, store):
        self.store = store
        with self.store.transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    number_of_tasks INTEGER NOT NULL DEFAULT 7,
                    show_remaining_todo_count INTEGER NOT NULL DEFAULT 1,
                    row_colors TEXT,  -- JSON object
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

    @staticmethod
    def _to_dict(row) -> Dict[str, Any]:
        colors = dict(DEFAULT_ROW_COLORS)
        if row["row_colors"]:
            try:
                stored = json.loads(row["row_colors"])
                if isinstance(stored, dict):
                    colors.update(stored)
            except (json.JSONDecodeError, TypeError):
                pass
        return {
            "numberOfTasks": row["number_of_tasks"],
            "showRemainingTodoCount": bool(row["show_remaining_todo_count"]),
            "rowColors": colors,
        }

    def _ensure_row(self, conn):
        stamp = to_iso(self.store.now())
        conn.execute(
            "INSERT OR IGNORE INTO settings (id, number_of_tasks, show_remaining_todo_count, "
            "row_colors, created_at, updated_at) VALUES (1, ?, 1, ?, ?, ?)",
            (DEFAULT_NUMBER_OF_TASKS, json.dumps(DEFAULT_ROW_COLORS), stamp, stamp),
        )
        return conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()

    def get(self) -> Dict[str, Any]:
        """Current settings, inserting defaults on first read."""
        with self.store.transaction() as conn:
            return self._to_dict(self._ensure_row(conn))

    def update(self, number_of_tasks: Any, show_remaining_todo_count: Any = None,
               row_colors: Any = None) -> Dict[str, Any]:
        if number_of_tasks is None:
            raise ValidationError("numberOfTasks is required")
        try:
            count = int(number_of_tasks)
        except (TypeError, ValueError):
            count = 0
        if isinstance(number_of_tasks, bool) or not 1 <= count <= 100:
            raise ValidationError("numberOfTasks must be a number between 1 and 100")
        show = True if show_remaining_todo_count is None else bool(show_remaining_todo_count)

        with self.store.transaction() as conn:
            current = self._to_dict(self._ensure_row(conn))
            colors = current["rowColors"]
            if row_colors is not None:
                colors = _merge_row_colors(colors, row_colors)
            conn.execute(
                "UPDATE settings SET number_of_tasks = ?, show_remaining_todo_count = ?, "
                "row_colors = ?, updated_at = ? WHERE id = 1",
                (count, 1 if show else 0, json.dumps(colors), to_iso(self.store.now())),
            )
            row = conn.execute("SELECT * FROM settings WHERE id = 1").fetchone()

        logger.info("Settings updated: numberOfTasks=%s", count)
        return self._to_dict(row)
