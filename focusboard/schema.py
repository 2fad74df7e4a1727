"""
Task and focus-session schema.

Task lifecycle:
  created → (toggle) completed → (toggle) incomplete → ... → deleted

Focus session lifecycle:
  running ⇄ paused → stopped (terminal)

Timestamps are ISO-8601 UTC strings with fixed millisecond precision, so
string order in SQL matches chronological order.
"""
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Current time, timezone-aware UTC."""
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width ISO-8601 UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds")


def parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def whole_seconds_between(start: datetime, end: datetime) -> int:
    """Floor of (end - start) in seconds, clamped at zero."""
    return max(0, math.floor((end - start).total_seconds()))


def make_task_id(now: Optional[datetime] = None) -> str:
    """Sortable unique task ID: ms timestamp + random hex."""
    ts = int((now or utc_now()).timestamp() * 1000)
    return f"{ts}-{uuid.uuid4().hex[:8]}"


class Tier(Enum):
    """Priority rows of the board view, most urgent first."""
    VERY_URGENT = "very_urgent"
    URGENT = "urgent"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_str(cls, value: Any) -> Optional["Tier"]:
        try:
            return cls(value)
        except ValueError:
            return None


TIER_ORDER = [Tier.VERY_URGENT, Tier.URGENT, Tier.MEDIUM, Tier.LOW]
MAX_TASKS_PER_TIER = 5


class SessionState(Enum):
    """Derived state of a focus session."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class Task:
    """A task on the board."""

    id: str
    title: str
    timestamp: int                   # creation instant, epoch ms
    priority: Optional[int] = None   # slot number, unique among incomplete tasks
    completed: bool = False
    completed_at: Optional[str] = None
    display_order: int = 0
    meta: Dict[str, Any] = field(default_factory=dict)
    focus_duration: Optional[int] = None  # minutes
    created_at: str = ""
    updated_at: str = ""

    @property
    def tier(self) -> Tier:
        """Row of the board view. Tasks without a valid tier sit in medium."""
        return Tier.from_str(self.meta.get("priority")) or Tier.MEDIUM

    @property
    def position(self) -> Optional[int]:
        pos = self.meta.get("position")
        return pos if isinstance(pos, int) and not isinstance(pos, bool) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "timestamp": self.timestamp,
            "priority": self.priority,
            "completed": self.completed,
            "completed_at": self.completed_at,
            "display_order": self.display_order,
            "meta": self.meta,
            "focus_duration": self.focus_duration,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_row(cls, row) -> "Task":
        """Build a Task from a sqlite3.Row of the tasks table."""
        meta = row["meta"]
        if isinstance(meta, str):
            try:
                meta = json.loads(meta)
            except (json.JSONDecodeError, TypeError):
                meta = {}
        return cls(
            id=row["id"],
            title=row["title"],
            timestamp=int(row["timestamp"]),
            priority=row["priority"],
            completed=bool(row["completed"]),
            completed_at=row["completed_at"],
            display_order=int(row["display_order"] or 0),
            meta=meta if isinstance(meta, dict) else {},
            focus_duration=row["focus_duration"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass
class FocusSession:
    """One timed work session on a task."""

    id: int
    task_id: str
    started_at: str
    paused_at: Optional[str] = None
    stopped_at: Optional[str] = None
    elapsed_seconds: int = 0
    is_active: bool = True
    created_at: str = ""
    # Joined from the task row when available
    title: Optional[str] = None
    focus_duration: Optional[int] = None

    @property
    def state(self) -> SessionState:
        if not self.is_active:
            return SessionState.STOPPED
        if self.paused_at:
            return SessionState.PAUSED
        return SessionState.RUNNING

    def elapsed_at(self, now: datetime) -> int:
        """Total focused seconds as of `now`, including the open interval."""
        if self.state != SessionState.RUNNING:
            return self.elapsed_seconds
        return self.elapsed_seconds + whole_seconds_between(parse_iso(self.started_at), now)

    @property
    def target_seconds(self) -> Optional[int]:
        return self.focus_duration * 60 if self.focus_duration else None

    def to_dict(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "task_id": self.task_id,
            "started_at": self.started_at,
            "paused_at": self.paused_at,
            "stopped_at": self.stopped_at,
            "elapsed_seconds": self.elapsed_seconds,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "state": self.state.value,
        }
        if self.title is not None:
            data["title"] = self.title
            data["focus_duration"] = self.focus_duration
        if now is not None:
            data["current_elapsed_seconds"] = self.elapsed_at(now)
        return data

    @classmethod
    def from_row(cls, row) -> "FocusSession":
        keys = row.keys()
        return cls(
            id=int(row["id"]),
            task_id=row["task_id"],
            started_at=row["started_at"],
            paused_at=row["paused_at"],
            stopped_at=row["stopped_at"],
            elapsed_seconds=int(row["elapsed_seconds"] or 0),
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
            title=row["title"] if "title" in keys else None,
            focus_duration=row["focus_duration"] if "focus_duration" in keys else None,
        )
