"""
Priority assignment.

Two views of "how urgent" a task is:

  slots  - `tasks.priority`, a positive integer unique among incomplete tasks.
           This is the storage-level source of truth.
  tiers  - the board rows (very_urgent, urgent, medium, low) with up to five
           uncompleted tasks each, kept in `meta["priority"]` and ordered by
           `meta["position"]`. A presentation layer only.

Connection-level helpers take an open sqlite3 connection that is already
inside a write transaction; the store and PriorityEngine own the transaction.
"""
import json
import logging
import sqlite3
from typing import Any, Dict, Iterable, List, Optional, Tuple

from .errors import ConflictError, NotFoundError, ValidationError
from .schema import MAX_TASKS_PER_TIER, TIER_ORDER, Task, Tier, to_iso

logger = logging.getLogger(__name__)


def parse_priority(value: Any) -> int:
    """Coerce a client-supplied priority to a positive int."""
    if isinstance(value, bool):
        raise ValidationError("priority must be a positive integer")
    if isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int) or value < 1:
        raise ValidationError("priority must be a positive integer")
    return value


# ── Slots ────────────────────────────────────────────────────────────────────

def lowest_free_priority(conn: sqlite3.Connection) -> int:
    """First gap in the priorities of incomplete tasks, starting at 1."""
    rows = conn.execute(
        "SELECT priority FROM tasks WHERE completed = 0 AND priority IS NOT NULL "
        "ORDER BY priority ASC"
    ).fetchall()
    candidate = 1
    for row in rows:
        used = row[0]
        if used < candidate:
            continue
        if used > candidate:
            break
        candidate += 1
    return candidate


def holder_of(conn: sqlite3.Connection, priority: int, exclude_id: Optional[str] = None) -> Optional[str]:
    """ID of the incomplete task holding `priority`, if any."""
    row = conn.execute(
        "SELECT id FROM tasks WHERE completed = 0 AND priority = ? AND id != ? LIMIT 1",
        (priority, exclude_id or ""),
    ).fetchone()
    return row[0] if row else None


def swap_priority(conn: sqlite3.Connection, task: Task, new_priority: int, stamp: str) -> Optional[str]:
    """
    Move `task` to `new_priority`, handing its old slot to the current holder.

    Returns the ID of the task that was swapped, or None. Completed tasks are
    outside the uniqueness domain, so they take the slot without a swap.
    """
    if task.priority == new_priority:
        return None

    holder = None if task.completed else holder_of(conn, new_priority, exclude_id=task.id)
    if holder is None:
        conn.execute(
            "UPDATE tasks SET priority = ?, updated_at = ? WHERE id = ?",
            (new_priority, stamp, task.id),
        )
        return None

    # Park the holder so the unique index never sees two rows on one slot.
    conn.execute("UPDATE tasks SET priority = NULL WHERE id = ?", (holder,))
    conn.execute(
        "UPDATE tasks SET priority = ?, updated_at = ? WHERE id = ?",
        (new_priority, stamp, task.id),
    )
    old_priority = task.priority if task.priority is not None else lowest_free_priority(conn)
    conn.execute(
        "UPDATE tasks SET priority = ?, updated_at = ? WHERE id = ?",
        (old_priority, stamp, holder),
    )
    return holder


# ── Tiers ────────────────────────────────────────────────────────────────────

def parse_tier(value: Any) -> Tier:
    tier = Tier.from_str(value)
    if tier is None:
        valid = ", ".join(t.value for t in TIER_ORDER)
        raise ValidationError(f"tier must be one of: {valid}")
    return tier


def open_in_tier(tasks: Iterable[Task], tier: Tier) -> List[Task]:
    """Uncompleted tasks of a tier in board order."""
    members = [t for t in tasks if not t.completed and t.tier == tier]
    members.sort(key=lambda t: (t.position if t.position is not None else 999, t.timestamp))
    return members


def board_view(tasks: Iterable[Task]) -> Dict[str, List[Task]]:
    """All tasks grouped by tier; uncompleted first, then by position."""
    tasks = list(tasks)
    view = {}
    for tier in TIER_ORDER:
        members = [t for t in tasks if t.tier == tier]
        members.sort(key=lambda t: (
            t.position if t.position is not None else 999,
            t.completed,
            t.timestamp,
        ))
        view[tier.value] = members
    return view


def next_tier_to_fill(tasks: Iterable[Task]) -> Tier:
    """Fill very_urgent first (up to five open tasks), then urgent, medium, low."""
    tasks = list(tasks)
    for tier in TIER_ORDER:
        if len(open_in_tier(tasks, tier)) < MAX_TASKS_PER_TIER:
            return tier
    return Tier.LOW


def next_position(tasks: Iterable[Task], tier: Tier) -> int:
    """Lowest position not held by an open task of the tier."""
    used = {t.position for t in open_in_tier(tasks, tier)}
    position = 1
    while position in used:
        position += 1
    return position


def place_in_tier(tasks: Iterable[Task], meta: Dict[str, Any], tier: Any) -> Dict[str, Any]:
    """
    Return `meta` with the tier and position a new task should take.

    Raises ConflictError when the chosen tier already has five open tasks;
    with "auto" that means every tier is full.
    """
    tasks = list(tasks)
    target = next_tier_to_fill(tasks) if tier == "auto" else parse_tier(tier)
    if len(open_in_tier(tasks, target)) >= MAX_TASKS_PER_TIER:
        raise ConflictError(f"Tier {target.value} already has {MAX_TASKS_PER_TIER} open tasks")
    return {**meta, "priority": target.value, "position": next_position(tasks, target)}


def plan_tier_move(tasks: List[Task], task_id: str, target: Tier,
                   position: Optional[int] = None) -> Dict[str, Dict[str, Any]]:
    """
    Compute the meta updates for moving a task to `target` at `position`.

    Every affected tier is renumbered 1..N with no gaps. Only tasks whose meta
    actually changes appear in the result.
    """
    moving = next((t for t in tasks if t.id == task_id), None)
    if moving is None:
        raise NotFoundError("Task not found")
    if moving.completed:
        raise ConflictError("Completed tasks cannot be moved between tiers")

    source = moving.tier
    row = [t for t in open_in_tier(tasks, target) if t.id != task_id]
    if source != target and len(row) >= MAX_TASKS_PER_TIER:
        raise ConflictError(f"Tier {target.value} already has {MAX_TASKS_PER_TIER} open tasks")

    index = len(row) if position is None else min(max(position, 1) - 1, len(row))
    row.insert(index, moving)

    layout: List[Tuple[Tier, List[Task]]] = [(target, row)]
    if source != target:
        layout.append((source, [t for t in open_in_tier(tasks, source) if t.id != task_id]))

    plan = {}
    for tier, members in layout:
        for pos, task in enumerate(members, start=1):
            meta = {**task.meta, "priority": tier.value, "position": pos}
            if meta != task.meta:
                plan[task.id] = meta
    return plan


class PriorityEngine:
    """Slot swaps and tier moves, each as one transaction on the store."""

    def __init__(self, store):
        self.store = store

    def assign_priority(self, task_id: str, new_priority: Any) -> Tuple[Task, Optional[Task]]:
        """
        Give `task_id` the slot `new_priority`.

        If an incomplete task already holds it, that task receives the
        requester's old slot in the same transaction. Returns the updated task
        and the swapped task (or None).
        """
        new_priority = parse_priority(new_priority)
        stamp = to_iso(self.store.now())
        with self.store.transaction() as conn:
            task = self.store.load_task(conn, task_id)
            old_priority = task.priority
            swapped_id = swap_priority(conn, task, new_priority, stamp)
            task = self.store.load_task(conn, task_id)
            swapped = self.store.load_task(conn, swapped_id) if swapped_id else None

        if swapped:
            logger.info("Priority swap %s: %s -> %s, %s: %s -> %s",
                        task.id, old_priority, task.priority,
                        swapped.id, new_priority, swapped.priority)
        return task, swapped

    def move_task(self, task_id: str, tier: Any, position: Optional[Any] = None) -> List[Task]:
        """Drag a task into a tier (optionally at a 1-based position). Returns the target row."""
        target = parse_tier(tier)
        if position is not None:
            if isinstance(position, bool) or not isinstance(position, int) or position < 1:
                raise ValidationError("position must be a positive integer")

        stamp = to_iso(self.store.now())
        with self.store.transaction() as conn:
            tasks = self.store.fetch_tasks(conn)
            plan = plan_tier_move(tasks, task_id, target, position)
            for tid, meta in plan.items():
                conn.execute(
                    "UPDATE tasks SET meta = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(meta), stamp, tid),
                )
            row = open_in_tier(self.store.fetch_tasks(conn), target)

        logger.debug("Moved %s to %s (%d tasks renumbered)", task_id, target.value, len(plan))
        return row
