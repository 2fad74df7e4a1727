"""
Tests for TaskStore: creation, slots, completion, ordering, deletion.
"""
import sqlite3
import threading

import pytest

from focusboard.errors import ConflictError, NotFoundError, ValidationError
from focusboard.schema import Task, make_task_id, to_iso
from focusboard.store import TaskStore

from conftest import T0


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Create
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_create_defaults(store):
    """Test a new task gets slot 1, order 1, and is incomplete"""
    task = store.create("Write report")
    assert task.title == "Write report"
    assert task.priority == 1
    assert task.display_order == 1
    assert task.completed is False
    assert task.completed_at is None
    assert task.meta == {}
    assert task.created_at == to_iso(T0)
    assert task.timestamp == int(T0.timestamp() * 1000)


def test_create_trims_title(store):
    """Test surrounding whitespace is stripped from titles"""
    assert store.create("  padded  ").title == "padded"


@pytest.mark.parametrize("title", ["", "   ", None, 42])
def test_create_rejects_bad_title(store, title):
    """Test missing or blank titles are rejected"""
    with pytest.raises(ValidationError):
        store.create(title)


def test_create_fills_lowest_gap(store):
    """Test a new task takes the first free slot among incomplete tasks"""
    store.create("a", priority=1)
    store.create("b", priority=2)
    store.create("d", priority=4)
    assert store.create("c").priority == 3
    assert store.create("e").priority == 5


def test_create_ignores_completed_slots(store):
    """Test slots held by completed tasks count as free"""
    done = store.create("done")
    store.toggle(done.id)
    assert store.create("fresh").priority == 1


def test_create_explicit_priority_conflict(store):
    """Test an explicit slot already held by an incomplete task is refused"""
    store.create("first", priority=2)
    with pytest.raises(ConflictError):
        store.create("second", priority=2)
    assert len(store.list()) == 1


def test_create_display_order_appends(store):
    """Test display_order is max + 1 across all tasks"""
    a = store.create("a")
    b = store.create("b")
    store.update(a.id, display_order=10)
    c = store.create("c")
    assert b.display_order == 2
    assert c.display_order == 11


def test_create_with_limit(store):
    """Test the open-task limit refuses creation once reached"""
    store.create("a", limit=2)
    store.create("b", limit=2)
    with pytest.raises(ConflictError):
        store.create("c", limit=2)
    # Completing one frees room
    store.toggle(store.list()[0].id)
    assert store.create("c", limit=2).title == "c"


def test_create_rejects_bad_focus_duration(store):
    """Test focus_duration must be a positive int"""
    with pytest.raises(ValidationError):
        store.create("x", focus_duration=0)
    with pytest.raises(ValidationError):
        store.create("x", focus_duration="25")
    assert store.create("x", focus_duration=25).focus_duration == 25


def test_create_with_tier_auto(store):
    """Test tier="auto" places the task in the first tier with room"""
    task = store.create("x", tier="auto")
    assert task.meta == {"priority": "very_urgent", "position": 1}


def test_task_ids_unique():
    """Test IDs minted in the same millisecond differ"""
    ids = {make_task_id(T0) for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith(str(int(T0.timestamp() * 1000))) for i in ids)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Read
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_get_unknown(store):
    """Test unknown IDs raise NotFoundError"""
    with pytest.raises(NotFoundError):
        store.get("nope")


def test_list_orders(store):
    """Test priority order vs manual display order"""
    a = store.create("a", priority=3)
    b = store.create("b", priority=1)
    c = store.create("c", priority=2)
    assert [t.id for t in store.list()] == [b.id, c.id, a.id]
    assert [t.id for t in store.list("display")] == [a.id, b.id, c.id]
    with pytest.raises(ValidationError):
        store.list("alphabetical")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Completion
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_toggle_round_trip(store, clock):
    """Test completing sets completed_at; reopening clears it and keeps the slot"""
    task = store.create("x", priority=3)
    clock.advance(minutes=5)
    done = store.toggle(task.id)
    assert done.completed is True
    assert done.completed_at == to_iso(clock())

    reopened = store.toggle(task.id)
    assert reopened.completed is False
    assert reopened.completed_at is None
    assert reopened.priority == 3


def test_reopen_onto_taken_slot(store):
    """Test a reopened task whose slot was reused moves to the first free slot"""
    old = store.create("old")             # slot 1
    store.toggle(old.id)
    store.create("new")                   # takes slot 1
    store.create("other")                 # slot 2
    reopened = store.toggle(old.id)
    assert reopened.priority == 3
    open_slots = sorted(t.priority for t in store.list() if not t.completed)
    assert open_slots == [1, 2, 3]


def test_toggle_unknown(store):
    """Test toggling an unknown task"""
    with pytest.raises(NotFoundError):
        store.toggle("missing")


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Update
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_update_fields(store, clock):
    """Test partial update touches only the given fields"""
    task = store.create("x", meta={"note": "keep"})
    clock.advance(seconds=30)
    updated = store.update(task.id, title="y", focus_duration=15)
    assert updated.title == "y"
    assert updated.focus_duration == 15
    assert updated.meta == {"note": "keep"}
    assert updated.updated_at == to_iso(clock())
    assert updated.created_at == task.created_at


def test_update_priority_swaps(store):
    """Test changing priority through update swaps with the holder"""
    a = store.create("a")  # 1
    b = store.create("b")  # 2
    store.update(b.id, priority=1)
    assert store.get(a.id).priority == 2
    assert store.get(b.id).priority == 1


def test_update_completed(store):
    """Test completion through update behaves like toggle"""
    task = store.create("x")
    assert store.update(task.id, completed=True).completed_at is not None
    with pytest.raises(ValidationError):
        store.update(task.id, completed="yes")


def test_update_validation_leaves_row_untouched(store):
    """Test invalid input rejects the whole update"""
    task = store.create("x")
    with pytest.raises(ValidationError):
        store.update(task.id, title="new", meta=["not", "a", "dict"])
    assert store.get(task.id).title == "x"


def test_clear_focus_duration(store):
    """Test focus_duration can be cleared with None"""
    task = store.create("x", focus_duration=25)
    assert store.set_focus_duration(task.id, None).focus_duration is None


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Reorder
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_bulk_reorder(store):
    """Test a reorder batch is applied"""
    a, b, c = store.create("a"), store.create("b"), store.create("c")
    count = store.bulk_reorder([
        {"id": c.id, "display_order": 1},
        {"id": a.id, "display_order": 2},
        {"id": b.id, "display_order": 3},
    ])
    assert count == 3
    assert [t.id for t in store.list("display")] == [c.id, a.id, b.id]


def test_bulk_reorder_unknown_id_rolls_back(store):
    """Test one unknown ID aborts the whole batch"""
    a, b = store.create("a"), store.create("b")
    with pytest.raises(NotFoundError):
        store.bulk_reorder([
            {"id": a.id, "display_order": 9},
            {"id": "ghost", "display_order": 1},
        ])
    assert store.get(a.id).display_order == 1
    assert store.get(b.id).display_order == 2


@pytest.mark.parametrize("entries", [
    None,
    [],
    [{"display_order": 1}],
    [{"id": "x"}],
    [{"id": "x", "display_order": "first"}],
])
def test_bulk_reorder_bad_input(store, entries):
    """Test malformed batches are rejected"""
    store.create("x")
    with pytest.raises(ValidationError):
        store.bulk_reorder(entries)


def test_bulk_reorder_malformed_entry_rolls_back(store):
    """Test a malformed entry after a valid one leaves every order unchanged"""
    a, b = store.create("a"), store.create("b")
    with pytest.raises(ValidationError):
        store.bulk_reorder([
            {"id": a.id, "display_order": 9},
            {"display_order": 1},
        ])
    assert store.get(a.id).display_order == 1
    assert store.get(b.id).display_order == 2


def test_concurrent_creates_stay_distinct(db_path, clock):
    """Test simultaneous creates from separate connections get distinct slots and orders"""
    stores = [TaskStore(db_path, now=clock) for _ in range(10)]
    barrier = threading.Barrier(len(stores))
    errors = []

    def create(s, i):
        barrier.wait()
        try:
            s.create(f"t{i}")
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=create, args=(s, i)) for i, s in enumerate(stores)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    tasks = stores[0].list()
    assert len(tasks) == 10
    assert sorted(t.priority for t in tasks) == list(range(1, 11))
    assert sorted(t.display_order for t in tasks) == list(range(1, 11))


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Delete
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_delete_returns_record(store):
    """Test delete returns the removed task"""
    task = store.create("x")
    deleted = store.delete(task.id)
    assert deleted.id == task.id
    with pytest.raises(NotFoundError):
        store.get(task.id)
    with pytest.raises(NotFoundError):
        store.delete(task.id)


def test_delete_all(store):
    """Test delete_all empties the board"""
    store.create("a")
    store.create("b")
    assert len(store.delete_all()) == 2
    assert store.list() == []


def test_delete_completed_before(store, clock):
    """Test only tasks completed strictly before the cutoff go"""
    old = store.create("old")
    store.toggle(old.id)
    cutoff = clock.advance(hours=1)
    recent = store.create("recent")
    store.toggle(recent.id)
    store.create("open")

    deleted = store.delete_completed_before(cutoff)
    assert [t.id for t in deleted] == [old.id]
    assert {t.title for t in store.list()} == {"recent", "open"}


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Schema / persistence
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_persistence_across_instances(db_path, clock):
    """Test data survives reopening the database"""
    TaskStore(db_path, now=clock).create("durable", meta={"k": 1})
    reloaded = TaskStore(db_path, now=clock).list()
    assert [(t.title, t.meta) for t in reloaded] == [("durable", {"k": 1})]


def test_migrates_old_schema(tmp_path, clock):
    """Test a database without the newer columns is upgraded in place"""
    path = tmp_path / "old.db"
    conn = sqlite3.connect(path)
    conn.execute("""
        CREATE TABLE tasks (
            id TEXT PRIMARY KEY, title TEXT NOT NULL, timestamp INTEGER NOT NULL,
            completed INTEGER NOT NULL DEFAULT 0, meta TEXT NOT NULL DEFAULT '{}',
            created_at TEXT NOT NULL, updated_at TEXT NOT NULL
        )
    """)
    conn.execute(
        "INSERT INTO tasks VALUES ('t1', 'legacy', 1, 0, '{}', '2026-01-01T00:00:00.000+00:00', "
        "'2026-01-01T00:00:00.000+00:00')"
    )
    conn.commit()
    conn.close()

    store = TaskStore(str(path), now=clock)
    legacy = store.get("t1")
    assert legacy.priority is None
    assert legacy.focus_duration is None
    assert store.create("new").priority == 1


def test_unique_open_priority_enforced_by_database(store):
    """Test the database itself refuses two open tasks on one slot"""
    a = store.create("a")
    b = store.create("b")
    with pytest.raises(ConflictError):
        with store.transaction() as conn:
            conn.execute("UPDATE tasks SET priority = ? WHERE id = ?", (a.priority, b.id))
    assert store.get(b.id).priority == 2


def test_task_from_row_bad_meta():
    """Test unparseable meta degrades to an empty dict"""
    row = {
        "id": "x", "title": "t", "timestamp": 1, "priority": 1, "completed": 0,
        "completed_at": None, "display_order": 1, "meta": "{oops", "focus_duration": None,
        "created_at": "", "updated_at": "",
    }
    assert Task.from_row(row).meta == {}


def test_count_incomplete_and_ping(store):
    """Test the open-task count and the health probe"""
    a = store.create("a")
    store.create("b")
    store.toggle(a.id)
    assert store.count_incomplete() == 1
    assert store.ping() is True
