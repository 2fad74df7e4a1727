"""
Tests for the expiry sweep, focus check and the periodic job runner.
"""
import threading
from datetime import timedelta

from focusboard.expiry import ExpiryScheduler, PeriodicJob


def _complete(store, title):
    task = store.create(title)
    return store.toggle(task.id)


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Sweep
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_sweep_deletes_after_retention(store, clock):
    """Test a task completed more than four hours ago is deleted"""
    done = _complete(store, "old")
    scheduler = ExpiryScheduler(store)

    clock.advance(hours=4, seconds=1)
    result = scheduler.sweep()
    assert result.ids == [done.id]
    assert result.titles == ["old"]
    assert result.count == 1
    assert store.list() == []


def test_sweep_keeps_recent(store, clock):
    """Test a task completed under four hours ago survives"""
    _complete(store, "recent")
    clock.advance(hours=3, minutes=59)
    assert ExpiryScheduler(store).sweep().count == 0
    assert len(store.list()) == 1


def test_sweep_ignores_open_tasks(store, clock):
    """Test incomplete tasks are never swept, however old"""
    store.create("open")
    clock.advance(days=30)
    assert ExpiryScheduler(store).sweep().count == 0


def test_sweep_after_reopen(store, clock):
    """Test reopening clears completed_at so the task is not swept"""
    done = _complete(store, "x")
    store.toggle(done.id)
    clock.advance(hours=5)
    assert ExpiryScheduler(store).sweep().count == 0


def test_sweep_custom_retention(store, clock):
    """Test the retention window is configurable"""
    _complete(store, "x")
    clock.advance(minutes=31)
    scheduler = ExpiryScheduler(store, retention=timedelta(minutes=30))
    assert scheduler.sweep().count == 1


def test_sweep_is_idempotent(store, clock):
    """Test a second sweep at the same instant finds nothing"""
    _complete(store, "x")
    clock.advance(hours=5)
    scheduler = ExpiryScheduler(store)
    assert scheduler.sweep().count == 1
    assert scheduler.sweep().count == 0


def test_check_focus_completes_task(store, focus, clock):
    """Test the focus check completes a task whose duration ran out"""
    task = store.create("a", focus_duration=2)
    focus.start(task.id)
    clock.advance(minutes=2)
    scheduler = ExpiryScheduler(store, focus)
    assert scheduler.check_focus().task_id == task.id
    assert store.get(task.id).completed is True


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# PeriodicJob
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━


def test_run_once_swallows_errors(caplog):
    """Test a failing job is logged and does not raise"""
    def boom():
        raise RuntimeError("database went away")

    job = PeriodicJob("boom", boom, 60)
    job.run_once()
    assert "boom failed" in caplog.text


def test_job_runs_on_interval():
    """Test the background thread calls the job repeatedly until stopped"""
    calls = []
    hit = threading.Event()

    def tick():
        calls.append(1)
        if len(calls) >= 2:
            hit.set()

    job = PeriodicJob("tick", tick, 0.5)
    job.start()
    try:
        assert hit.wait(5)
        assert job.running
    finally:
        job.stop()
    assert not job.running


def test_scheduler_start_runs_immediately(store, clock):
    """Test start() sweeps once right away, catching up after downtime"""
    _complete(store, "stale")
    clock.advance(hours=6)
    scheduler = ExpiryScheduler(store, sweep_interval=3600, focus_interval=3600)
    scheduler.start()
    try:
        assert store.list() == []
        assert scheduler.running
    finally:
        scheduler.stop()
    assert not scheduler.running
