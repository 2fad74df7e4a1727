"""
Time-driven side effects.

  sweep        - delete tasks completed longer ago than the retention window
  check_focus  - auto-stop the active focus session when its task's
                 focus_duration is used up, completing the task

Both run once at start-up and then on their own daemon threads. The expiry
decision is recomputed from `completed_at` on every sweep, so a missed run
only delays deletion.
"""
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from .focus import FocusEngine
from .schema import FocusSession
from .store import TaskStore

logger = logging.getLogger(__name__)

RETENTION = timedelta(hours=4)


@dataclass
class SweepResult:
    """What one expiry sweep removed."""
    ids: List[str] = field(default_factory=list)
    titles: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.ids)


class PeriodicJob:
    """Runs `fn` every `interval` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, fn: Callable[[], object], interval: float):
        self.name = name
        self.fn = fn
        self.interval = max(0.5, float(interval))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self):
        """One guarded run. Errors are logged, never raised."""
        try:
            self.fn()
        except Exception:
            logger.exception("%s failed", self.name)

    def _loop(self):
        while not self._stop.wait(self.interval):
            self.run_once()

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0):
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())


class ExpiryScheduler:
    """Deletes long-completed tasks and enforces focus durations."""

    def __init__(
        self,
        store: TaskStore,
        focus: Optional[FocusEngine] = None,
        retention: timedelta = RETENTION,
        sweep_interval: float = 3600.0,
        focus_interval: float = 15.0,
    ):
        self.store = store
        self.focus = focus or FocusEngine(store)
        self.retention = retention
        self._jobs = [
            PeriodicJob("expiry-sweep", self.sweep, sweep_interval),
            PeriodicJob("focus-check", self.check_focus, focus_interval),
        ]

    def sweep(self, now: Optional[datetime] = None) -> SweepResult:
        """Delete every task whose completed_at is older than the retention window."""
        cutoff = (now or self.store.now()) - self.retention
        deleted = self.store.delete_completed_before(cutoff)
        result = SweepResult(ids=[t.id for t in deleted], titles=[t.title for t in deleted])
        if result.count:
            logger.info(
                "Auto-deleted %d completed task(s): %s",
                result.count,
                ", ".join(f'"{title}"' for title in result.titles),
            )
        return result

    def check_focus(self, now: Optional[datetime] = None) -> Optional[FocusSession]:
        return self.focus.complete_if_due(now)

    def start(self):
        """Run both jobs immediately, then keep them running in the background."""
        for job in self._jobs:
            job.run_once()
            job.start()
        logger.info(
            "Expiry scheduler running (retention %s, sweep every %ss, focus check every %ss)",
            self.retention, self._jobs[0].interval, self._jobs[1].interval,
        )

    def stop(self):
        for job in self._jobs:
            job.stop()

    @property
    def running(self) -> bool:
        return any(job.running for job in self._jobs)
