"""Shared fixtures: temp-file databases and a hand-driven clock."""

from datetime import datetime, timedelta, timezone

import pytest

from focusboard.config import Config
from focusboard.focus import FocusEngine
from focusboard.priority import PriorityEngine
from focusboard.settings import SettingsStore
from focusboard.store import TaskStore
from focusboard_server import create_app

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = T0):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current += timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "board.db")


@pytest.fixture
def store(db_path, clock):
    return TaskStore(db_path, now=clock)


@pytest.fixture
def priority(store):
    return PriorityEngine(store)


@pytest.fixture
def focus(store):
    return FocusEngine(store)


@pytest.fixture
def settings(store):
    return SettingsStore(store)


@pytest.fixture
def app(db_path, clock):
    app = create_app(Config(db_path=db_path, run_scheduler=False))
    app.extensions["focusboard"].store.now = clock
    app.config["TESTING"] = True
    return app


@pytest.fixture
def http(app):
    return app.test_client()
