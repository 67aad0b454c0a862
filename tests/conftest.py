"""Shared fixtures: a manually driven timer factory and in-memory stores."""

from __future__ import annotations

import pytest

from lt_local.storage import SqliteStorage
from lt_local.store import Store


class FakeTimer:
    """Stands in for threading.Timer; fires only when the test says so."""

    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True

    def fire(self):
        self.function()


class FakeTimerFactory:
    def __init__(self):
        self.timers: list[FakeTimer] = []

    def __call__(self, interval, function):
        timer = FakeTimer(interval, function)
        self.timers.append(timer)
        return timer

    @property
    def live(self) -> list[FakeTimer]:
        return [t for t in self.timers if t.started and not t.cancelled]

    def fire_live(self) -> None:
        for timer in self.live:
            timer.fire()


@pytest.fixture
def timers():
    return FakeTimerFactory()


@pytest.fixture
def storage():
    storage = SqliteStorage.open_in_memory()
    yield storage
    storage.close()


@pytest.fixture
def store(storage, timers):
    """A loaded store on an in-memory database with manual timers."""
    store = Store(storage, timer_factory=timers).init()
    store.get_state()
    return store
