from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from formpilot.core.lease_queue import JobLeaseQueue
from formpilot.db.database import Database


class FakeClock:
    """Controllable naive-UTC clock for queue tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture()
def database(tmp_path):
    """
    Create an isolated sqlite database per test.
    """
    db = Database(f"sqlite:///{tmp_path / 'test_formpilot.db'}")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def queue(database, clock):
    return JobLeaseQueue(database, clock=clock, log_fn=lambda msg, level="info": None)
