"""Shared test fixtures."""

from datetime import UTC, datetime, timedelta

import pytest

from src.scheduler.store import ScheduleStore


class FakeClock:
    """Callable clock that tests move forward by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def store(tmp_path):
    """A ScheduleStore backed by a temporary SQLite file."""
    return ScheduleStore(db_path=tmp_path / "test.db")


@pytest.fixture
def clock():
    """A FakeClock starting at 2024-03-10 07:00 UTC (08:00 in Rome)."""
    return FakeClock(datetime(2024, 3, 10, 7, 0, tzinfo=UTC))
