from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import pytest

from portal.database import Database


class FakeClock:
    """Manually advanced wall clock for time-window tests."""

    def __init__(self, start: datetime) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 5, 1, 12, 0, 0))


@pytest.fixture()
def database(tmp_path: Path, clock: FakeClock) -> Database:
    db = Database(tmp_path / "portal.sqlite3", clock=clock)
    db.initialize()
    return db
