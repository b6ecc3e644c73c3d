"""Pytest fixtures for Usage Ledger tests."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from usage_ledger.store import db as dbmod
from usage_ledger.store.blob_ledger import BlobLedger
from usage_ledger.store.event_ledger import EventLedger

CSV_HEADER = (
    "Date,Kind,Model,Max Mode,Input (w/ Cache Write),Input (w/o Cache Write),"
    "Cache Read,Output Tokens,Total Tokens,Cost,Cost to you"
)

DEFAULT_ROWS = [
    ("2025-02-03T10:00:00Z", "Included", "gpt-5", "No", 100, 200, 300, 50, 650, "$1.25", "$0.00"),
    ("2025-02-04T11:30:00Z", "Included", "claude-4-sonnet", "Yes", 1000, 0, 500, 120, 1620, "$2.10", "$0.00"),
    ("2025-02-05T09:15:00Z", "Usage-based", "gpt-5", "No", 0, 400, 0, 80, 480, "$0.40", "$0.40"),
    ("2025-02-06T18:45:00Z", "Usage-based", "auto", "No", 20, 30, 0, 10, 60, "$0.05", "$0.05"),
]


def build_csv(rows) -> bytes:
    """Render export rows (tuples in CSV_HEADER order) as CSV bytes."""
    lines = [CSV_HEADER]
    for row in rows:
        lines.append(",".join(str(cell) for cell in row))
    return ("\n".join(lines) + "\n").encode("utf-8")


class FixedClock:
    """Deterministic clock that advances a fixed step on every call."""

    def __init__(self, start: datetime, step: timedelta = timedelta(minutes=5)):
        self.current = start
        self.step = step

    def __call__(self) -> datetime:
        now = self.current
        self.current = self.current + self.step
        return now


@pytest.fixture
def db_path(tmp_path):
    """Path to a fresh SQLite ledger inside pytest's temporary directory."""
    return tmp_path / "state" / "usage_ledger.sqlite"


@pytest.fixture
def event_ledger(db_path):
    return EventLedger(db_path)


@pytest.fixture
def blob_ledger(db_path):
    return BlobLedger(db_path)


@pytest.fixture
def clock():
    return FixedClock(datetime(2025, 2, 10, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def csv_rows():
    return list(DEFAULT_ROWS)


@pytest.fixture
def write_lock(db_path, event_ledger, monkeypatch):
    """Another connection holding the write lock, as a concurrent run would."""
    monkeypatch.setattr(dbmod, "BUSY_TIMEOUT_SECONDS", 0.05)
    conn = sqlite3.connect(str(db_path), isolation_level=None)
    conn.execute("BEGIN IMMEDIATE")
    yield conn
    conn.execute("ROLLBACK")
    conn.close()
