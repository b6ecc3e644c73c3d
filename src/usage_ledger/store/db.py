from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import ErrorKind, IngestError

SCHEMA_VERSION = "1"

# How long a writer waits on another writer's lock before giving up.
BUSY_TIMEOUT_SECONDS = 5.0


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection; failures surface as IngestError(IO_ERROR)."""
    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; write batches open their own BEGIN IMMEDIATE.
        conn = sqlite3.connect(str(db_path), isolation_level=None, timeout=BUSY_TIMEOUT_SECONDS)
    except (sqlite3.Error, OSError) as e:
        raise IngestError(ErrorKind.IO_ERROR, f"failed to open ledger {db_path}: {e}") from e
    try:
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute(f"PRAGMA busy_timeout = {int(BUSY_TIMEOUT_SECONDS * 1000)}")
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.Error as e:
        conn.close()
        raise classify_db_error(e, f"failed to configure ledger {db_path}") from e
    return conn


@contextmanager
def reading(db_path: Path, what: str) -> Iterator[sqlite3.Connection]:
    """Connection for read-only queries; never writes, never takes the write lock."""
    conn = connect(db_path)
    try:
        yield conn
    except sqlite3.Error as e:
        raise classify_db_error(e, f"failed to read {what}") from e
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Single write transaction: commit on success, roll back on any error."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS meta(
          key TEXT PRIMARY KEY,
          value TEXT
        );

        CREATE TABLE IF NOT EXISTS raw_captures(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          content_hash TEXT UNIQUE NOT NULL,
          kind TEXT NOT NULL,
          url TEXT,
          captured_at TEXT NOT NULL,
          payload BLOB NOT NULL,
          content_type TEXT NOT NULL,
          metadata_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS ingestions(
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          source TEXT NOT NULL,
          ingested_at TEXT NOT NULL,
          content_hash TEXT UNIQUE,
          headers_json TEXT NOT NULL,
          metadata_json TEXT NOT NULL,
          status TEXT NOT NULL CHECK (status IN ('completed', 'failed')),
          raw_capture_id INTEGER,
          billing_period_start TEXT,
          billing_period_end TEXT,
          FOREIGN KEY(raw_capture_id) REFERENCES raw_captures(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS ledger_events(
          row_hash TEXT PRIMARY KEY,
          model TEXT NOT NULL,
          kind TEXT,
          max_mode TEXT,
          input_with_cache_write_tokens INTEGER NOT NULL,
          input_without_cache_write_tokens INTEGER NOT NULL,
          cache_read_tokens INTEGER NOT NULL,
          output_tokens INTEGER NOT NULL,
          total_tokens INTEGER NOT NULL,
          api_cost_cents INTEGER NOT NULL,
          api_cost_raw TEXT,
          cost_to_you_cents INTEGER NOT NULL,
          cost_to_you_raw TEXT,
          billing_period_start TEXT,
          billing_period_end TEXT,
          source TEXT NOT NULL,
          captured_at TEXT NOT NULL,
          raw_capture_id INTEGER,
          first_seen_at TEXT NOT NULL,
          last_seen_at TEXT NOT NULL,
          logic_version INTEGER NOT NULL,
          FOREIGN KEY(raw_capture_id) REFERENCES raw_captures(id) ON DELETE SET NULL
        );

        CREATE TABLE IF NOT EXISTS event_links(
          row_hash TEXT NOT NULL,
          ingestion_id INTEGER NOT NULL,
          PRIMARY KEY(row_hash, ingestion_id),
          FOREIGN KEY(row_hash) REFERENCES ledger_events(row_hash) ON DELETE CASCADE,
          FOREIGN KEY(ingestion_id) REFERENCES ingestions(id) ON DELETE CASCADE
        );

        CREATE INDEX IF NOT EXISTS idx_raw_captures_captured_at ON raw_captures(captured_at, id);
        CREATE INDEX IF NOT EXISTS idx_ingestions_period ON ingestions(billing_period_start, billing_period_end, status);
        CREATE INDEX IF NOT EXISTS idx_ingestions_ingested_at ON ingestions(ingested_at);
        CREATE INDEX IF NOT EXISTS idx_event_links_ingestion_id ON event_links(ingestion_id);
        """
    )
    conn.execute(
        "INSERT INTO meta(key, value) VALUES('schema_version', ?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value",
        (SCHEMA_VERSION,),
    )


def schema_version(conn: sqlite3.Connection) -> Optional[str]:
    has_meta = conn.execute("SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'meta'").fetchone()
    if has_meta is None:
        return None
    row = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()
    return row["value"] if row is not None else None


def ensure_schema(db_path: Path) -> bool:
    """Create the schema unless the current version is already in place.

    Only a missing or outdated schema is written, so opening an existing
    ledger does not contend with a running ingestion for the write lock.

    Returns:
        True if the schema was created or upgraded
    """
    conn = connect(db_path)
    try:
        if schema_version(conn) == SCHEMA_VERSION:
            return False
        create_schema(conn)
        return True
    except sqlite3.Error as e:
        raise classify_db_error(e, f"failed to prepare ledger schema at {db_path}") from e
    finally:
        conn.close()


def as_utc(ts: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def iso(ts: datetime) -> str:
    """UTC ISO 8601 text with fixed precision so values sort lexically."""
    return as_utc(ts).isoformat(timespec="microseconds")


def parse_iso(text: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(text) if text else None


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"), default=str)


def json_loads(text: Optional[str]) -> Any:
    return json.loads(text) if text else None


def classify_db_error(err: sqlite3.Error, message: str) -> IngestError:
    """Map sqlite failures onto the error taxonomy."""
    if isinstance(err, sqlite3.IntegrityError):
        return IngestError(ErrorKind.DB_CONFLICT, f"{message}: {err}")
    return IngestError(ErrorKind.IO_ERROR, f"{message}: {err}")
