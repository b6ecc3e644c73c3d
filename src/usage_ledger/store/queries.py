"""Read-only queries for status reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..policy import BlobPolicyState
from . import db as dbmod


@dataclass(frozen=True)
class IngestionRecord:
    id: int
    source: str
    ingested_at: datetime
    content_hash: Optional[str]
    status: str
    raw_capture_id: Optional[int]
    headers: dict[str, Any]
    metadata: dict[str, Any]
    linked_events: int


@dataclass(frozen=True)
class LedgerSummary:
    event_count: int
    capture_count: int
    ingestions_by_status: dict[str, int] = field(default_factory=dict)
    latest_ingestion: Optional[IngestionRecord] = None


_INGESTION_SELECT = """
    SELECT i.*, (SELECT COUNT(1) FROM event_links l WHERE l.ingestion_id = i.id) AS linked_events
    FROM ingestions i
"""


def _to_ingestion(row) -> IngestionRecord:
    return IngestionRecord(
        id=int(row["id"]),
        source=row["source"],
        ingested_at=dbmod.parse_iso(row["ingested_at"]),
        content_hash=row["content_hash"],
        status=row["status"],
        raw_capture_id=row["raw_capture_id"],
        headers=dbmod.json_loads(row["headers_json"]) or {},
        metadata=dbmod.json_loads(row["metadata_json"]) or {},
        linked_events=int(row["linked_events"]),
    )


def list_ingestions(db_path: Path, limit: int = 20) -> list[IngestionRecord]:
    """Most recent ingestions first."""
    with dbmod.reading(db_path, "ingestions") as conn:
        rows = conn.execute(_INGESTION_SELECT + " ORDER BY i.ingested_at DESC, i.id DESC LIMIT ?", (limit,)).fetchall()
        return [_to_ingestion(r) for r in rows]


def get_ingestion(db_path: Path, ingestion_id: int) -> Optional[IngestionRecord]:
    with dbmod.reading(db_path, f"ingestion {ingestion_id}") as conn:
        row = conn.execute(_INGESTION_SELECT + " WHERE i.id = ?", (ingestion_id,)).fetchone()
        return _to_ingestion(row) if row is not None else None


def count_events(db_path: Path) -> int:
    with dbmod.reading(db_path, "event count") as conn:
        return int(conn.execute("SELECT COUNT(1) AS n FROM ledger_events").fetchone()["n"])


def summarize(db_path: Path) -> LedgerSummary:
    with dbmod.reading(db_path, "ledger summary") as conn:
        events = int(conn.execute("SELECT COUNT(1) AS n FROM ledger_events").fetchone()["n"])
        captures = int(conn.execute("SELECT COUNT(1) AS n FROM raw_captures").fetchone()["n"])
        by_status = {
            r["status"]: int(r["n"])
            for r in conn.execute("SELECT status, COUNT(1) AS n FROM ingestions GROUP BY status").fetchall()
        }
        latest = conn.execute(_INGESTION_SELECT + " ORDER BY i.ingested_at DESC, i.id DESC LIMIT 1").fetchone()
    return LedgerSummary(
        event_count=events,
        capture_count=captures,
        ingestions_by_status=by_status,
        latest_ingestion=_to_ingestion(latest) if latest is not None else None,
    )


def load_blob_policy_state(db_path: Path) -> BlobPolicyState:
    """Rebuild the capture policy state from what is already stored."""
    with dbmod.reading(db_path, "capture policy state") as conn:
        row = conn.execute("SELECT MAX(captured_at) AS ts FROM raw_captures").fetchone()
        last_saved_at = dbmod.parse_iso(row["ts"]) if row is not None else None
        if last_saved_at is None:
            runs = int(conn.execute("SELECT COUNT(1) AS n FROM ingestions").fetchone()["n"])
        else:
            runs = int(
                conn.execute(
                    "SELECT COUNT(1) AS n FROM ingestions WHERE ingested_at > ?",
                    (dbmod.iso(last_saved_at),),
                ).fetchone()["n"]
            )
    return BlobPolicyState(last_saved_at=last_saved_at, runs_since_last_save=runs)
