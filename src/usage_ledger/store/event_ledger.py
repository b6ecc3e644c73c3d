"""Event ledger: transactional upsert of usage events keyed by identity hash.

All writes of ledger events, ingestions and their links go through this
module. One `ingest` call is one transaction; nothing is visible until it
commits.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..core.row_hash import compute_row_hash
from ..errors import ErrorKind, IngestError
from ..models.ingestion import IngestMeta, IngestResult
from ..models.records import CanonicalRecord
from . import db as dbmod

logger = logging.getLogger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds.
_IN_CHUNK = 500


def _date_or_none(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _chunks(items: list[str], size: int) -> Iterable[list[str]]:
    for i in range(0, len(items), size):
        yield items[i : i + size]


def _event_row(record: CanonicalRecord, row_hash: str, ingested_at: str, logic_version: int) -> tuple:
    return (
        row_hash,
        record.model,
        record.kind,
        record.max_mode,
        record.input_with_cache_write_tokens,
        record.input_without_cache_write_tokens,
        record.cache_read_tokens,
        record.output_tokens,
        record.total_tokens,
        record.api_cost_cents,
        record.api_cost_raw,
        record.cost_to_you_cents,
        record.cost_to_you_raw,
        _date_or_none(record.billing_period_start),
        _date_or_none(record.billing_period_end),
        record.source,
        dbmod.iso(record.captured_at),
        record.raw_capture_id,
        ingested_at,
        ingested_at,
        logic_version,
    )


def build_ingestion_metadata(
    base: Optional[dict[str, Any]],
    records: list[CanonicalRecord],
    row_hashes: list[str],
    logic_version: int,
    size: Optional[int],
) -> dict[str, Any]:
    """Caller metadata plus the keys readers rely on."""
    first = records[0] if records else None
    metadata = dict(base or {})
    metadata.update(
        {
            "row_count": len(records),
            "row_hashes": row_hashes,
            "logic_version": logic_version,
            "billing_period_start": _date_or_none(first.billing_period_start) if first else None,
            "billing_period_end": _date_or_none(first.billing_period_end) if first else None,
        }
    )
    if size is not None:
        metadata["bytes"] = size
    return metadata


class EventLedger:
    """SQLite-backed ledger of usage events, ingestions and links."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        dbmod.ensure_schema(db_path)

    def _upsert_ingestion(
        self,
        conn: sqlite3.Connection,
        *,
        meta: IngestMeta,
        metadata: dict[str, Any],
        status: str,
        period: tuple[Optional[str], Optional[str]],
    ) -> int:
        params = (
            meta.source,
            dbmod.iso(meta.ingested_at),
            meta.content_hash,
            dbmod.json_dumps(meta.headers),
            dbmod.json_dumps(metadata),
            status,
            meta.raw_capture_id,
            period[0],
            period[1],
        )
        insert_sql = """
            INSERT INTO ingestions(
              source, ingested_at, content_hash, headers_json, metadata_json,
              status, raw_capture_id, billing_period_start, billing_period_end
            )
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?)
        """
        if meta.content_hash is None:
            return int(conn.execute(insert_sql, params).lastrowid)

        # A failure must not overwrite a completed ingestion of the same bytes.
        guard = "WHERE ingestions.status = 'failed'" if status == "failed" else ""
        conn.execute(
            insert_sql
            + f"""
            ON CONFLICT(content_hash) DO UPDATE SET
              source=excluded.source,
              ingested_at=excluded.ingested_at,
              headers_json=excluded.headers_json,
              metadata_json=excluded.metadata_json,
              status=excluded.status,
              raw_capture_id=COALESCE(excluded.raw_capture_id, ingestions.raw_capture_id),
              billing_period_start=excluded.billing_period_start,
              billing_period_end=excluded.billing_period_end
            {guard}
            """,
            params,
        )
        row = conn.execute("SELECT id, status FROM ingestions WHERE content_hash = ?", (meta.content_hash,)).fetchone()
        if row["status"] != status:
            logger.warning(
                f"Ingestion {row['id']} for hash {meta.content_hash[:12]} kept status {row['status']!r}"
            )
        return int(row["id"])

    def _existing_hashes(self, conn: sqlite3.Connection, row_hashes: list[str]) -> set[str]:
        found: set[str] = set()
        for chunk in _chunks(row_hashes, _IN_CHUNK):
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(
                f"SELECT row_hash FROM ledger_events WHERE row_hash IN ({placeholders})", chunk
            ).fetchall()
            found.update(r["row_hash"] for r in rows)
        return found

    def ingest(
        self,
        records: list[CanonicalRecord],
        meta: IngestMeta,
        row_hashes: Optional[list[str]] = None,
    ) -> IngestResult:
        """Upsert a batch and its ingestion record in one transaction.

        Args:
            records: Normalized records of one export
            meta: Run metadata (content digest is the ingestion upsert key)
            row_hashes: Precomputed identity hashes, aligned with `records`

        Returns:
            IngestResult where inserted_count + duplicate_count == len(records)

        Raises:
            IngestError: VALIDATION_ERROR if row_hashes is misaligned; DB_CONFLICT
                or IO_ERROR from storage, in which case the whole batch is rolled back
        """
        if row_hashes is None:
            row_hashes = [compute_row_hash(r, meta.logic_version) for r in records]
        if len(row_hashes) != len(records):
            raise IngestError(
                ErrorKind.VALIDATION_ERROR,
                f"row_hashes must align with records: {len(row_hashes)} hashes for {len(records)} records",
            )

        ingested_at = dbmod.iso(meta.ingested_at)
        metadata = build_ingestion_metadata(meta.metadata, records, row_hashes, meta.logic_version, meta.size)
        period = (metadata["billing_period_start"], metadata["billing_period_end"])
        unique_hashes = list(dict.fromkeys(row_hashes))

        conn = dbmod.connect(self.db_path)
        try:
            with dbmod.transaction(conn):
                ingestion_id = self._upsert_ingestion(
                    conn, meta=meta, metadata=metadata, status="completed", period=period
                )
                existing = self._existing_hashes(conn, unique_hashes)

                seen = set(existing)
                new_rows: list[tuple] = []
                inserted = 0
                duplicates = 0
                for row_hash, record in zip(row_hashes, records):
                    if row_hash in seen:
                        duplicates += 1
                        continue
                    seen.add(row_hash)
                    inserted += 1
                    new_rows.append(_event_row(record, row_hash, ingested_at, meta.logic_version))

                if new_rows:
                    conn.executemany(
                        """
                        INSERT INTO ledger_events(
                          row_hash, model, kind, max_mode,
                          input_with_cache_write_tokens, input_without_cache_write_tokens,
                          cache_read_tokens, output_tokens, total_tokens,
                          api_cost_cents, api_cost_raw, cost_to_you_cents, cost_to_you_raw,
                          billing_period_start, billing_period_end, source, captured_at,
                          raw_capture_id, first_seen_at, last_seen_at, logic_version
                        )
                        VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(row_hash) DO UPDATE SET
                          last_seen_at=excluded.last_seen_at,
                          logic_version=excluded.logic_version
                        """,
                        new_rows,
                    )

                if existing:
                    conn.executemany(
                        "UPDATE ledger_events SET last_seen_at = ?, logic_version = ? WHERE row_hash = ?",
                        [(ingested_at, meta.logic_version, h) for h in sorted(existing)],
                    )

                conn.executemany(
                    "INSERT INTO event_links(row_hash, ingestion_id) VALUES(?, ?) "
                    "ON CONFLICT(row_hash, ingestion_id) DO NOTHING",
                    [(h, ingestion_id) for h in unique_hashes],
                )
        except IngestError:
            raise
        except sqlite3.Error as e:
            raise dbmod.classify_db_error(e, "failed to persist usage events") from e
        finally:
            conn.close()

        logger.info(
            f"Ingestion {ingestion_id} recorded: inserted={inserted} duplicates={duplicates} "
            f"hash={(meta.content_hash or '-')[:12]}"
        )
        return IngestResult(
            ingestion_id=ingestion_id,
            inserted_count=inserted,
            duplicate_count=duplicates,
            row_hashes=row_hashes,
        )

    def record_failure(self, meta: IngestMeta, error: IngestError) -> int:
        """Record a failed attempt (zero rows) and return the ingestion id."""
        metadata = dict(meta.metadata)
        metadata.update(
            {
                "row_count": 0,
                "row_hashes": [],
                "logic_version": meta.logic_version,
                "bytes": meta.size,
                "error": error.to_dict(),
            }
        )
        conn = dbmod.connect(self.db_path)
        try:
            with dbmod.transaction(conn):
                ingestion_id = self._upsert_ingestion(
                    conn, meta=meta, metadata=metadata, status="failed", period=(None, None)
                )
        except sqlite3.Error as e:
            raise dbmod.classify_db_error(e, "failed to record failed ingestion") from e
        finally:
            conn.close()

        logger.warning(f"Ingestion {ingestion_id} recorded as failed: {error}")
        return ingestion_id

    def _latest_completed(self, start: Optional[date], end: Optional[date]) -> Optional[sqlite3.Row]:
        with dbmod.reading(self.db_path, "latest completed ingestion") as conn:
            return conn.execute(
                """
                SELECT ingested_at, metadata_json FROM ingestions
                WHERE status = 'completed'
                  AND billing_period_start IS ?
                  AND billing_period_end IS ?
                ORDER BY ingested_at DESC, id DESC
                LIMIT 1
                """,
                (_date_or_none(start), _date_or_none(end)),
            ).fetchone()

    def latest_capture_for_period(self, start: Optional[date], end: Optional[date]) -> Optional[datetime]:
        """Newest completed ingestion instant for a reporting period."""
        row = self._latest_completed(start, end)
        return dbmod.parse_iso(row["ingested_at"]) if row is not None else None

    def latest_table_hash_for_period(self, start: Optional[date], end: Optional[date]) -> Optional[str]:
        row = self._latest_completed(start, end)
        if row is None:
            return None
        metadata = dbmod.json_loads(row["metadata_json"]) or {}
        return metadata.get("table_hash")
