"""Raw capture ledger: dedup by content digest, gzip, retention pruning."""

from __future__ import annotations

import gzip
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any, Literal, Optional

from ..errors import ErrorKind, IngestError
from ..hashing import sha256_hex
from ..models.ingestion import BlobSaveResult
from . import db as dbmod

logger = logging.getLogger(__name__)

CaptureKind = Literal["tabular", "structured"]

_CONTENT_TYPES = {"tabular": "text/csv", "structured": "application/json"}
_FETCH_METHODS = {"tabular": "http_csv", "structured": "http_json"}


class BlobLedger:
    """Stores raw export bytes at most once per content digest."""

    def __init__(self, db_path: Path):
        self.db_path = db_path
        dbmod.ensure_schema(db_path)

    def _find_by_hash(self, conn: sqlite3.Connection, content_hash: str) -> Optional[int]:
        row = conn.execute("SELECT id FROM raw_captures WHERE content_hash = ?", (content_hash,)).fetchone()
        return int(row["id"]) if row is not None else None

    def save_if_new(
        self,
        content: bytes,
        *,
        kind: CaptureKind,
        url: Optional[str],
        captured_at: datetime,
        metadata: Optional[dict[str, Any]] = None,
    ) -> BlobSaveResult:
        """Persist `content` unless a capture with the same digest exists.

        A concurrent writer that wins the insert race turns this call into a
        `duplicate` result carrying the winner's id.

        Raises:
            IngestError: DB_CONFLICT if the unique constraint fires but no winner
                can be found; IO_ERROR for other storage failures
        """
        content_hash = sha256_hex(content)
        conn = dbmod.connect(self.db_path)
        try:
            try:
                existing = self._find_by_hash(conn, content_hash)
            except sqlite3.Error as e:
                raise dbmod.classify_db_error(e, "failed to look up raw capture") from e
            if existing is not None:
                logger.info(f"Raw capture duplicate: id={existing} hash={content_hash[:12]}")
                return BlobSaveResult(outcome="duplicate", capture_id=existing, content_hash=content_hash)

            provenance = {
                "method": _FETCH_METHODS.get(kind, "unknown"),
                "url": url,
                "fetched_at": dbmod.iso(captured_at),
                "size_bytes": len(content),
            }
            try:
                with dbmod.transaction(conn):
                    cursor = conn.execute(
                        """
                        INSERT INTO raw_captures(content_hash, kind, url, captured_at, payload, content_type, metadata_json)
                        VALUES(?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            content_hash,
                            kind,
                            url,
                            dbmod.iso(captured_at),
                            gzip.compress(content),
                            _CONTENT_TYPES.get(kind, "application/octet-stream"),
                            dbmod.json_dumps({"provenance": provenance, **(metadata or {})}),
                        ),
                    )
                    capture_id = int(cursor.lastrowid)
            except sqlite3.IntegrityError as e:
                winner = self._find_by_hash(conn, content_hash)
                if winner is None:
                    raise IngestError(
                        ErrorKind.DB_CONFLICT,
                        "raw capture unique constraint violated without an existing record",
                    ) from e
                logger.warning(f"Raw capture insert lost race: id={winner} hash={content_hash[:12]}")
                return BlobSaveResult(outcome="duplicate", capture_id=winner, content_hash=content_hash)
            except sqlite3.Error as e:
                raise dbmod.classify_db_error(e, "failed to persist raw capture") from e

            logger.info(f"Raw capture saved: id={capture_id} hash={content_hash[:12]} bytes={len(content)}")
            return BlobSaveResult(outcome="saved", capture_id=capture_id, content_hash=content_hash)
        finally:
            conn.close()

    def trim_retention(self, keep: int) -> int:
        """Delete captures beyond the newest `keep` (by captured_at, then id).

        Returns:
            Number of captures deleted
        """
        conn = dbmod.connect(self.db_path)
        try:
            with dbmod.transaction(conn):
                if keep <= 0:
                    cursor = conn.execute("DELETE FROM raw_captures")
                else:
                    cursor = conn.execute(
                        """
                        DELETE FROM raw_captures WHERE id IN (
                          SELECT id FROM raw_captures
                          ORDER BY captured_at DESC, id DESC
                          LIMIT -1 OFFSET ?
                        )
                        """,
                        (keep,),
                    )
                deleted = cursor.rowcount
        except sqlite3.Error as e:
            raise dbmod.classify_db_error(e, "failed to trim raw captures") from e
        finally:
            conn.close()

        if deleted:
            logger.info(f"Trimmed {deleted} raw capture(s), keeping newest {keep}")
        return deleted

    def load_payload(self, capture_id: int) -> Optional[bytes]:
        """Decompressed bytes of one capture, or None if it was pruned."""
        with dbmod.reading(self.db_path, f"raw capture {capture_id}") as conn:
            row = conn.execute("SELECT payload FROM raw_captures WHERE id = ?", (capture_id,)).fetchone()
        if row is None:
            return None
        return gzip.decompress(row["payload"])

    def latest_captured_at(self) -> Optional[datetime]:
        with dbmod.reading(self.db_path, "latest raw capture") as conn:
            row = conn.execute("SELECT MAX(captured_at) AS ts FROM raw_captures").fetchone()
        return dbmod.parse_iso(row["ts"]) if row is not None else None

    def count(self) -> int:
        with dbmod.reading(self.db_path, "raw capture count") as conn:
            return int(conn.execute("SELECT COUNT(1) AS n FROM raw_captures").fetchone()["n"])
