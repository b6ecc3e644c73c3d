"""Ingestion run orchestrator.

One run walks fetching -> hashing -> blob-policy -> parsing -> normalizing
-> ingesting -> done, or ends in failed. Every write downstream of the fetch
is keyed by content digest or identity hash, so re-running identical input
only refreshes timestamps and metadata.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional

from pydantic import BaseModel

from .config import LedgerConfig
from .core.csv_parser import parse_usage_csv
from .core.delta import compute_delta_events
from .core.normalize import normalize_rows, unwrap_structured
from .core.row_hash import compute_row_hash
from .core.table_hash import build_table_state
from .errors import ErrorKind, IngestError
from .fetch import Fetcher, FileExportFetcher, HttpExportFetcher
from .hashing import canonical_json, sha256_hex
from .journal import RunJournal
from .models.ingestion import IngestMeta
from .models.journal import BlobSaved, BlobSkipped, RetentionTrimmed, RunCompleted, RunFailed, RunStarted
from .models.payload import ExportPayload, TabularExport
from .models.records import BillingPeriod
from .policy import BlobDecision, BlobPolicyConfig, BlobPolicyState, decide_blob_save
from .store import db as dbmod
from .store.blob_ledger import BlobLedger
from .store.event_ledger import EventLedger
from .store.queries import load_blob_policy_state

logger = logging.getLogger(__name__)


class RunStage(str, Enum):
    FETCHING = "fetching"
    HASHING = "hashing"
    BLOB_POLICY = "blob-policy"
    PARSING = "parsing"
    NORMALIZING = "normalizing"
    INGESTING = "ingesting"
    DONE = "done"
    FAILED = "failed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunDependencies:
    fetcher: Fetcher
    event_ledger: EventLedger
    blob_ledger: BlobLedger
    source: str
    blob_policy: BlobPolicyConfig = field(default_factory=BlobPolicyConfig)
    policy_state: BlobPolicyState = field(default_factory=BlobPolicyState)
    logic_version: int = 1
    blob_retention: int = 20
    journal: Optional[RunJournal] = None
    clock: Callable[[], datetime] = utc_now


@dataclass(frozen=True)
class RunResult:
    ingestion_id: int
    inserted_count: int
    duplicate_count: int
    saved_blob: bool
    blob_reason: str
    content_hash: str
    row_count: int
    delta_count: int
    table_hash: str
    table_changed: bool
    duration_ms: int
    policy_state: BlobPolicyState
    stages: list[str] = field(default_factory=list)


def normalize_headers(headers: dict[str, Any], payload_kind: str) -> dict[str, Any]:
    output = {str(k).lower(): v for k, v in (headers or {}).items()}
    if not output.get("content-type"):
        output["content-type"] = "text/csv" if payload_kind == "tabular" else "application/json"
    return output


def payload_bytes(payload: ExportPayload) -> bytes:
    """Bytes that identify a payload: the raw export, or canonical JSON."""
    if isinstance(payload, TabularExport):
        return payload.content
    return canonical_json(payload.value).encode("utf-8")


def _parse_payload(payload: ExportPayload) -> tuple[list[dict[str, Any]], Optional[BillingPeriod]]:
    if isinstance(payload, TabularExport):
        parsed = parse_usage_csv(payload.content)
        return parsed.rows, parsed.billing_period
    return unwrap_structured(payload.value)


class _Run:
    """Mutable bookkeeping for one run."""

    def __init__(self, deps: RunDependencies):
        self.deps = deps
        self.stage = RunStage.FETCHING
        self.stages: list[str] = []
        self.started = time.monotonic()
        self.capture_id: Optional[int] = None
        self.saved_blob = False
        self.capture_stored = False

    def enter(self, stage: RunStage) -> None:
        self.stage = stage
        self.stages.append(stage.value)
        logger.debug(f"Run stage -> {stage.value}")

    def journal(self, metrics: BaseModel) -> None:
        if self.deps.journal is not None:
            self.deps.journal.record(metrics)

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def store_capture(
        self,
        decision: BlobDecision,
        *,
        content: bytes,
        kind: str,
        url: Optional[str],
        captured_at: datetime,
    ) -> None:
        """Best-effort raw capture write; storage errors never fail the run."""
        if not decision.should_save:
            logger.info(f"Raw capture skipped ({decision.reason})")
            self.journal(BlobSkipped(reason=decision.reason))
            return
        try:
            result = self.deps.blob_ledger.save_if_new(
                content,
                kind=kind,
                url=url,
                captured_at=captured_at,
                metadata={"policy_reason": decision.reason},
            )
        except (IngestError, sqlite3.Error, OSError) as e:
            logger.error(f"Raw capture storage failed, continuing without it: {e}")
            return

        self.capture_id = result.capture_id
        self.capture_stored = True
        self.saved_blob = result.outcome == "saved"
        self.journal(BlobSaved(capture_id=result.capture_id, outcome=result.outcome, reason=decision.reason))
        if not self.saved_blob:
            return
        try:
            deleted = self.deps.blob_ledger.trim_retention(self.deps.blob_retention)
        except (IngestError, sqlite3.Error, OSError) as e:
            logger.error(f"Raw capture retention failed: {e}")
            return
        if deleted:
            self.journal(RetentionTrimmed(deleted=deleted, keep=self.deps.blob_retention))


def run_ingestion(deps: RunDependencies) -> RunResult:
    """Execute one ingestion run.

    Raises:
        IngestError: FETCH_ERROR from the fetcher; CSV_PARSE_ERROR or
            NORMALIZE_ERROR after the failure has been recorded; IO_ERROR or
            DB_CONFLICT from the event ledger
    """
    run = _Run(deps)
    run.journal(RunStarted(source=deps.source, policy=deps.blob_policy.mode))
    logger.info(f"Ingestion run started: source={deps.source} policy={deps.blob_policy.mode}")

    try:
        run.enter(RunStage.FETCHING)
        fetched = deps.fetcher.fetch()
        ingested_at = dbmod.as_utc(deps.clock())
        payload = fetched.payload
        headers = normalize_headers(fetched.headers, payload.kind)
        source_url = fetched.source_url or deps.source

        run.enter(RunStage.HASHING)
        content = payload_bytes(payload)
        content_hash = sha256_hex(content)

        run.enter(RunStage.BLOB_POLICY)

        def blob_decision(row_count: Optional[int], failed: bool = False) -> BlobDecision:
            return decide_blob_save(
                deps.blob_policy, deps.policy_state, now=ingested_at, row_count=row_count, failed=failed
            )

        logger.debug(f"Capture cadence: {blob_decision(None).reason}")

        def fail_recorded(err: IngestError) -> IngestError:
            if not run.capture_stored:
                run.store_capture(
                    blob_decision(None, failed=True),
                    content=content,
                    kind=payload.kind,
                    url=source_url,
                    captured_at=ingested_at,
                )
            deps.event_ledger.record_failure(
                IngestMeta(
                    ingested_at=ingested_at,
                    source=deps.source,
                    content_hash=content_hash,
                    headers=headers,
                    metadata={"source_url": source_url, "payload_kind": payload.kind, "stage": run.stage.value},
                    logic_version=deps.logic_version,
                    raw_capture_id=run.capture_id,
                    size=len(content),
                ),
                err,
            )
            return err

        run.enter(RunStage.PARSING)
        try:
            rows, billing_period = _parse_payload(payload)
        except IngestError as e:
            raise fail_recorded(e)
        decision = blob_decision(len(rows))
        run.store_capture(decision, content=content, kind=payload.kind, url=source_url, captured_at=ingested_at)

        run.enter(RunStage.NORMALIZING)
        try:
            records = normalize_rows(
                rows,
                captured_at=ingested_at,
                billing_period=billing_period,
                source=deps.source,
                raw_capture_id=run.capture_id,
            )
        except (ValueError, TypeError) as e:
            raise fail_recorded(IngestError(ErrorKind.NORMALIZE_ERROR, f"failed to normalize rows: {e}")) from e

        table = build_table_state(records)
        period_start = billing_period.start if billing_period else None
        period_end = billing_period.end if billing_period else None
        previous_table_hash = deps.event_ledger.latest_table_hash_for_period(period_start, period_end)
        latest_capture = deps.event_ledger.latest_capture_for_period(period_start, period_end)
        delta = compute_delta_events(records, latest_capture)
        table_changed = previous_table_hash != table.table_hash
        if not table_changed:
            logger.info(f"Table unchanged for period {period_start}..{period_end} ({table.table_hash[:12]})")

        run.enter(RunStage.INGESTING)
        row_hashes = [compute_row_hash(record, deps.logic_version) for record in records]
        result = deps.event_ledger.ingest(
            records,
            IngestMeta(
                ingested_at=ingested_at,
                source=deps.source,
                content_hash=content_hash,
                headers=headers,
                metadata={
                    "source_url": source_url,
                    "payload_kind": payload.kind,
                    "blob_reason": decision.reason,
                    "table_hash": table.table_hash,
                    "table_changed": table_changed,
                    "delta_count": len(delta),
                },
                logic_version=deps.logic_version,
                raw_capture_id=run.capture_id,
                size=len(content),
            ),
            row_hashes=row_hashes,
        )
    except IngestError as e:
        e.details.setdefault("stage", run.stage.value)
        run.enter(RunStage.FAILED)
        logger.error(f"Ingestion run failed: {e}")
        run.journal(
            RunFailed(
                kind=e.kind.value,
                message=e.message,
                stage=e.details["stage"],
                retryable=e.retryable,
                duration_ms=run.elapsed_ms(),
            )
        )
        raise

    run.enter(RunStage.DONE)
    duration_ms = run.elapsed_ms()
    logger.info(
        f"Ingestion run done: ingestion={result.ingestion_id} inserted={result.inserted_count} "
        f"duplicates={result.duplicate_count} saved_blob={run.saved_blob} duration_ms={duration_ms}"
    )
    run.journal(
        RunCompleted(
            ingestion_id=result.ingestion_id,
            inserted_count=result.inserted_count,
            duplicate_count=result.duplicate_count,
            row_count=len(records),
            delta_count=len(delta),
            table_changed=table_changed,
            saved_blob=run.saved_blob,
            duration_ms=duration_ms,
        )
    )
    return RunResult(
        ingestion_id=result.ingestion_id,
        inserted_count=result.inserted_count,
        duplicate_count=result.duplicate_count,
        saved_blob=run.saved_blob,
        blob_reason=decision.reason,
        content_hash=content_hash,
        row_count=len(records),
        delta_count=len(delta),
        table_hash=table.table_hash,
        table_changed=table_changed,
        duration_ms=duration_ms,
        policy_state=deps.policy_state.advance(saved=run.capture_stored, now=ingested_at),
        stages=list(run.stages),
    )


def build_fetcher(config: LedgerConfig) -> Fetcher:
    if config.export_file is not None:
        return FileExportFetcher(config.export_file, kind=config.export_kind)
    if config.export_url:
        return HttpExportFetcher(
            config.export_url,
            kind=config.export_kind,
            timeout=config.fetch_timeout_seconds,
            headers=config.request_headers(),
        )
    raise IngestError(ErrorKind.VALIDATION_ERROR, "No export source configured")


def build_dependencies(config: LedgerConfig, *, fetcher: Optional[Fetcher] = None) -> RunDependencies:
    """Default collaborators for a configured run; policy state comes from the store."""
    config.validate_for_run()
    # Ledger construction creates the schema the policy state query reads.
    event_ledger = EventLedger(config.db_path)
    blob_ledger = BlobLedger(config.db_path)
    return RunDependencies(
        fetcher=fetcher or build_fetcher(config),
        event_ledger=event_ledger,
        blob_ledger=blob_ledger,
        source=config.source,
        blob_policy=BlobPolicyConfig(
            mode=config.blob_policy,
            max_runs_between_saves=config.blob_max_runs_between_saves,
        ),
        policy_state=load_blob_policy_state(config.db_path),
        logic_version=config.logic_version,
        blob_retention=config.blob_retention,
        journal=RunJournal(config.journal_path),
    )


def run_once(config: LedgerConfig, *, fetcher: Optional[Fetcher] = None) -> RunResult:
    """Zero-argument entry point for triggers: everything comes from config."""
    return run_ingestion(build_dependencies(config, fetcher=fetcher))
