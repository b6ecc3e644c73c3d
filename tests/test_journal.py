"""Tests for the run journal."""

import json

import pytest
from pydantic import ValidationError

from usage_ledger.journal import RunJournal, journal_totals, read_journal_tail
from usage_ledger.models import BlobSaved, BlobSkipped, JournalEvent, RunCompleted, RunFailed, RunStarted


def _completed(inserted=3, duplicates=0, **kwargs):
    values = {
        "ingestion_id": 1,
        "inserted_count": inserted,
        "duplicate_count": duplicates,
        "row_count": inserted + duplicates,
        "delta_count": inserted,
        "table_changed": True,
        "saved_blob": False,
        "duration_ms": 12,
    }
    values.update(kwargs)
    return RunCompleted(**values)


def _failed(kind="FETCH_ERROR", stage="fetching"):
    return RunFailed(kind=kind, message="boom", stage=stage, retryable=kind == "FETCH_ERROR", duration_ms=5)


def test_record_derives_event_type_from_payload(tmp_path):
    journal_path = tmp_path / "state" / "journal.jsonl"

    event = RunJournal(journal_path).record(RunStarted(source="usage_csv", policy="weekly"))

    assert journal_path.exists()
    assert event.event_type == "RUN_STARTED"
    assert event.payload == {"source": "usage_csv", "policy": "weekly"}
    assert isinstance(event.metrics(), RunStarted)


def test_events_of_one_run_share_run_id(tmp_path):
    journal = RunJournal(tmp_path / "journal.jsonl")
    first = journal.record(RunStarted(source="usage_csv", policy="weekly"))
    second = journal.record(_completed())

    assert first.run_id == second.run_id == journal.run_id
    assert first.event_id != second.event_id

    lines = (tmp_path / "journal.jsonl").read_text().strip().split("\n")
    assert len(lines) == 2
    assert json.loads(lines[1])["payload"]["inserted_count"] == 3


def test_event_rejects_payload_of_wrong_shape():
    with pytest.raises(ValidationError):
        JournalEvent(
            event_id="e1",
            run_id="r1",
            ts="2025-02-10T12:00:00Z",
            event_type="RUN_COMPLETED",
            payload={"reason": "not a completion"},
        )


def test_tail_reads_last_n(tmp_path):
    journal = RunJournal(tmp_path / "journal.jsonl")
    for i in range(10):
        journal.record(_completed(ingestion_id=i))

    events = read_journal_tail(tmp_path / "journal.jsonl", n=3)
    assert [e.metrics().ingestion_id for e in events] == [7, 8, 9]


def test_tail_filters_by_run_and_type(tmp_path):
    journal_path = tmp_path / "journal.jsonl"
    first = RunJournal(journal_path, run_id="run-aaaa")
    second = RunJournal(journal_path, run_id="run-bbbb")
    first.record(RunStarted(source="usage_csv", policy="weekly"))
    first.record(_failed())
    second.record(RunStarted(source="usage_csv", policy="weekly"))
    second.record(BlobSkipped(reason="policy:weekly:skip"))
    second.record(_completed())

    assert [e.event_type for e in read_journal_tail(journal_path, run_id="run-b")] == [
        "RUN_STARTED",
        "BLOB_SKIPPED",
        "RUN_COMPLETED",
    ]
    failures = read_journal_tail(journal_path, event_type="RUN_FAILED")
    assert [e.run_id for e in failures] == ["run-aaaa"]
    # n applies after filtering
    assert len(read_journal_tail(journal_path, n=1, event_type="RUN_STARTED")) == 1


def test_tail_skips_malformed_lines(tmp_path):
    journal_path = tmp_path / "journal.jsonl"
    RunJournal(journal_path).record(RunStarted(source="usage_csv", policy="weekly"))
    with open(journal_path, "a", encoding="utf-8") as f:
        f.write("not json\n")
        f.write(json.dumps({"event_type": "UNKNOWN"}) + "\n")
    RunJournal(journal_path).record(_failed())

    events = read_journal_tail(journal_path, n=10)
    assert [e.event_type for e in events] == ["RUN_STARTED", "RUN_FAILED"]


def test_tail_missing_file(tmp_path):
    assert read_journal_tail(tmp_path / "absent.jsonl") == []


def test_totals_sum_run_metrics(tmp_path):
    journal_path = tmp_path / "journal.jsonl"
    journal = RunJournal(journal_path)
    journal.record(BlobSaved(capture_id=1, outcome="saved", reason="policy:weekly:first_run"))
    journal.record(_completed(inserted=3))
    journal.record(BlobSaved(capture_id=1, outcome="duplicate", reason="policy:anomaly:failure"))
    journal.record(_completed(inserted=1, duplicates=3))
    journal.record(_failed("CSV_PARSE_ERROR", "parsing"))
    journal.record(_failed())
    journal.record(_failed())

    totals = journal_totals(read_journal_tail(journal_path, n=50))

    assert (totals.runs_completed, totals.runs_failed) == (2, 3)
    assert (totals.inserted, totals.duplicates) == (4, 3)
    assert totals.blobs_saved == 1
    assert totals.failures_by_kind == {"CSV_PARSE_ERROR": 1, "FETCH_ERROR": 2}
    assert totals.last_failure.kind == "FETCH_ERROR"
