"""Run journal: one JSON line per run event, with typed metric payloads."""

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel, ValidationError

from .models.journal import EVENT_TYPES, JournalEvent, JournalTotals, RunFailed

logger = logging.getLogger(__name__)


class RunJournal:
    """Journal handle for one run; every event it writes shares `run_id`."""

    def __init__(self, journal_path: Path, run_id: Optional[str] = None):
        self.journal_path = journal_path
        self.run_id = run_id or str(uuid.uuid4())

    def record(self, metrics: BaseModel) -> JournalEvent:
        """Append `metrics`; the event type follows from the payload model.

        Raises:
            KeyError: if `metrics` is not a registered journal payload model
        """
        event = JournalEvent(
            event_id=str(uuid.uuid4()),
            run_id=self.run_id,
            ts=datetime.now(timezone.utc),
            event_type=EVENT_TYPES[type(metrics)],
            payload=metrics.model_dump(mode="json"),
        )
        self.journal_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.journal_path, "a", encoding="utf-8") as f:
            f.write(event.model_dump_json() + "\n")
        return event


def iter_journal(journal_path: Path) -> Iterable[JournalEvent]:
    """Events in file order. Lines that fail validation are logged and skipped."""
    if not journal_path.exists():
        return
    with open(journal_path, "r", encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                yield JournalEvent.model_validate_json(line)
            except ValidationError as e:
                logger.warning(f"Skipping malformed journal line {line_no} in {journal_path}: {e.error_count()} error(s)")


def read_journal_tail(
    journal_path: Path,
    n: int = 20,
    *,
    run_id: Optional[str] = None,
    event_type: Optional[str] = None,
) -> list[JournalEvent]:
    """Last `n` events matching the optional run and event-type filters."""
    tail: deque[JournalEvent] = deque(maxlen=max(n, 0))
    for event in iter_journal(journal_path):
        if run_id is not None and not event.run_id.startswith(run_id):
            continue
        if event_type is not None and event.event_type != event_type:
            continue
        tail.append(event)
    return list(tail)


def journal_totals(events: Iterable[JournalEvent]) -> JournalTotals:
    """Sum run outcomes over `events`."""
    completed = failed = inserted = duplicates = saved = 0
    failures: dict[str, int] = {}
    last_failure: Optional[RunFailed] = None
    for event in events:
        metrics = event.metrics()
        if event.event_type == "RUN_COMPLETED":
            completed += 1
            inserted += metrics.inserted_count
            duplicates += metrics.duplicate_count
        elif event.event_type == "RUN_FAILED":
            failed += 1
            failures[metrics.kind] = failures.get(metrics.kind, 0) + 1
            last_failure = metrics
        elif event.event_type == "BLOB_SAVED" and metrics.outcome == "saved":
            saved += 1
    return JournalTotals(
        runs_completed=completed,
        runs_failed=failed,
        inserted=inserted,
        duplicates=duplicates,
        blobs_saved=saved,
        failures_by_kind=failures,
        last_failure=last_failure,
    )
