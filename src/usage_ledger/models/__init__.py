"""Pydantic models for Usage Ledger."""

from .ingestion import BlobSaveResult, IngestMeta, IngestResult, TableState
from .journal import (
    BlobSaved,
    BlobSkipped,
    JournalEvent,
    JournalEventType,
    JournalTotals,
    RetentionTrimmed,
    RunCompleted,
    RunFailed,
    RunStarted,
)
from .payload import ExportPayload, FetchResult, StructuredExport, TabularExport
from .records import BillingPeriod, CanonicalRecord

__all__ = [
    "BillingPeriod",
    "CanonicalRecord",
    # Ledger I/O
    "IngestMeta",
    "IngestResult",
    "BlobSaveResult",
    "TableState",
    # Payloads
    "ExportPayload",
    "FetchResult",
    "StructuredExport",
    "TabularExport",
    # Journal
    "JournalEvent",
    "JournalEventType",
    "JournalTotals",
    "RunStarted",
    "RunCompleted",
    "RunFailed",
    "BlobSaved",
    "BlobSkipped",
    "RetentionTrimmed",
]
