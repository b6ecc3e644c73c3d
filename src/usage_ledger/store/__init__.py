"""SQLite persistence for raw captures, ingestions and ledger events."""

from .blob_ledger import BlobLedger
from .event_ledger import EventLedger

__all__ = ["BlobLedger", "EventLedger"]
