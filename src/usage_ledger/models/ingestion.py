"""Pydantic models for ledger inputs and results."""

from datetime import date, datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class IngestMeta(BaseModel):
    """Run metadata handed to the event ledger alongside a batch."""

    ingested_at: datetime
    source: str
    content_hash: Optional[str] = None
    headers: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    logic_version: int = 1
    raw_capture_id: Optional[int] = None
    size: Optional[int] = None


class IngestResult(BaseModel):
    """Counts returned by EventLedger.ingest.

    inserted_count + duplicate_count always equals the batch length.
    """

    ingestion_id: int
    inserted_count: int = 0
    duplicate_count: int = 0
    row_hashes: list[str] = Field(default_factory=list)


class BlobSaveResult(BaseModel):
    outcome: Literal["saved", "duplicate"]
    capture_id: int
    content_hash: str


class TableState(BaseModel):
    """Whole-table digest for one reporting period."""

    table_hash: str
    billing_period_start: Optional[date] = None
    billing_period_end: Optional[date] = None
    total_rows_count: int = 0
