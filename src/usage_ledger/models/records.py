"""Pydantic models for canonical usage records."""

from datetime import date, datetime
from typing import Optional

from pydantic import BaseModel, Field


class BillingPeriod(BaseModel):
    """Reporting period bounds (calendar dates, inclusive)."""

    start: date
    end: date

    model_config = {"frozen": True}


class CanonicalRecord(BaseModel):
    """One normalized usage fact.

    Built by the row normalizer and hashed into a ledger event identity.
    `captured_at` and `raw_capture_id` are provenance only and never part of
    the identity.
    """

    captured_at: datetime = Field(description="Instant the export containing this row was fetched")
    billing_period_start: Optional[date] = Field(default=None)
    billing_period_end: Optional[date] = Field(default=None)
    model: str = Field(default="")
    kind: Optional[str] = Field(default=None)
    max_mode: Optional[str] = Field(default=None)
    input_with_cache_write_tokens: int = Field(default=0, ge=0)
    input_without_cache_write_tokens: int = Field(default=0, ge=0)
    cache_read_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)
    api_cost_cents: int = Field(default=0)
    api_cost_raw: Optional[str] = Field(default=None, description="Cost text exactly as exported")
    cost_to_you_cents: int = Field(default=0)
    cost_to_you_raw: Optional[str] = Field(default=None, description="Cost text exactly as exported")
    source: str = Field(description="Source tag, e.g. usage_csv")
    raw_capture_id: Optional[int] = Field(default=None)

    model_config = {"frozen": True}
