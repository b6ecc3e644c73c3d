"""Deterministic identity hashes for canonical records."""

from typing import Any

from ..hashing import stable_hash
from ..models.records import CanonicalRecord

# Bump only as an explicit migration: every prior identity becomes new.
LOGIC_VERSION = 1


def _iso_or_none(value) -> str | None:
    return value.isoformat() if value is not None else None


def business_fields(record: CanonicalRecord) -> dict[str, Any]:
    """Business projection of a record (no capture instant, no capture id)."""
    return {
        "model": record.model,
        "kind": record.kind,
        "max_mode": record.max_mode,
        "input_with_cache_write_tokens": record.input_with_cache_write_tokens,
        "input_without_cache_write_tokens": record.input_without_cache_write_tokens,
        "cache_read_tokens": record.cache_read_tokens,
        "output_tokens": record.output_tokens,
        "total_tokens": record.total_tokens,
        "api_cost_cents": record.api_cost_cents,
        "api_cost_raw": record.api_cost_raw,
        "cost_to_you_cents": record.cost_to_you_cents,
        "cost_to_you_raw": record.cost_to_you_raw,
    }


def compute_row_hash(record: CanonicalRecord, logic_version: int = LOGIC_VERSION) -> str:
    """Identity hash of a record under the given logic version."""
    return stable_hash(
        {
            "logic_version": logic_version,
            "billing_period_start": _iso_or_none(record.billing_period_start),
            "billing_period_end": _iso_or_none(record.billing_period_end),
            "source": record.source,
            **business_fields(record),
        }
    )
