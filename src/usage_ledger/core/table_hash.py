"""Whole-table state digest for one reporting period."""

from ..hashing import stable_hash
from ..models.ingestion import TableState
from ..models.records import CanonicalRecord
from .row_hash import business_fields


def _sort_key(record: CanonicalRecord) -> tuple[str, int, int]:
    return (record.model, record.total_tokens, record.api_cost_cents)


def build_table_state(records: list[CanonicalRecord]) -> TableState:
    """Digest the multiset of business rows plus the period bounds.

    Input order does not matter; any field change, added row or removed row
    changes the digest.
    """
    ordered = sorted(records, key=_sort_key)
    first = ordered[0] if ordered else None
    period_start = first.billing_period_start if first else None
    period_end = first.billing_period_end if first else None

    view = {
        "billing_period": {
            "start": period_start.isoformat() if period_start else None,
            "end": period_end.isoformat() if period_end else None,
        },
        "rows": [business_fields(record) for record in ordered],
    }
    return TableState(
        table_hash=stable_hash(view),
        billing_period_start=period_start,
        billing_period_end=period_end,
        total_rows_count=len(records),
    )
