"""Delta selection against the latest durable capture of a period."""

from datetime import datetime
from typing import Optional

from ..models.records import CanonicalRecord


def compute_delta_events(
    records: list[CanonicalRecord],
    latest_captured_at: Optional[datetime],
) -> list[CanonicalRecord]:
    """Records captured strictly after `latest_captured_at` (all when unknown)."""
    if latest_captured_at is None:
        return list(records)
    return [record for record in records if record.captured_at > latest_captured_at]
