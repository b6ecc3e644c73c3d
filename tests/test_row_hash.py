"""Tests for record identity hashing."""

from datetime import date, datetime, timedelta, timezone

from usage_ledger.core.row_hash import LOGIC_VERSION, business_fields, compute_row_hash
from usage_ledger.models import CanonicalRecord

CAPTURED_AT = datetime(2025, 2, 10, 12, 0, tzinfo=timezone.utc)


def make_record(**overrides) -> CanonicalRecord:
    fields = {
        "captured_at": CAPTURED_AT,
        "billing_period_start": date(2025, 2, 1),
        "billing_period_end": date(2025, 2, 28),
        "model": "gpt-5",
        "kind": "Included",
        "max_mode": "No",
        "input_with_cache_write_tokens": 100,
        "input_without_cache_write_tokens": 200,
        "cache_read_tokens": 300,
        "output_tokens": 50,
        "total_tokens": 650,
        "api_cost_cents": 125,
        "api_cost_raw": "$1.25",
        "cost_to_you_cents": 0,
        "cost_to_you_raw": "$0.00",
        "source": "usage_csv",
    }
    fields.update(overrides)
    return CanonicalRecord(**fields)


def test_hash_is_deterministic_hex():
    row_hash = compute_row_hash(make_record())
    assert row_hash == compute_row_hash(make_record())
    assert len(row_hash) == 64
    int(row_hash, 16)


def test_capture_provenance_is_not_identity():
    base = compute_row_hash(make_record())
    assert compute_row_hash(make_record(captured_at=CAPTURED_AT + timedelta(days=3))) == base
    assert compute_row_hash(make_record(raw_capture_id=42)) == base


def test_business_field_changes_change_identity():
    base = compute_row_hash(make_record())
    assert compute_row_hash(make_record(output_tokens=51)) != base
    assert compute_row_hash(make_record(model="gpt-5-mini")) != base
    assert compute_row_hash(make_record(api_cost_raw="$1.250")) != base
    assert compute_row_hash(make_record(max_mode=None)) != base


def test_period_and_source_are_identity():
    base = compute_row_hash(make_record())
    assert compute_row_hash(make_record(billing_period_start=date(2025, 3, 1), billing_period_end=date(2025, 3, 31))) != base
    assert compute_row_hash(make_record(source="usage_json")) != base


def test_logic_version_partitions_identities():
    record = make_record()
    assert compute_row_hash(record) == compute_row_hash(record, LOGIC_VERSION)
    assert compute_row_hash(record, LOGIC_VERSION + 1) != compute_row_hash(record, LOGIC_VERSION)


def test_business_fields_excludes_provenance():
    fields = business_fields(make_record(raw_capture_id=3))
    assert "captured_at" not in fields
    assert "raw_capture_id" not in fields
    assert fields["total_tokens"] == 650
