"""Pure pipeline stages: parse, normalize, hash, select."""

from .csv_parser import UsageCsvPayload, parse_usage_csv
from .delta import compute_delta_events
from .normalize import normalize_row, normalize_rows, unwrap_structured
from .row_hash import LOGIC_VERSION, compute_row_hash
from .table_hash import build_table_state

__all__ = [
    "LOGIC_VERSION",
    "UsageCsvPayload",
    "build_table_state",
    "compute_delta_events",
    "compute_row_hash",
    "normalize_row",
    "normalize_rows",
    "parse_usage_csv",
    "unwrap_structured",
]
