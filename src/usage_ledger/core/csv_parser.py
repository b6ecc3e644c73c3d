"""Tabular parser for usage CSV exports."""

from __future__ import annotations

import calendar
import csv
import io
import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from ..errors import ErrorKind, IngestError
from ..models.records import BillingPeriod

logger = logging.getLogger(__name__)

# Export header -> canonical row key. Lookups are case-insensitive.
HEADER_ALIASES: dict[str, str] = {
    "date": "date",
    "kind": "kind",
    "model": "model",
    "max mode": "max_mode",
    "max_mode": "max_mode",
    "input (w/ cache write)": "input_with_cache_write_tokens",
    "input_with_cache_write_tokens": "input_with_cache_write_tokens",
    "input (w/o cache write)": "input_without_cache_write_tokens",
    "input_without_cache_write_tokens": "input_without_cache_write_tokens",
    "cache read": "cache_read_tokens",
    "cache_read_tokens": "cache_read_tokens",
    "output tokens": "output_tokens",
    "output_tokens": "output_tokens",
    "total tokens": "total_tokens",
    "total_tokens": "total_tokens",
    "cost": "api_cost",
    "api cost": "api_cost",
    "api_cost": "api_cost",
    "cost to you": "cost_to_you",
    "cost to you (you)": "cost_to_you",
    "cost_to_you": "cost_to_you",
    "costtoyou": "cost_to_you",
}


@dataclass(frozen=True)
class UsageCsvPayload:
    rows: list[dict[str, str]] = field(default_factory=list)
    billing_period: Optional[BillingPeriod] = None


def canonical_header(header: str) -> str:
    return HEADER_ALIASES.get(header.strip().lower(), header.strip())


def month_bounds(day: date) -> BillingPeriod:
    """Expand a date to the first and last day of its calendar month."""
    last_day = calendar.monthrange(day.year, day.month)[1]
    return BillingPeriod(start=day.replace(day=1), end=day.replace(day=last_day))


def extract_billing_period(first_date: Optional[str]) -> Optional[BillingPeriod]:
    """Infer the reporting period from the first row's date (ISO date or datetime)."""
    if not first_date:
        return None
    try:
        parsed = date.fromisoformat(first_date.strip()[:10])
    except ValueError:
        logger.warning(f"Unparseable date in first row: {first_date!r}")
        return None
    return month_bounds(parsed)


def parse_usage_csv(data: bytes) -> UsageCsvPayload:
    """Parse raw export bytes into row dicts plus the inferred reporting period.

    Args:
        data: UTF-8 CSV bytes with a header row

    Returns:
        UsageCsvPayload (no billing period when there are zero data rows)

    Raises:
        IngestError: CSV_PARSE_ERROR for undecodable bytes, broken quoting or
            rows whose field count differs from the header
    """
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise IngestError(ErrorKind.CSV_PARSE_ERROR, f"export is not valid UTF-8: {e}") from e

    reader = csv.reader(io.StringIO(text, newline=""), strict=True)
    header: Optional[list[str]] = None
    rows: list[dict[str, str]] = []

    try:
        for line in reader:
            cells = [cell.strip() for cell in line]
            if not any(cells):
                continue
            if header is None:
                header = [canonical_header(cell) for cell in cells]
                continue
            if len(cells) != len(header):
                raise IngestError(
                    ErrorKind.CSV_PARSE_ERROR,
                    f"row {reader.line_num} has {len(cells)} fields, header has {len(header)}",
                    details={"line": reader.line_num},
                )
            rows.append(dict(zip(header, cells)))
    except csv.Error as e:
        raise IngestError(
            ErrorKind.CSV_PARSE_ERROR,
            f"malformed CSV near line {reader.line_num}: {e}",
            details={"line": reader.line_num},
        ) from e

    if not rows:
        return UsageCsvPayload(rows=[], billing_period=None)

    billing_period = extract_billing_period(rows[0].get("date"))
    logger.debug(f"Parsed {len(rows)} CSV rows (period={billing_period})")
    return UsageCsvPayload(rows=rows, billing_period=billing_period)
