"""Row normalizer: raw export rows -> CanonicalRecord.

Row normalization is total: malformed counters and costs degrade to zero or
absent, never to an exception. Only the structured envelope check can fail.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from ..errors import ErrorKind, IngestError
from ..models.records import BillingPeriod, CanonicalRecord
from .csv_parser import canonical_header, extract_billing_period

_CURRENCY_STRIP = re.compile(r"[^0-9.\-]")
_ACCOUNTING_NEGATIVE = re.compile(r"\(.*\)")

TOKEN_FIELDS = (
    "input_with_cache_write_tokens",
    "input_without_cache_write_tokens",
    "cache_read_tokens",
    "output_tokens",
)


def _coerce_int(value: Any) -> Optional[int]:
    """Parse an integer; None when the value is absent or not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    raw = str(value).strip().replace(",", "")
    if not raw:
        return None
    try:
        number = float(raw)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def parse_int_safe(value: Any) -> int:
    """Non-negative integer counter; anything unparseable becomes 0."""
    parsed = _coerce_int(value)
    if parsed is None or parsed < 0:
        return 0
    return parsed


def parse_currency_to_cents(value: Any) -> int:
    """Parse a currency amount to integer cents.

    Examples:
        "$1,234.56" -> 123456
        "1,234" -> 123400
        "0.009" -> 1
        "($2.00)" -> -200
    """
    if value is None or isinstance(value, bool):
        return 0
    raw = str(value).strip()
    if not raw:
        return 0
    negative = bool(_ACCOUNTING_NEGATIVE.search(raw))
    cleaned = _CURRENCY_STRIP.sub("", raw)
    if cleaned in ("", "-", ".", "-."):
        return 0
    try:
        amount = Decimal(cleaned)
    except InvalidOperation:
        return 0
    if not amount.is_finite():
        return 0
    cents = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    if negative and cents > 0:
        return -cents
    return cents


def _raw_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text if text.strip() else None


def _optional_label(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def normalize_row(
    row: dict[str, Any],
    *,
    captured_at: datetime,
    billing_period: Optional[BillingPeriod],
    source: str,
    raw_capture_id: Optional[int] = None,
) -> CanonicalRecord:
    """Normalize one raw row dict into a CanonicalRecord."""
    counters = {name: parse_int_safe(row.get(name)) for name in TOKEN_FIELDS}
    total = _coerce_int(row.get("total_tokens"))
    if total is None:
        total = sum(counters.values())

    api_cost = row.get("api_cost")
    cost_to_you = row.get("cost_to_you")
    model = row.get("model")

    return CanonicalRecord(
        captured_at=captured_at,
        billing_period_start=billing_period.start if billing_period else None,
        billing_period_end=billing_period.end if billing_period else None,
        model=str(model).strip() if model is not None else "",
        kind=_optional_label(row.get("kind")),
        max_mode=_optional_label(row.get("max_mode")),
        total_tokens=max(total, 0),
        api_cost_cents=parse_currency_to_cents(api_cost),
        api_cost_raw=_raw_text(api_cost),
        cost_to_you_cents=parse_currency_to_cents(cost_to_you),
        cost_to_you_raw=_raw_text(cost_to_you),
        source=source,
        raw_capture_id=raw_capture_id,
        **counters,
    )


def normalize_rows(
    rows: list[dict[str, Any]],
    *,
    captured_at: datetime,
    billing_period: Optional[BillingPeriod],
    source: str,
    raw_capture_id: Optional[int] = None,
) -> list[CanonicalRecord]:
    return [
        normalize_row(
            row,
            captured_at=captured_at,
            billing_period=billing_period,
            source=source,
            raw_capture_id=raw_capture_id,
        )
        for row in rows
    ]


class _StructuredEnvelope(BaseModel):
    rows: list[dict[str, Any]]
    billing_period: Optional[dict[str, Any]] = None


def _parse_date(value: Any) -> Optional[date]:
    if value is None:
        return None
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def unwrap_structured(value: Any) -> tuple[list[dict[str, Any]], Optional[BillingPeriod]]:
    """Validate a structured export `{"rows": [...], "billing_period": {...}}`.

    Row keys may use export headers ("Max Mode") or canonical names; they are
    returned canonicalized.

    Raises:
        IngestError: NORMALIZE_ERROR if the envelope is not a mapping with a rows list
    """
    try:
        envelope = _StructuredEnvelope.model_validate(value)
    except ValidationError as e:
        raise IngestError(
            ErrorKind.NORMALIZE_ERROR,
            f"structured export has an invalid envelope: {e.error_count()} error(s)",
        ) from e

    rows = [{canonical_header(str(k)): v for k, v in row.items()} for row in envelope.rows]

    billing_period: Optional[BillingPeriod] = None
    if envelope.billing_period:
        start = _parse_date(envelope.billing_period.get("start"))
        end = _parse_date(envelope.billing_period.get("end"))
        if start is not None and end is not None:
            billing_period = BillingPeriod(start=start, end=end)
    if billing_period is None and rows:
        first_date = rows[0].get("date")
        billing_period = extract_billing_period(str(first_date) if first_date is not None else None)
    return rows, billing_period
