"""Raw capture storage policy.

Capture storage is an audit aid. Whether a run keeps its raw bytes depends
only on the policy config, the explicit policy state and the run outcome, so
a decision can be replayed in tests without process state.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Literal, Optional

BlobPolicyMode = Literal["weekly", "anomaly_only"]


@dataclass(frozen=True)
class BlobPolicyConfig:
    mode: BlobPolicyMode = "weekly"
    max_runs_between_saves: Optional[int] = None


@dataclass(frozen=True)
class BlobPolicyState:
    """What is known about previous captures when a run starts."""

    last_saved_at: Optional[datetime] = None
    runs_since_last_save: int = 0

    def advance(self, *, saved: bool, now: datetime) -> "BlobPolicyState":
        if saved:
            return BlobPolicyState(last_saved_at=now, runs_since_last_save=0)
        return BlobPolicyState(last_saved_at=self.last_saved_at, runs_since_last_save=self.runs_since_last_save + 1)


@dataclass(frozen=True)
class BlobDecision:
    should_save: bool
    reason: str


def iso_week_key(ts: datetime) -> str:
    year, week, _ = ts.isocalendar()
    return f"{year}-W{week:02d}"


def decide_cadence(config: BlobPolicyConfig, state: BlobPolicyState, *, now: datetime) -> BlobDecision:
    """Time-based part of the policy; needs nothing from the payload."""
    if config.mode == "anomaly_only":
        return BlobDecision(False, "policy:anomaly:healthy")
    if state.last_saved_at is None:
        return BlobDecision(True, "policy:weekly:first_run")
    if iso_week_key(now) != iso_week_key(state.last_saved_at):
        return BlobDecision(True, "policy:weekly:new_week")
    if config.max_runs_between_saves is not None and state.runs_since_last_save >= config.max_runs_between_saves:
        return BlobDecision(True, "policy:weekly:interval")
    return BlobDecision(False, "policy:weekly:skip")


def apply_anomaly(cadence: BlobDecision, *, row_count: Optional[int], failed: bool = False) -> BlobDecision:
    """Anomalies (parse failure, zero rows) always keep evidence."""
    if failed:
        return BlobDecision(True, "policy:anomaly:failure")
    if row_count == 0:
        return BlobDecision(True, "policy:anomaly:empty")
    return cadence


def decide_blob_save(
    config: BlobPolicyConfig,
    state: BlobPolicyState,
    *,
    now: datetime,
    row_count: Optional[int],
    failed: bool = False,
) -> BlobDecision:
    """Decide whether to persist this run's raw capture."""
    return apply_anomaly(decide_cadence(config, state, now=now), row_count=row_count, failed=failed)
