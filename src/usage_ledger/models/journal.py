"""Pydantic models for run journal events.

Each event type carries its own payload model, so a journal line can be
checked and read back as typed run metrics.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator

JournalEventType = Literal[
    "RUN_STARTED",
    "RUN_COMPLETED",
    "RUN_FAILED",
    "BLOB_SAVED",
    "BLOB_SKIPPED",
    "RETENTION_TRIMMED",
]


class RunStarted(BaseModel):
    source: str
    policy: str

    model_config = {"frozen": True}


class RunCompleted(BaseModel):
    ingestion_id: int
    inserted_count: int = Field(ge=0)
    duplicate_count: int = Field(ge=0)
    row_count: int = Field(ge=0)
    delta_count: int = Field(ge=0)
    table_changed: bool
    saved_blob: bool
    duration_ms: int = Field(ge=0)

    model_config = {"frozen": True}


class RunFailed(BaseModel):
    kind: str = Field(description="ErrorKind value")
    message: str
    stage: str = Field(description="Run stage the failure happened in")
    retryable: bool
    duration_ms: int = Field(ge=0)

    model_config = {"frozen": True}


class BlobSaved(BaseModel):
    capture_id: int
    outcome: Literal["saved", "duplicate"]
    reason: str

    model_config = {"frozen": True}


class BlobSkipped(BaseModel):
    reason: str

    model_config = {"frozen": True}


class RetentionTrimmed(BaseModel):
    deleted: int = Field(ge=0)
    keep: int

    model_config = {"frozen": True}


JournalPayload = RunStarted | RunCompleted | RunFailed | BlobSaved | BlobSkipped | RetentionTrimmed

PAYLOAD_MODELS: dict[str, type[BaseModel]] = {
    "RUN_STARTED": RunStarted,
    "RUN_COMPLETED": RunCompleted,
    "RUN_FAILED": RunFailed,
    "BLOB_SAVED": BlobSaved,
    "BLOB_SKIPPED": BlobSkipped,
    "RETENTION_TRIMMED": RetentionTrimmed,
}

EVENT_TYPES: dict[type[BaseModel], str] = {model: event_type for event_type, model in PAYLOAD_MODELS.items()}


class JournalEvent(BaseModel):
    """One line of the run journal.

    The payload is stored as plain JSON but must match the model registered
    for `event_type`.
    """

    event_id: str = Field(description="Unique event identifier (uuid4)")
    run_id: str = Field(description="Run identifier shared by all events of one run")
    ts: datetime = Field(description="Event timestamp (UTC)")
    event_type: JournalEventType
    payload: dict = Field(default_factory=dict)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _payload_matches_type(self) -> "JournalEvent":
        try:
            PAYLOAD_MODELS[self.event_type].model_validate(self.payload)
        except ValidationError as e:
            raise ValueError(f"payload does not match {self.event_type}: {e.error_count()} error(s)") from e
        return self

    def metrics(self) -> JournalPayload:
        """Payload parsed into the model for this event type."""
        return PAYLOAD_MODELS[self.event_type].model_validate(self.payload)


class JournalTotals(BaseModel):
    """Aggregate run metrics over a slice of the journal."""

    runs_completed: int = 0
    runs_failed: int = 0
    inserted: int = 0
    duplicates: int = 0
    blobs_saved: int = 0
    failures_by_kind: dict[str, int] = Field(default_factory=dict)
    last_failure: Optional[RunFailed] = None
