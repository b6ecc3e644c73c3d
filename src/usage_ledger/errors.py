"""Error taxonomy for the ingestion pipeline."""

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure categories used for logging, recording and retry decisions."""

    FETCH_ERROR = "FETCH_ERROR"
    CSV_PARSE_ERROR = "CSV_PARSE_ERROR"
    NORMALIZE_ERROR = "NORMALIZE_ERROR"
    DB_CONFLICT = "DB_CONFLICT"
    IO_ERROR = "IO_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"


RETRYABLE_KINDS = frozenset({ErrorKind.FETCH_ERROR, ErrorKind.IO_ERROR, ErrorKind.DB_CONFLICT})


class IngestError(Exception):
    """Exception raised for classified ingestion failures.

    Attributes:
        kind: Failure category
        message: Human-readable message
        details: Optional structured context (status codes, ids)
    """

    def __init__(self, kind: ErrorKind, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.details = details or {}

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    def to_dict(self) -> dict[str, str]:
        """Shape stored in failed ingestion metadata."""
        return {"kind": self.kind.value, "message": self.message}

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
