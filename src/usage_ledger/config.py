"""Configuration management for Usage Ledger."""

import os
import tomllib
from pathlib import Path
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from .errors import ErrorKind, IngestError

ENV_PREFIX = "USAGE_LEDGER_"


def _find_repo_root(start_dir: Path) -> Path:
    """Find repository root by walking upward looking for .git or pyproject.toml."""
    current_dir = start_dir

    while True:
        if (current_dir / ".git").exists() or (current_dir / "pyproject.toml").exists():
            return current_dir

        parent_dir = current_dir.parent
        if parent_dir == current_dir:
            # No repo found, return original directory
            return start_dir

        current_dir = parent_dir


def _load_repo_config_data(repo_root: Path) -> Optional[dict]:
    """Load repo config data from .usage_ledger/config.toml if it exists."""
    config_file = repo_root / ".usage_ledger" / "config.toml"

    if not config_file.exists():
        return None

    try:
        with open(config_file, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise IngestError(ErrorKind.VALIDATION_ERROR, f"Malformed config file {config_file}: {e}") from e


# Config field -> (environment variable suffix, parser)
_ENV_FIELDS: dict[str, tuple[str, Any]] = {
    "db_path": ("DB_PATH", Path),
    "journal_path": ("JOURNAL_PATH", Path),
    "export_url": ("EXPORT_URL", str),
    "export_file": ("EXPORT_FILE", Path),
    "export_kind": ("EXPORT_KIND", str),
    "source": ("SOURCE", str),
    "logic_version": ("LOGIC_VERSION", int),
    "blob_policy": ("BLOB_POLICY", str),
    "blob_max_runs_between_saves": ("BLOB_WEEKLY_INTERVAL", int),
    "blob_retention": ("BLOB_RETENTION", int),
    "fetch_timeout_seconds": ("FETCH_TIMEOUT_SECONDS", float),
    "retry_attempts": ("RETRY_ATTEMPTS", int),
    "retry_base_delay_seconds": ("RETRY_BASE_DELAY_SECONDS", float),
    "auth_header": ("AUTH_HEADER", str),
}


class LedgerConfig(BaseModel):
    """Configuration for ingestion runs."""

    db_path: Path = Field(default=Path("state/usage_ledger.sqlite"))
    journal_path: Path = Field(default=Path("state/journal.jsonl"))
    export_url: Optional[str] = Field(default=None)
    export_file: Optional[Path] = Field(default=None)
    export_kind: Literal["tabular", "structured"] = Field(default="tabular")
    source: str = Field(default="usage_csv")
    logic_version: int = Field(default=1)

    # Raw capture storage
    blob_policy: Literal["weekly", "anomaly_only"] = Field(default="weekly")
    blob_max_runs_between_saves: Optional[int] = Field(default=None)
    blob_retention: int = Field(default=20)

    # Fetch and retry
    fetch_timeout_seconds: float = Field(default=60.0)
    retry_attempts: int = Field(default=3)
    retry_base_delay_seconds: float = Field(default=1.0)
    auth_header: Optional[str] = Field(default=None, description="Raw 'Name: value' header sent with the export request")

    model_config = {"frozen": False}

    @classmethod
    def load(cls, **overrides: Any) -> "LedgerConfig":
        """Resolve configuration with the following precedence:

        1. Explicit overrides (CLI options); None values are ignored
        2. USAGE_LEDGER_* environment variables
        3. Repo-local .usage_ledger/config.toml (walk upward from CWD)
        4. Defaults

        Relative paths from the repo config resolve against the repo root.

        Raises:
            IngestError: VALIDATION_ERROR for malformed config or env values
        """
        values: dict[str, Any] = {}

        repo_root = _find_repo_root(Path.cwd())
        repo_data = _load_repo_config_data(repo_root) or {}
        section = repo_data.get("ledger", repo_data)
        if isinstance(section, dict):
            for key in cls.model_fields:
                if key in section:
                    values[key] = section[key]
        for key in ("db_path", "journal_path", "export_file"):
            if key in values:
                path = Path(values[key]).expanduser()
                values[key] = path if path.is_absolute() else (repo_root / path)

        for key, (suffix, parser) in _ENV_FIELDS.items():
            raw = os.environ.get(ENV_PREFIX + suffix)
            if raw is None or raw.strip() == "":
                continue
            try:
                values[key] = parser(raw.strip())
            except ValueError as e:
                raise IngestError(ErrorKind.VALIDATION_ERROR, f"Invalid {ENV_PREFIX}{suffix}: {raw!r}") from e

        values.update({k: v for k, v in overrides.items() if v is not None})

        try:
            return cls(**values)
        except ValueError as e:
            raise IngestError(ErrorKind.VALIDATION_ERROR, f"Invalid configuration: {e}") from e

    def request_headers(self) -> dict[str, str]:
        if not self.auth_header:
            return {}
        name, sep, value = self.auth_header.partition(":")
        if not sep or not name.strip():
            raise IngestError(ErrorKind.VALIDATION_ERROR, "auth_header must look like 'Name: value'")
        return {name.strip(): value.strip()}

    def validate_for_run(self) -> None:
        """Fail fast on settings a run cannot work without.

        Raises:
            IngestError: VALIDATION_ERROR (not retried)
        """
        if not self.export_url and not self.export_file:
            raise IngestError(
                ErrorKind.VALIDATION_ERROR,
                "No export source configured. Set USAGE_LEDGER_EXPORT_URL, "
                "USAGE_LEDGER_EXPORT_FILE, or pass --url/--file.",
            )
        if self.logic_version < 1:
            raise IngestError(ErrorKind.VALIDATION_ERROR, "logic_version must be >= 1")
        if self.retry_attempts < 1:
            raise IngestError(ErrorKind.VALIDATION_ERROR, "retry_attempts must be >= 1")
        if self.blob_retention < 0:
            raise IngestError(ErrorKind.VALIDATION_ERROR, "blob_retention must be >= 0")
        if self.blob_max_runs_between_saves is not None and self.blob_max_runs_between_saves < 1:
            raise IngestError(ErrorKind.VALIDATION_ERROR, "blob interval must be >= 1")
        if self.fetch_timeout_seconds <= 0:
            raise IngestError(ErrorKind.VALIDATION_ERROR, "fetch_timeout_seconds must be > 0")
        self.request_headers()
