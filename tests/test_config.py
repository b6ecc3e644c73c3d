"""Tests for configuration loading."""

from pathlib import Path

import pytest

from usage_ledger.config import ENV_PREFIX, LedgerConfig
from usage_ledger.errors import ErrorKind, IngestError


@pytest.fixture
def repo(tmp_path, monkeypatch):
    """Temporary repo root as CWD with no USAGE_LEDGER_* variables set."""
    import os

    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key)
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    monkeypatch.chdir(tmp_path)
    return tmp_path


def _write_repo_config(repo: Path, text: str) -> None:
    config_dir = repo / ".usage_ledger"
    config_dir.mkdir()
    (config_dir / "config.toml").write_text(text)


def test_defaults(repo):
    config = LedgerConfig.load()
    assert config.db_path == Path("state/usage_ledger.sqlite")
    assert config.source == "usage_csv"
    assert config.blob_policy == "weekly"
    assert config.blob_retention == 20
    assert config.retry_attempts == 3


def test_repo_config_resolves_relative_paths(repo):
    _write_repo_config(
        repo,
        '[ledger]\ndb_path = "data/ledger.sqlite"\nblob_policy = "anomaly_only"\nblob_retention = 5\n',
    )
    config = LedgerConfig.load()
    assert config.db_path == repo / "data" / "ledger.sqlite"
    assert config.blob_policy == "anomaly_only"
    assert config.blob_retention == 5


def test_repo_config_found_from_subdirectory(repo, monkeypatch):
    _write_repo_config(repo, 'source = "usage_json"\n')
    nested = repo / "a" / "b"
    nested.mkdir(parents=True)
    monkeypatch.chdir(nested)
    assert LedgerConfig.load().source == "usage_json"


def test_env_overrides_repo_config(repo, monkeypatch):
    _write_repo_config(repo, "[ledger]\nblob_retention = 5\n")
    monkeypatch.setenv("USAGE_LEDGER_BLOB_RETENTION", "7")
    monkeypatch.setenv("USAGE_LEDGER_EXPORT_URL", "https://example.test/export.csv")
    config = LedgerConfig.load()
    assert config.blob_retention == 7
    assert config.export_url == "https://example.test/export.csv"


def test_overrides_win_and_none_is_ignored(repo, monkeypatch):
    monkeypatch.setenv("USAGE_LEDGER_SOURCE", "from_env")
    config = LedgerConfig.load(source="from_cli", db_path=None)
    assert config.source == "from_cli"
    assert config.db_path == Path("state/usage_ledger.sqlite")


def test_invalid_env_value(repo, monkeypatch):
    monkeypatch.setenv("USAGE_LEDGER_BLOB_RETENTION", "many")
    with pytest.raises(IngestError) as exc_info:
        LedgerConfig.load()
    assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


def test_invalid_choice(repo, monkeypatch):
    monkeypatch.setenv("USAGE_LEDGER_BLOB_POLICY", "monthly")
    with pytest.raises(IngestError) as exc_info:
        LedgerConfig.load()
    assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


def test_malformed_repo_config(repo):
    _write_repo_config(repo, "this is = = not toml")
    with pytest.raises(IngestError) as exc_info:
        LedgerConfig.load()
    assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR


def test_validate_for_run_requires_source(repo):
    with pytest.raises(IngestError) as exc_info:
        LedgerConfig.load().validate_for_run()
    assert exc_info.value.kind == ErrorKind.VALIDATION_ERROR
    assert not exc_info.value.retryable

    LedgerConfig.load(export_file=repo / "usage.csv").validate_for_run()


def test_request_headers(repo):
    config = LedgerConfig.load(auth_header="Authorization: Bearer abc")
    assert config.request_headers() == {"Authorization": "Bearer abc"}

    with pytest.raises(IngestError):
        LedgerConfig.load(auth_header="no separator").request_headers()
