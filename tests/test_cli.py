"""Tests for the usage-ledger CLI."""

import os

import pytest
from typer.testing import CliRunner

from usage_ledger.cli import app
from usage_ledger.config import ENV_PREFIX
from usage_ledger.store.queries import count_events, list_ingestions

from conftest import DEFAULT_ROWS, build_csv

runner = CliRunner()


@pytest.fixture
def workspace(tmp_path, monkeypatch):
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key)
    (tmp_path / "pyproject.toml").write_text("[project]\nname = 'x'\n")
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("USAGE_LEDGER_DB_PATH", str(tmp_path / "ledger.sqlite"))
    monkeypatch.setenv("USAGE_LEDGER_JOURNAL_PATH", str(tmp_path / "journal.jsonl"))
    return tmp_path


def test_init_creates_database(workspace):
    result = runner.invoke(app, ["init"])
    assert result.exit_code == 0
    assert (workspace / "ledger.sqlite").exists()

    again = runner.invoke(app, ["init"])
    assert again.exit_code == 0
    assert "already exists" in again.stdout


def test_run_ingests_file(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS))

    result = runner.invoke(app, ["run", "--file", str(export)])

    assert result.exit_code == 0, result.stdout
    assert "Inserted:    4" in result.stdout
    assert count_events(workspace / "ledger.sqlite") == 4


def test_run_with_db_override(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS[:1]))
    other_db = workspace / "other.sqlite"

    result = runner.invoke(app, ["run", "--file", str(export), "--db", str(other_db)])

    assert result.exit_code == 0, result.stdout
    assert count_events(other_db) == 1


def test_run_failure_exits_nonzero(workspace):
    result = runner.invoke(app, ["run", "--file", str(workspace / "missing.csv"), "--no-retry"])
    assert result.exit_code == 1
    assert "FETCH_ERROR" in result.stdout


def test_run_parse_error_is_recorded(workspace):
    export = workspace / "broken.csv"
    export.write_bytes(b"Date,Model\n2025-02-01,gpt-5,extra\n")

    result = runner.invoke(app, ["run", "--file", str(export)])

    assert result.exit_code == 1
    assert "CSV_PARSE_ERROR" in result.stdout
    assert [i.status for i in list_ingestions(workspace / "ledger.sqlite")] == ["failed"]


def test_run_without_source(workspace):
    result = runner.invoke(app, ["run"])
    assert result.exit_code == 1
    assert "VALIDATION_ERROR" in result.stdout


def test_run_rejects_url_and_file(workspace):
    result = runner.invoke(app, ["run", "--url", "https://example.test/x.csv", "--file", "x.csv"])
    assert result.exit_code == 1


def test_status_and_journal(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS))
    runner.invoke(app, ["run", "--file", str(export)])

    status = runner.invoke(app, ["status"])
    assert status.exit_code == 0
    assert "Events:       4" in status.stdout
    assert "completed=1" in status.stdout

    journal = runner.invoke(app, ["journal", "-n", "5", "--full"])
    assert journal.exit_code == 0
    assert "RUN_COMPLETED" in journal.stdout


def test_status_without_database(workspace):
    result = runner.invoke(app, ["status"])
    assert result.exit_code == 1
    assert "not initialized" in result.stdout


def test_trim(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS))
    runner.invoke(app, ["run", "--file", str(export)])

    result = runner.invoke(app, ["trim", "--keep", "0"])
    assert result.exit_code == 0
    assert "Trimmed 1 raw capture(s)" in result.stdout


def test_watch_bounded_runs(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS))

    result = runner.invoke(app, ["watch", "--file", str(export), "--runs", "2", "--interval", "0"])

    assert result.exit_code == 0, result.stdout
    assert "Duplicates:  4" in result.stdout
    assert len(list_ingestions(workspace / "ledger.sqlite")) == 1


def test_journal_filters_by_type_and_prints_totals(workspace):
    export = workspace / "usage.csv"
    export.write_bytes(build_csv(DEFAULT_ROWS))
    runner.invoke(app, ["run", "--file", str(export)])
    runner.invoke(app, ["run", "--file", str(export)])

    result = runner.invoke(app, ["journal", "--type", "run_completed", "--full"])

    assert result.exit_code == 0, result.stdout
    assert "RUN_STARTED" not in result.stdout
    assert "2 completed, 0 failed" in result.stdout
    assert "inserted=4 duplicates=4" in result.stdout


def test_journal_rejects_unknown_type(workspace):
    result = runner.invoke(app, ["journal", "--type", "NOPE"])
    assert result.exit_code == 1
    assert "Unknown event type" in result.stdout
