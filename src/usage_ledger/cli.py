"""Typer-based CLI for Usage Ledger."""

import json
import logging
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .config import LedgerConfig
from .errors import IngestError
from .journal import journal_totals, read_journal_tail
from .models.journal import PAYLOAD_MODELS
from .orchestrator import RunResult, run_once
from .store import db as dbmod
from .store.blob_ledger import BlobLedger
from .store.queries import list_ingestions, summarize
from .trigger import InProcessTrigger, RetryPolicy

app = typer.Typer(
    name="usage-ledger",
    help="Usage Ledger - idempotent ingestion of usage exports",
    add_completion=False,
)

console = Console()


@app.callback()
def main(
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug logging",
    ),
):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_config(**overrides) -> LedgerConfig:
    try:
        return LedgerConfig.load(**overrides)
    except IngestError as e:
        _fail(e)


def _fail(error: IngestError) -> None:
    console.print(f"[red]Error ({error.kind.value}):[/red] {escape(error.message)}")
    raise typer.Exit(code=1)


def _print_result(result: RunResult) -> None:
    console.print(f"[green]Ingestion {result.ingestion_id} complete[/green]")
    console.print(f"  Rows:        {result.row_count}")
    console.print(f"  Inserted:    {result.inserted_count}")
    console.print(f"  Duplicates:  {result.duplicate_count}")
    console.print(f"  Delta:       {result.delta_count}")
    changed = "[yellow]changed[/yellow]" if result.table_changed else "[dim]unchanged[/dim]"
    console.print(f"  Table:       {result.table_hash[:12]} ({changed})")
    blob = "[green]saved[/green]" if result.saved_blob else "[dim]not saved[/dim]"
    console.print(f"  Raw capture: {blob} ({result.blob_reason})")
    console.print(f"  Duration:    {result.duration_ms} ms")


def _one_run(config: LedgerConfig, *, retry: bool) -> RunResult:
    policy = RetryPolicy(
        max_attempts=config.retry_attempts if retry else 1,
        base_delay_seconds=config.retry_base_delay_seconds,
    )
    trigger = InProcessTrigger(lambda: run_once(config), policy)
    return trigger.fire()


@app.command()
def init(
    db: Optional[Path] = typer.Option(
        None,
        "--db",
        help="SQLite database path (default: USAGE_LEDGER_DB_PATH or state/usage_ledger.sqlite)",
    ),
):
    """Create the ledger database schema (idempotent)."""
    config = _load_config(db_path=db)
    try:
        created = dbmod.ensure_schema(config.db_path)
    except IngestError as e:
        _fail(e)
    if not created:
        console.print(f"[dim]Ledger already exists: {config.db_path}[/dim]")
    else:
        console.print(f"[green]+[/green] Created ledger: {config.db_path}")


@app.command()
def run(
    url: Optional[str] = typer.Option(None, "--url", help="Export URL to download"),
    file: Optional[Path] = typer.Option(None, "--file", help="Local export file to ingest"),
    kind: Optional[str] = typer.Option(None, "--kind", help="Export kind: tabular or structured"),
    no_retry: bool = typer.Option(False, "--no-retry", help="Fail on the first error"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Fetch one export and ingest it."""
    if url and file:
        console.print("[red]Error: Cannot provide both --url and --file[/red]")
        raise typer.Exit(code=1)

    config = _load_config(export_url=url, export_file=file, export_kind=kind, db_path=db)
    try:
        result = _one_run(config, retry=not no_retry)
    except IngestError as e:
        _fail(e)
    _print_result(result)


@app.command()
def watch(
    interval: float = typer.Option(3600.0, "--interval", help="Seconds between runs"),
    runs: Optional[int] = typer.Option(None, "--runs", help="Stop after this many runs"),
    url: Optional[str] = typer.Option(None, "--url", help="Export URL to download"),
    file: Optional[Path] = typer.Option(None, "--file", help="Local export file to ingest"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Run ingestion repeatedly. Failed runs are reported and the loop continues."""
    config = _load_config(export_url=url, export_file=file, db_path=db)
    completed = 0
    try:
        while runs is None or completed < runs:
            try:
                _print_result(_one_run(config, retry=True))
            except IngestError as e:
                console.print(f"[red]Run failed ({e.kind.value}):[/red] {escape(e.message)}")
            completed += 1
            if runs is not None and completed >= runs:
                break
            time.sleep(interval)
    except KeyboardInterrupt:
        console.print("[yellow]Stopped[/yellow]")


@app.command()
def status(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recent ingestions to list"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Show ledger totals and recent ingestions."""
    config = _load_config(db_path=db)
    if not config.db_path.exists():
        console.print(f"[red]Error: Ledger not initialized at {config.db_path}[/red]")
        console.print("[yellow]Run 'usage-ledger init' first[/yellow]")
        raise typer.Exit(code=1)

    try:
        summary = summarize(config.db_path)
        ingestions = list_ingestions(config.db_path, limit=limit)
    except IngestError as e:
        _fail(e)
    console.print(f"[bold]Ledger:[/bold] {config.db_path}")
    console.print(f"  Events:       {summary.event_count}")
    console.print(f"  Raw captures: {summary.capture_count}")
    by_status = ", ".join(f"{k}={v}" for k, v in sorted(summary.ingestions_by_status.items())) or "none"
    console.print(f"  Ingestions:   {by_status}")

    if not ingestions:
        console.print("[dim]No ingestions yet[/dim]")
        return

    table = Table(title=f"Last {len(ingestions)} Ingestion(s)")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Ingested (UTC)", style="cyan", no_wrap=True)
    table.add_column("Status", style="magenta")
    table.add_column("Rows", justify="right")
    table.add_column("Linked", justify="right")
    table.add_column("Hash", style="dim")
    for record in ingestions:
        status_str = "[green]completed[/green]" if record.status == "completed" else "[red]failed[/red]"
        table.add_row(
            str(record.id),
            record.ingested_at.strftime("%Y-%m-%d %H:%M:%S"),
            status_str,
            str(record.metadata.get("row_count", "-")),
            str(record.linked_events),
            (record.content_hash or "-")[:12],
        )
    console.print(table)


@app.command()
def trim(
    keep: Optional[int] = typer.Option(None, "--keep", help="Raw captures to keep (default: blob_retention)"),
    db: Optional[Path] = typer.Option(None, "--db", help="SQLite database path"),
):
    """Delete raw captures beyond the retention limit."""
    config = _load_config(db_path=db)
    keep_count = config.blob_retention if keep is None else keep
    try:
        deleted = BlobLedger(config.db_path).trim_retention(keep_count)
    except IngestError as e:
        _fail(e)
    console.print(f"[green]Trimmed {deleted} raw capture(s)[/green], keeping newest {keep_count}")


@app.command()
def journal(
    n: int = typer.Option(20, "--n", "-n", help="Number of recent events to display"),
    run_id: Optional[str] = typer.Option(None, "--run", help="Only events of this run (id or prefix)"),
    event_type: Optional[str] = typer.Option(None, "--type", help="Only events of this type, e.g. RUN_FAILED"),
    full: bool = typer.Option(False, "--full", help="Show full payloads with JSON pretty-print"),
):
    """Display recent run journal events and their run totals."""
    config = _load_config()
    event_type = event_type.upper() if event_type else None
    if event_type is not None and event_type not in PAYLOAD_MODELS:
        console.print(f"[red]Error: Unknown event type {escape(event_type)}[/red]")
        raise typer.Exit(code=1)

    events = read_journal_tail(config.journal_path, n=n, run_id=run_id, event_type=event_type)
    if not events:
        console.print("[dim]No matching events in journal[/dim]")
        return

    if full:
        for i, event in enumerate(events, 1):
            console.print(f"[cyan]Event {i}/{len(events)}[/cyan] [magenta]{event.event_type}[/magenta]")
            console.print(f"  [dim]Run ID:[/dim]    {event.run_id}")
            console.print(f"  [dim]Timestamp:[/dim] {event.ts.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            for line in json.dumps(event.payload, indent=2).split("\n"):
                console.print(f"    {escape(line)}")
    else:
        table = Table(title=f"Last {len(events)} Journal Event(s)")
        table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
        table.add_column("Event Type", style="magenta")
        table.add_column("Run", style="yellow")
        table.add_column("Payload", style="dim")
        for event in events:
            payload_str = ", ".join(f"{k}={v}" for k, v in event.payload.items())
            if len(payload_str) > 60:
                payload_str = payload_str[:57] + "..."
            table.add_row(
                event.ts.strftime("%Y-%m-%d %H:%M:%S"), event.event_type, event.run_id[:8], escape(payload_str)
            )
        console.print(table)

    totals = journal_totals(events)
    console.print(
        f"Runs: {totals.runs_completed} completed, {totals.runs_failed} failed | "
        f"inserted={totals.inserted} duplicates={totals.duplicates} blobs_saved={totals.blobs_saved}"
    )
    if totals.failures_by_kind:
        kinds = ", ".join(f"{k}={v}" for k, v in sorted(totals.failures_by_kind.items()))
        console.print(f"[red]Failures:[/red] {kinds}")


if __name__ == "__main__":
    app()
