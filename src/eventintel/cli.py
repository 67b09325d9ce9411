"""CLI entry point using Typer."""

import json
from collections import Counter
from datetime import datetime
from pathlib import Path

import structlog
import typer
from rich.console import Console
from rich.table import Table

from eventintel.config import settings

app = typer.Typer(
    name="eventintel",
    help="Event Intelligence - idempotent event ingestion, normalization and aggregation.",
)
console = Console()

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.JSONRenderer() if settings.log_json else structlog.dev.ConsoleRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
)


def _build_store():  # type: ignore[no-untyped-def]
    from eventintel.ingest.store import SqlEventStore

    return SqlEventStore()


def _build_processor():  # type: ignore[no-untyped-def]
    from eventintel.ingest.processor import EventProcessor

    return EventProcessor(store=_build_store())


def _parse_date_option(value: str | None, name: str) -> datetime | None:
    from eventintel.ingest.normalize import convert_timestamp

    if not value:
        return None
    parsed = convert_timestamp(value)
    if parsed is None:
        raise typer.BadParameter(f"Unrecognized date: {value}", param_hint=name)
    return parsed


def _print_outcome(outcome) -> None:  # type: ignore[no-untyped-def]
    style = {"success": "green", "duplicate": "yellow"}.get(outcome.kind.value, "red")
    console.print(f"[bold {style}]{outcome.kind.value}[/bold {style}] {outcome.message}")
    console.print_json(json.dumps(outcome.to_dict()))


@app.command()
def init_db() -> None:
    """Create tables (local development; use Alembic in production)."""
    from eventintel.db import init_db as create_tables

    try:
        create_tables()
        console.print("[bold green]Tables created.[/bold green]")
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)


@app.command()
def ingest(
    source: str = typer.Argument(..., help="Producing client identifier"),
    payload_json: str = typer.Argument(..., help="Event payload as a JSON object"),
    simulate_failure: bool = typer.Option(False, "--simulate-failure", help="Inject a fault before commit"),
) -> None:
    """Process a single event."""
    try:
        payload = json.loads(payload_json)
    except json.JSONDecodeError as e:
        console.print(f"[bold red]Error:[/bold red] payload is not valid JSON: {e}")
        raise typer.Exit(1)

    outcome = _build_processor().process_event({"source": source, "payload": payload}, simulate_failure)
    _print_outcome(outcome)
    if outcome.kind.value in ("validation_error", "processing_error"):
        raise typer.Exit(1)


@app.command()
def ingest_file(path: str = typer.Argument(..., help="JSONL file of {source, payload} objects")) -> None:
    """Process every event in a JSON-lines file."""
    file_path = Path(path)
    if not file_path.exists():
        console.print(f"[bold red]Error:[/bold red] File not found: {path}")
        raise typer.Exit(1)

    processor = _build_processor()
    counts: Counter[str] = Counter()

    for line_no, line in enumerate(file_path.read_text().splitlines(), start=1):
        if not line.strip():
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            console.print(f"[yellow]Line {line_no}: invalid JSON, skipped[/yellow]")
            counts["unparseable"] += 1
            continue
        if not isinstance(record, dict):
            counts["unparseable"] += 1
            continue
        outcome = processor.process_event(
            {"source": record.get("source"), "payload": record.get("payload")},
            bool(record.get("simulateFailure", False)),
        )
        counts[outcome.kind.value] += 1

    table = Table(title="Ingest Results")
    table.add_column("Outcome", style="cyan")
    table.add_column("Count", style="green")
    for kind in ("success", "duplicate", "validation_error", "processing_error", "unparseable"):
        table.add_row(kind, str(counts.get(kind, 0)))
    console.print(table)


@app.command()
def stats() -> None:
    """Show processing statistics."""
    try:
        snapshot = _build_processor().get_statistics()
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    table = Table(title="Processing Statistics")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="green")
    table.add_row("Processed", str(snapshot.total_processed))
    table.add_row("Failed", str(snapshot.total_failed))
    table.add_row("Duplicates", str(snapshot.total_duplicates))
    table.add_row("Normalized", str(snapshot.total_normalized))
    console.print(table)


@app.command()
def aggregates(
    client_id: str | None = typer.Option(None, "--client-id", help="Only this client"),
    start: str | None = typer.Option(None, "--start", help="Earliest timestamp (inclusive)"),
    end: str | None = typer.Option(None, "--end", help="Latest timestamp (inclusive)"),
    by_client: bool = typer.Option(False, "--by-client", help="Group by client, largest total first"),
) -> None:
    """Show aggregate statistics over normalized events."""
    from eventintel.reports.aggregates import AggregateFilter, get_aggregates, get_aggregates_by_client

    aggregate_filter = AggregateFilter(
        client_id=client_id,
        start_date=_parse_date_option(start, "--start"),
        end_date=_parse_date_option(end, "--end"),
    )
    store = _build_store()
    try:
        if by_client:
            summaries = get_aggregates_by_client(store, aggregate_filter)
        else:
            summaries = get_aggregates(store, aggregate_filter)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if not summaries:
        console.print("[yellow]No matching events.[/yellow]")
        return

    table = Table(title="Aggregates")
    table.add_column("Group", style="cyan")
    table.add_column("Count", style="white")
    table.add_column("Total", style="green")
    table.add_column("Average", style="green")
    table.add_column("Min", style="white")
    table.add_column("Max", style="white")
    table.add_column("Metrics", style="magenta")
    for summary in summaries:
        row = summary.to_dict()
        table.add_row(
            row["group"],
            str(summary.count),
            str(summary.total_amount),
            str(summary.average_amount),
            str(summary.min_amount),
            str(summary.max_amount),
            ", ".join(summary.metrics),
        )
    console.print(table)


@app.command()
def raw_events(
    status: str | None = typer.Option(None, "--status"),
    source: str | None = typer.Option(None, "--source"),
    limit: int = typer.Option(settings.default_page_size, "--limit"),
    skip: int = typer.Option(0, "--skip"),
) -> None:
    """List raw events, newest first."""
    from eventintel.ingest.store import RawEventFilter

    rows, total = _build_store().list_raw_events(RawEventFilter(status=status, source=source, limit=limit, skip=skip))

    table = Table(title=f"Raw Events ({len(rows)} of {total})")
    table.add_column("ID", style="cyan")
    table.add_column("Source", style="white")
    table.add_column("Status", style="green")
    table.add_column("Received", style="white")
    table.add_column("Error", style="red")
    for row in rows:
        table.add_row(str(row.id), row.source, row.status, row.received_at.isoformat(), row.error_message or "")
    console.print(table)


@app.command()
def normalized_events(
    client_id: str | None = typer.Option(None, "--client-id"),
    limit: int = typer.Option(settings.default_page_size, "--limit"),
    skip: int = typer.Option(0, "--skip"),
) -> None:
    """List normalized events, latest timestamp first."""
    from eventintel.ingest.store import NormalizedEventFilter

    rows, total = _build_store().list_normalized_events(
        NormalizedEventFilter(client_id=client_id, limit=limit, skip=skip)
    )

    table = Table(title=f"Normalized Events ({len(rows)} of {total})")
    table.add_column("ID", style="cyan")
    table.add_column("Client", style="white")
    table.add_column("Metric", style="magenta")
    table.add_column("Amount", style="green")
    table.add_column("Timestamp", style="white")
    for row in rows:
        table.add_row(
            str(row.id),
            row.client_id,
            row.metric or "",
            "" if row.amount is None else str(row.amount),
            row.timestamp.isoformat() if row.timestamp else "",
        )
    console.print(table)


@app.command()
def reconcile(
    older_than_minutes: int | None = typer.Option(None, "--older-than-minutes", help="Staleness threshold"),
) -> None:
    """Mark raw events stuck in processing as failed."""
    from eventintel.jobs.reconcile import reconcile_stale_processing

    try:
        result = reconcile_stale_processing(older_than_minutes)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        raise typer.Exit(1)

    if result["skipped_locked"]:
        console.print("[yellow]Another reconciliation is running; skipped.[/yellow]")
        return
    console.print(f"[green]Promoted {result['promoted']} of {result['scanned']} stale events to failed.[/green]")


if __name__ == "__main__":
    app()
