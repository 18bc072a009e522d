"""Typer-based operator CLI for Capture Bridge."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .backup import promote_daily, run_backup
from .config import CaptureBridgeConfig
from .errors import ConfigError, InvalidTransitionError
from .events import EventWriter, read_events_tail
from .export.store import LocalVaultStore
from .export.writer import AtomicExportWriter
from .ledger import StagingLedger
from .models.capture import CaptureStatus
from .paths import BridgePaths
from .pipeline import CapturePipeline
from .recovery import recover

app = typer.Typer(
    name="capture-bridge",
    help="Capture Bridge - exactly-once capture of voice memos and email into a Markdown vault",
    add_completion=False,
)

console = Console()

VAULT_HELP = "Path to vault directory (default: .capture-bridge/config.toml, CAPTURE_BRIDGE_VAULT env or ./capture_vault)"

STATUS_STYLES = {
    CaptureStatus.STAGED: "cyan",
    CaptureStatus.PROCESSED: "blue",
    CaptureStatus.EXPORTED: "green",
    CaptureStatus.EXPORTED_DUPLICATE: "dim",
    CaptureStatus.EXPORTED_PLACEHOLDER: "yellow",
    CaptureStatus.QUARANTINED: "red",
}


@app.callback()
def main_callback(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=debug, show_path=False)],
        force=True,
    )


def _load_config(vault_path: Optional[str]) -> CaptureBridgeConfig:
    try:
        return CaptureBridgeConfig.from_env(cli_vault_path=vault_path)
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        raise typer.Exit(code=1)


def _open_ledger(vault_path: Optional[str]) -> tuple[CaptureBridgeConfig, BridgePaths, StagingLedger]:
    config = _load_config(vault_path)
    paths = BridgePaths.from_config(config)
    if not paths.ledger_db.exists():
        console.print(f"[red]Error: Vault not initialized at {config.vault_path}[/red]")
        console.print("[yellow]Run 'capture-bridge init' first[/yellow]")
        raise typer.Exit(code=1)
    return config, paths, StagingLedger(paths.ledger_db)


def _status_text(status: CaptureStatus) -> str:
    style = STATUS_STYLES.get(status, "white")
    return f"[{style}]{status.value}[/{style}]"


@app.command()
def init(
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Create the vault inbox, state directory and ledger.

    Idempotent: existing data is never touched.
    """
    config = _load_config(vault_path)
    paths = BridgePaths.from_config(config)

    created = [d for d in paths.get_all_directories() if not d.exists()]
    paths.ensure()
    if created:
        console.print(f"[green]+[/green] Created {len(created)} directories")
    else:
        console.print("[dim]All directories already exist[/dim]")

    existed = paths.ledger_db.exists()
    StagingLedger(paths.ledger_db).close()
    if existed:
        console.print(f"[dim]Ledger already exists: {paths.ledger_db}[/dim]")
    else:
        console.print(f"[green]+[/green] Created ledger: {paths.ledger_db}")

    console.print(f"[bold green]Vault ready at[/bold green] {paths.root}")


@app.command()
def status(
    capture_id: str = typer.Argument(..., help="Capture ID (ULID)"),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Show one capture with its export record and error history."""
    _, _, ledger = _open_ledger(vault_path)
    with ledger:
        capture = ledger.get(capture_id)
        if capture is None:
            console.print(f"[red]Capture not found: {capture_id}[/red]")
            raise typer.Exit(code=1)

        console.print(f"[bold]Capture {capture.id}[/bold]")
        console.print(f"  [dim]Source:[/dim]       {capture.source.value}")
        console.print(f"  [dim]External ID:[/dim]  {capture.external_id}")
        console.print(f"  [dim]Status:[/dim]       {_status_text(capture.status)}")
        console.print(f"  [dim]Identity:[/dim]     {capture.content_identity or '-'}")
        console.print(f"  [dim]Attempts:[/dim]     {capture.attempt_count}")
        console.print(f"  [dim]Created:[/dim]      {capture.created_at.isoformat()}")
        console.print(f"  [dim]Updated:[/dim]      {capture.updated_at.isoformat()}")
        if "quarantine_reason" in capture.source_metadata:
            console.print(f"  [dim]Quarantined:[/dim]  {capture.source_metadata['quarantine_reason']}")

        record = ledger.export_record_for(capture.id)
        if record is not None:
            console.print(
                f"  [dim]Export:[/dim]       {record.mode.value} -> {record.destination_path or '-'}"
            )

        errors = ledger.error_events_for(capture.id)
        if errors:
            table = Table(title="Error events")
            table.add_column("When (UTC)", style="cyan", no_wrap=True)
            table.add_column("Stage")
            table.add_column("Kind", style="magenta")
            table.add_column("#", justify="right")
            table.add_column("Escalation", style="yellow")
            table.add_column("Message", style="dim")
            for event in errors:
                table.add_row(
                    event.created_at.strftime("%Y-%m-%d %H:%M:%S"),
                    event.stage.value,
                    event.error_kind.value,
                    str(event.attempt_number),
                    event.escalation_action.value if event.escalation_action else "-",
                    event.message[:60],
                )
            console.print(table)


@app.command("list")
def list_captures(
    status_filter: Optional[CaptureStatus] = typer.Option(None, "--status", "-s", help="Only show this status"),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """List captures, optionally filtered by status."""
    _, _, ledger = _open_ledger(vault_path)
    with ledger:
        captures = ledger.list_by_status(status_filter) if status_filter else ledger.list_all()
        counts = ledger.count_by_status()

    if not captures:
        console.print("[dim]No captures[/dim]")
        return

    table = Table(title=f"{len(captures)} capture(s)")
    table.add_column("ID", style="yellow", no_wrap=True)
    table.add_column("Source")
    table.add_column("Status")
    table.add_column("External ID", style="dim")
    table.add_column("Created (UTC)", style="cyan", no_wrap=True)
    for capture in captures:
        table.add_row(
            capture.id,
            capture.source.value,
            _status_text(capture.status),
            capture.external_id,
            capture.created_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    console.print(
        "  ".join(f"{s.value}={n}" for s, n in counts.items() if n),
        style="dim",
    )


@app.command()
def quarantined(
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """List captures waiting for manual action."""
    _, _, ledger = _open_ledger(vault_path)
    with ledger:
        captures = ledger.list_quarantined()

    if not captures:
        console.print("[green]No quarantined captures[/green]")
        return

    table = Table(title=f"{len(captures)} quarantined capture(s)")
    table.add_column("ID", style="yellow", no_wrap=True)
    table.add_column("Source")
    table.add_column("Reason", style="red")
    for capture in captures:
        table.add_row(capture.id, capture.source.value, str(capture.source_metadata.get("quarantine_reason", "-")))
    console.print(table)
    console.print("[dim]Release one with: capture-bridge reset <id>[/dim]")


@app.command()
def dlq(
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Show the dead-letter queue: captures whose processing failed for good."""
    _, _, ledger = _open_ledger(vault_path)
    with ledger:
        entries = ledger.list_dead_lettered()

    if not entries:
        console.print("[green]Dead-letter queue is empty[/green]")
        return

    table = Table(title=f"{len(entries)} dead-lettered capture(s)")
    table.add_column("ID", style="yellow", no_wrap=True)
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Kind", style="magenta")
    table.add_column("Escalation")
    table.add_column("Message", style="dim")
    for entry in entries:
        table.add_row(
            entry.capture.id,
            _status_text(entry.capture.status),
            entry.event.stage.value,
            entry.event.error_kind.value,
            entry.event.escalation_action.value if entry.event.escalation_action else "-",
            entry.event.message[:60],
        )
    console.print(table)


@app.command()
def reset(
    capture_id: str = typer.Argument(..., help="Capture ID (ULID)"),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Release a quarantined capture back to staged with a fresh retry budget."""
    _, paths, ledger = _open_ledger(vault_path)
    with ledger:
        if ledger.get(capture_id) is None:
            console.print(f"[red]Capture not found: {capture_id}[/red]")
            raise typer.Exit(code=1)
        try:
            capture = ledger.reset_to_pending(capture_id)
        except InvalidTransitionError as e:
            console.print(f"[red]Cannot reset: {e}[/red]")
            raise typer.Exit(code=1)

    EventWriter(paths.events_file).emit("item_reset", {"status": capture.status.value}, capture_id=capture_id)
    console.print(f"[green]Reset[/green] {capture_id} -> {_status_text(capture.status)}")


@app.command()
def reconcile(
    resume: bool = typer.Option(
        False, "--resume", help="Also process pending captures with the built-in email normalizer"
    ),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Run crash recovery: clean temp files and reconcile orphaned notes."""
    config, paths, ledger = _open_ledger(vault_path)
    stale_after = timedelta(minutes=config.stale_after_minutes)

    if resume:
        ledger.close()
        pipeline = CapturePipeline.from_paths(paths, config)
        pipeline.shutdown.install_signal_handlers()
        try:
            result = recover(
                pipeline.ledger, pipeline.writer, pipeline=pipeline, events=pipeline.events, stale_after=stale_after
            )
        finally:
            pipeline.close()
    else:
        events = EventWriter(paths.events_file)
        with ledger:
            writer = AtomicExportWriter(
                LocalVaultStore(paths.root), ledger, events, inbox_dir=paths.inbox.relative_to(paths.root)
            )
            result = recover(ledger, writer, events=events, stale_after=stale_after)

    console.print(f"[green]+[/green] Temp files removed: {result.temp_files_removed}")
    console.print(f"[green]+[/green] Pending captures:   {result.pending_found}")
    console.print(f"[green]+[/green] Reconciled:         {result.reconciled}")
    if result.quarantined_missing:
        console.print(f"[yellow]![/yellow] Missing audio:      {result.quarantined_missing} quarantined")
    if result.stale:
        console.print(f"[yellow]![/yellow] Stale captures:     {result.stale}")
    if result.reconcile_errors:
        console.print(f"[red]x[/red] Reconcile errors:   {result.reconcile_errors}")
    if result.resumed is not None:
        summary = result.resumed
        console.print(
            f"[green]+[/green] Resumed: exported={summary.exported} duplicates={summary.exported_duplicate} "
            f"placeholders={summary.placeholders} quarantined={summary.quarantined} deferred={summary.deferred}"
        )


@app.command()
def backup(
    promote: bool = typer.Option(False, "--promote", help="Also promote today's snapshot to the daily set"),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Snapshot the ledger, verify the copy and prune old snapshots."""
    config, paths, ledger = _open_ledger(vault_path)
    events = EventWriter(paths.events_file)
    with ledger:
        result = run_backup(ledger, paths.backups_dir, keep=config.backup_keep_hourly, events=events)

    if result.verification.ok:
        console.print(f"[green]+[/green] Backup written: {result.path} ({result.size_bytes} bytes)")
    else:
        console.print(f"[red]x[/red] Backup failed verification: {result.path}")
        for problem in result.verification.problems:
            console.print(f"  [dim]{problem}[/dim]")
        console.print(f"[yellow]Status: {result.status.value} ({result.consecutive_failures} consecutive)[/yellow]")
    if result.pruned:
        console.print(f"[dim]Pruned {len(result.pruned)} old snapshot(s)[/dim]")

    if promote:
        daily = promote_daily(paths.backups_dir, datetime.now(timezone.utc), keep=config.backup_keep_daily)
        if daily is not None:
            console.print(f"[green]+[/green] Daily snapshot: {daily}")
        else:
            console.print("[yellow]No verified snapshot to promote today[/yellow]")

    if not result.verification.ok:
        raise typer.Exit(code=1)


events_app = typer.Typer(help="Event log commands")
app.add_typer(events_app, name="events")


@events_app.command("tail")
def events_tail(
    n: int = typer.Option(20, "--n", help="Number of recent events to display"),
    full: bool = typer.Option(False, "--full", help="Show full payloads with JSON pretty-print"),
    vault_path: str = typer.Option(None, "--vault", "-v", help=VAULT_HELP),
):
    """Display the last N pipeline events."""
    config = _load_config(vault_path)
    paths = BridgePaths.from_config(config)
    events = read_events_tail(paths.events_file, n=n)

    if not events:
        console.print("[dim]No events[/dim]")
        return

    if full:
        for i, event in enumerate(events, 1):
            console.print(f"[cyan]Event {i}/{len(events)}[/cyan]")
            console.print(f"  [dim]Event ID:[/dim]    {event.event_id}")
            console.print(f"  [dim]Timestamp:[/dim]   {event.ts.strftime('%Y-%m-%d %H:%M:%S')} UTC")
            console.print(f"  [dim]Event Type:[/dim]  [magenta]{event.event_type}[/magenta]")
            console.print(f"  [dim]Capture ID:[/dim]  {event.capture_id or '-'}")
            for line in json.dumps(event.payload, indent=2).split("\n"):
                console.print(f"    {line}")
            console.print()
        return

    table = Table(title=f"Last {len(events)} event(s)")
    table.add_column("Timestamp (UTC)", style="cyan", no_wrap=True)
    table.add_column("Event Type", style="magenta")
    table.add_column("Capture ID", style="yellow")
    table.add_column("Payload", style="dim")
    for event in events:
        payload_str = str(event.payload)
        if len(payload_str) > 60:
            payload_str = payload_str[:57] + "..."
        table.add_row(
            event.ts.strftime("%Y-%m-%d %H:%M:%S"),
            event.event_type,
            event.capture_id[:10] + "..." if event.capture_id else "-",
            payload_str,
        )
    console.print(table)


@app.command()
def version():
    """Show Capture Bridge version."""
    from . import __version__
    console.print(f"Capture Bridge v{__version__}")


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
