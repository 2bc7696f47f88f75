"""CLI entry point for the form record sync pipeline.

Provides commands:
  - status: Record counts by upload status
  - list: Records not yet completed (pending, uploading, failed)
  - add: Store and enqueue a digitized form from a JSON manifest
  - upload: Recover interrupted uploads and drain the queue
  - retry: Re-run the whole pipeline for one record
  - remove: Abandon a record and delete its local copy
  - history: Status transition audit trail for one record
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Iterator, Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from formsync.config import SyncConfig, load_config
from formsync.database import LocalRecordStore
from formsync.exceptions import (
    AttemptInFlightError,
    RecordNotFoundError,
    RecordValidationError,
)
from formsync.manifest import load_manifest
from formsync.models import UploadStatus
from formsync.upload.backend import FilesystemBackend
from formsync.upload.broadcaster import StatusBroadcaster
from formsync.upload.orchestrator import UploadOrchestrator
from formsync.upload.progress import UploadProgressTracker
from formsync.upload.queue import UploadQueueCoordinator

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="Form sync - durable local-first upload of digitized forms",
    rich_markup_mode="rich",
)
console = Console()
err_console = Console(stderr=True)

STATUS_STYLES = {
    "pending": "yellow",
    "uploading": "blue",
    "completed": "green",
    "error": "red",
}

ConfigOption = Annotated[
    Optional[Path],
    typer.Option("--config", "-c", help="Path to a JSON config file"),
]
DbOption = Annotated[
    Optional[Path],
    typer.Option("--db", "-d", help="Path to the local record database"),
]
RemoteOption = Annotated[
    Optional[Path],
    typer.Option("--remote", "-r", help="Root directory of the remote backend"),
]


# ---------------------------------------------------------------------------
# Shared setup
# ---------------------------------------------------------------------------


def _setup_logging(level: str) -> None:
    """Route ``formsync`` log records through Rich on stderr."""
    package_logger = logging.getLogger("formsync")
    if not any(isinstance(h, RichHandler) for h in package_logger.handlers):
        package_logger.addHandler(
            RichHandler(console=err_console, show_path=False, rich_tracebacks=True)
        )
    package_logger.setLevel(level)


def _resolve_config(
    config_path: Path | None, db_path: Path | None, remote_root: Path | None
) -> SyncConfig:
    try:
        config = load_config(config_path)
    except (OSError, ValueError) as exc:
        console.print(f"[red]Error:[/red] Invalid configuration: {exc}")
        raise typer.Exit(code=1)

    if db_path is not None:
        config.db_path = db_path
    if remote_root is not None:
        config.remote_root = remote_root
    _setup_logging(config.log_level)
    return config


def _require_db(config: SyncConfig) -> None:
    if not config.db_path.exists():
        console.print(
            f"[yellow]Database not found:[/yellow] {config.db_path}\n"
            "Run [bold]formsync add manifest.json[/bold] first."
        )
        raise typer.Exit(code=1)


@dataclass
class Pipeline:
    """The wired-up pipeline components for one CLI invocation."""

    store: LocalRecordStore
    broadcaster: StatusBroadcaster
    backend: FilesystemBackend
    coordinator: UploadQueueCoordinator


@contextmanager
def _pipeline(config: SyncConfig) -> Iterator[Pipeline]:
    store = LocalRecordStore(config.db_path)
    broadcaster = StatusBroadcaster()
    backend = FilesystemBackend(config.remote_root, max_blob_bytes=config.max_blob_bytes)
    orchestrator = UploadOrchestrator(store, backend, broadcaster)
    coordinator = UploadQueueCoordinator(store, orchestrator, broadcaster, config)
    try:
        yield Pipeline(store, broadcaster, backend, coordinator)
    finally:
        coordinator.close()
        broadcaster.close()
        store.close()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def status(
    config_path: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Display record counts by upload status."""
    config = _resolve_config(config_path, db_path, None)
    _require_db(config)

    with LocalRecordStore(config.db_path) as store:
        counts = store.status_counts()

    console.print(Panel(f"Database: [bold]{config.db_path}[/bold]", title="Sync Status"))

    table = Table(title="Records by Status")
    table.add_column("Status", style="bold")
    table.add_column("Count", justify="right")
    for s in ("pending", "uploading", "error", "completed"):
        count = counts.get(s, 0)
        style = STATUS_STYLES[s]
        table.add_row(s, f"[{style}]{count}[/{style}]")
    console.print(table)
    console.print(f"\n[bold]Total records:[/bold] {sum(counts.values())}")


@app.command(name="list")
def list_cmd(
    config_path: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """List records that have not completed upload."""
    config = _resolve_config(config_path, db_path, None)
    _require_db(config)

    with LocalRecordStore(config.db_path) as store:
        records = [r for r in store.list() if r.upload_status != UploadStatus.COMPLETED]

    if not records:
        console.print("[green]No pending records.[/green]")
        return

    table = Table(title=f"Pending Records ({len(records)})")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="dim")
    for record in records:
        style = STATUS_STYLES.get(record.upload_status.value, "")
        table.add_row(
            record.id,
            record.payload.title,
            f"[{style}]{record.upload_status.value}[/{style}]",
            str(record.attempt_count),
            record.upload_error or "",
        )
    console.print(table)


@app.command()
def add(
    manifest: Annotated[
        Path,
        typer.Argument(help="JSON manifest describing the digitized form", exists=True),
    ],
    config_path: ConfigOption = None,
    db_path: DbOption = None,
    remote_root: RemoteOption = None,
) -> None:
    """Validate a digitized form and store it for upload."""
    config = _resolve_config(config_path, db_path, remote_root)

    try:
        record = load_manifest(manifest)
    except RecordValidationError as exc:
        console.print(f"[red]Invalid record:[/red] {exc}")
        raise typer.Exit(code=1)

    with _pipeline(config) as pipeline:
        try:
            stored = pipeline.coordinator.submit(record)
        except RecordValidationError as exc:
            console.print(f"[red]Invalid record:[/red] {exc}")
            raise typer.Exit(code=1)

    console.print(
        f"[green]Stored[/green] {stored.id} ({stored.payload.title})\n"
        "Run [bold]formsync upload[/bold] to send it to the remote backend."
    )


@app.command()
def upload(
    config_path: ConfigOption = None,
    db_path: DbOption = None,
    remote_root: RemoteOption = None,
    retry_rounds: Annotated[
        int,
        typer.Option("--retry-rounds", help="Extra backoff rounds for records that fail"),
    ] = 0,
) -> None:
    """Recover interrupted uploads, then upload every queued record."""
    config = _resolve_config(config_path, db_path, remote_root)
    _require_db(config)

    with _pipeline(config) as pipeline:
        recovery = pipeline.coordinator.resume()
        if recovery.interrupted:
            console.print(
                f"[yellow]Recovered {len(recovery.interrupted)} interrupted upload(s)[/yellow]"
            )

        queued = len(pipeline.coordinator.snapshot().queued)
        if queued == 0:
            console.print("[green]No records to upload.[/green]")
            return

        async def _run() -> None:
            await pipeline.coordinator.drain()
            if retry_rounds > 0:
                await pipeline.coordinator.retry_failed(max_rounds=retry_rounds)

        tracker = UploadProgressTracker(pipeline.broadcaster, total_records=queued, console=console)
        with tracker:
            asyncio.run(_run())

        stats = tracker.stats
        remaining = pipeline.coordinator.snapshot()

    console.print(
        f"\n[bold]Uploaded:[/bold] {stats['succeeded']}  "
        f"[bold]Failed attempts:[/bold] {stats['failed']}  "
        f"[bold]Still failing:[/bold] {remaining.failed}"
    )
    if remaining.failed:
        raise typer.Exit(code=1)


@app.command()
def retry(
    record_id: Annotated[str, typer.Argument(help="Local record id")],
    config_path: ConfigOption = None,
    db_path: DbOption = None,
    remote_root: RemoteOption = None,
) -> None:
    """Re-run the whole upload pipeline for one record."""
    config = _resolve_config(config_path, db_path, remote_root)
    _require_db(config)

    with _pipeline(config) as pipeline:
        try:
            document_id = asyncio.run(pipeline.coordinator.retry(record_id))
        except RecordNotFoundError as exc:
            console.print(f"[red]Error:[/red] {exc}")
            raise typer.Exit(code=1)

        if document_id is None:
            record = pipeline.store.find(record_id, with_blobs=False)
            reason = record.upload_error if record else "unknown error"
            console.print(f"[red]Upload failed:[/red] {reason}")
            raise typer.Exit(code=1)

    console.print(f"[green]Uploaded[/green] {record_id} -> document {document_id}")


@app.command()
def remove(
    record_id: Annotated[str, typer.Argument(help="Local record id")],
    config_path: ConfigOption = None,
    db_path: DbOption = None,
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation")] = False,
) -> None:
    """Abandon a record and delete its local copy (remote state is untouched)."""
    config = _resolve_config(config_path, db_path, None)
    _require_db(config)

    if not yes:
        typer.confirm(f"Remove {record_id} from the local store?", abort=True)

    with _pipeline(config) as pipeline:
        try:
            removed = pipeline.coordinator.cancel(record_id)
        except AttemptInFlightError as exc:
            console.print(f"[red]Error:[/red] {exc}")
            raise typer.Exit(code=1)

    if not removed:
        console.print(f"[yellow]Record not found:[/yellow] {record_id}")
        raise typer.Exit(code=1)
    console.print(f"[green]Removed[/green] {record_id}")


@app.command()
def history(
    record_id: Annotated[str, typer.Argument(help="Local record id")],
    config_path: ConfigOption = None,
    db_path: DbOption = None,
) -> None:
    """Show the status transition history of one record."""
    config = _resolve_config(config_path, db_path, None)
    _require_db(config)

    with LocalRecordStore(config.db_path) as store:
        record = store.find(record_id, with_blobs=False)
        entries = store.status_history(record_id)

    if record is None and not entries:
        console.print(f"[yellow]Record not found:[/yellow] {record_id}")
        raise typer.Exit(code=1)

    table = Table(title=f"Status History: {record_id}")
    table.add_column("Time", style="dim")
    table.add_column("From")
    table.add_column("To", style="bold")
    table.add_column("Error", style="red")
    for entry in entries:
        table.add_row(
            entry["timestamp"],
            entry["old_status"] or "",
            entry["new_status"] or "",
            entry["error_details"] or "",
        )
    console.print(table)

    if record is not None:
        console.print(
            f"[bold]Current:[/bold] {record.upload_status.value} "
            f"(attempts: {record.attempt_count}, last stage: {record.last_stage or '-'})"
        )


if __name__ == "__main__":
    app()
