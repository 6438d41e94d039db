#!/usr/bin/env python3
"""
Command-line interface for the ingestion pipeline.

Runs the same registry and orchestrator as the API, synchronously, so large
files can be loaded from a shell without going through HTTP.
"""
import argparse
import os
import shutil
import sys
import uuid
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from bulkload.api.schemas.shared import TaskProgressResponse, parse_check_fields
from bulkload.core.config import settings
from bulkload.core.logging_config import configure_logging
from bulkload.domain.ingest.decoder import detect_format
from bulkload.domain.ingest.decode_pool import shutdown_decode_pool
from bulkload.domain.ingest.errors import IngestionError
from bulkload.domain.ingest.orchestrator import IngestionOrchestrator, build_policy
from bulkload.domain.uploads.registry import IngestionRegistry, TaskStatus, UploadedFile


def print_task(console: Console, snapshot: TaskProgressResponse) -> None:
    """Render a task snapshot as a two-column table."""
    style = {"completed": "green", "error": "red"}.get(snapshot.status, "yellow")
    table = Table(title=f"Task {snapshot.task_id}")
    table.add_column("Field", style="dim")
    table.add_column("Value", style="white")
    table.add_row("Status", f"[{style}]{snapshot.status}[/{style}]")
    table.add_row("Target", f"{snapshot.database}.{snapshot.table}")
    table.add_row("Mode", snapshot.duplicate_mode)
    table.add_row("Progress", f"{snapshot.processed_rows}/{snapshot.total_rows} ({snapshot.percent}%)")
    table.add_row("Inserted", str(snapshot.inserted_rows))
    table.add_row("Updated", str(snapshot.updated_rows))
    table.add_row("Skipped", str(snapshot.skipped_rows))
    console.print(table)

    for entry in snapshot.errors:
        prefix = f"Batch {entry.batch}: " if entry.batch is not None else ""
        console.print(f"[red]{prefix}{entry.error}[/red]")


def cmd_ingest(args: argparse.Namespace, registry: IngestionRegistry, console: Console) -> int:
    source = os.path.abspath(args.path)
    if not os.path.isfile(source):
        console.print(f"[red]File not found: {args.path}[/red]")
        return 1
    try:
        detect_format(source)
        policy = build_policy(args.mode, parse_check_fields(args.fields), args.batch_size)
    except ValueError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    os.makedirs(settings.upload_dir, exist_ok=True)
    file_id = uuid.uuid4().hex
    storage_path = os.path.join(settings.upload_dir, f"{file_id}{os.path.splitext(source)[1].lower()}")
    shutil.copyfile(source, storage_path)

    record = registry.add_file(
        UploadedFile(
            id=file_id,
            original_name=os.path.basename(source),
            storage_path=storage_path,
            size_bytes=os.path.getsize(storage_path),
            uploaded_by=args.user,
        )
    )

    orchestrator = IngestionOrchestrator(registry)
    try:
        task = orchestrator.start(record.id, args.database, args.table, policy, connection_id=args.connection)
    except (IngestionError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    with console.status(f"[bold green]Ingesting {record.original_name}...", spinner="dots"):
        finished = orchestrator.run(task.id)

    if finished is None:
        console.print(f"[red]Task {task.id} disappeared[/red]")
        return 1
    print_task(console, TaskProgressResponse.from_task(finished))
    return 0 if finished.status == TaskStatus.COMPLETED else 1


def cmd_pending(args: argparse.Namespace, registry: IngestionRegistry, console: Console) -> int:
    records = registry.list_files(uploaded_by=args.user)
    if not records:
        console.print("[yellow]No pending files.[/yellow]")
        return 0

    table = Table(title="Pending Files")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="white")
    table.add_column("Size", justify="right")
    table.add_column("Status", style="white")
    table.add_column("Uploaded", style="dim")
    for record in records:
        table.add_row(
            record.id,
            record.original_name,
            f"{record.size_bytes / 1024:.1f} KB",
            record.status.value,
            record.uploaded_at.strftime("%Y-%m-%d %H:%M:%S"),
        )
    console.print(table)
    return 0


def cmd_progress(args: argparse.Namespace, registry: IngestionRegistry, console: Console) -> int:
    task = registry.get_task(args.task_id)
    if task is None:
        console.print(f"[red]Task {args.task_id} not found[/red]")
        return 1
    print_task(console, TaskProgressResponse.from_task(task))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m bulkload.cli",
        description="Bulk CSV/Excel ingestion into relational tables",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s ingest data.csv --database shop --table customers --mode update --fields '["email"]'
  %(prog)s pending
  %(prog)s progress 1718000000000
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ingest = subparsers.add_parser("ingest", help="Register a file and ingest it synchronously")
    ingest.add_argument("path", help="CSV or Excel file to load")
    ingest.add_argument("--database", required=True, help="Target database name")
    ingest.add_argument("--table", required=True, help="Target table name")
    ingest.add_argument("--connection", default=None, help="Connection id from CONNECTIONS (default server if omitted)")
    ingest.add_argument("--mode", choices=["skip", "update", "error"], default="skip", help="Duplicate handling (default: skip)")
    ingest.add_argument("--fields", default=None, help="Duplicate check fields as a JSON list or comma-separated names")
    ingest.add_argument("--batch-size", type=int, default=None, help="Rows per insert statement")
    ingest.add_argument("--user", default=None, help="Record the upload under this user id")

    pending = subparsers.add_parser("pending", help="List files that have not been ingested")
    pending.add_argument("--user", default=None, help="Only show files uploaded by this user id")

    progress = subparsers.add_parser("progress", help="Show the state of a task")
    progress.add_argument("task_id")

    return parser


COMMANDS = {
    "ingest": cmd_ingest,
    "pending": cmd_pending,
    "progress": cmd_progress,
}


def main(argv: Optional[List[str]] = None, registry: Optional[IngestionRegistry] = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(settings.log_level)
    console = Console()

    if registry is None:
        registry = IngestionRegistry(settings.registry_dir)
        # Only ingest writes; listing must not reset a live server's tasks
        registry.load(recover=args.command == "ingest")

    try:
        return COMMANDS[args.command](args, registry, console)
    finally:
        shutdown_decode_pool()


if __name__ == "__main__":
    sys.exit(main())
