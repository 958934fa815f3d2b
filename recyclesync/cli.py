"""Command line interface for recyclesync.

Runs sync passes, inspects and seeds the local draft cache, and serves the
records proxy.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Annotated, Optional

import cyclopts
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from recyclesync.config import LOG_FORMAT, Settings
from recyclesync.engine import SyncReport, record_identifier
from recyclesync.exceptions import SyncError
from recyclesync.local import (
    SqlLocalStore,
    SqlPendingAttachmentCache,
    create_session_factory,
)
from recyclesync.models import AttachmentState, DraftRecord, make_pending_ref, new_record_id
from recyclesync.oplog import SyncOperationLog
from recyclesync.status import SyncStatusStore
from recyclesync.strategy import create_sync_engine

app = cyclopts.App(name="recyclesync", help="Offline-first sync for waste item drafts")


def _get_console() -> Console:
    """Get a Rich console for output."""
    return Console()


def _load_settings() -> Settings:
    settings = Settings()
    logging.basicConfig(level=settings.log_level, format=LOG_FORMAT)
    return settings


def _report_table(report: SyncReport) -> Table:
    table = Table(title=f"Sync Report: {report.owner_id}", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Status", report.status)
    table.add_row("Synced", str(report.synced_count))
    table.add_row("Attachments repaired", str(report.attachments_repaired))
    table.add_row("Held back", str(len(report.held_back_ids)))
    table.add_row("Deferred", str(len(report.deferred_ids)))
    if report.remote_version is not None:
        table.add_row("Remote version", str(report.remote_version))
    table.add_row("Duration", f"{report.duration:.2f}s")
    for record_id, reason in report.failed.items():
        table.add_row("[red]Failed[/red]", f"{record_id}: {reason}")
    return table


@app.command
def sync(
    owner_id: Annotated[str, cyclopts.Parameter(help="Owner whose drafts are synced")],
):
    """Run one sync pass for an owner.

    Example:
        recyclesync sync household-42
    """
    console = _get_console()
    settings = _load_settings()

    if not settings.remote_configured:
        console.print(
            "[yellow]Remote store not configured. Set RECYCLESYNC_REMOTE_URL "
            "and RECYCLESYNC_REMOTE_TOKEN.[/yellow]"
        )
        return

    async def _run() -> SyncReport:
        engine = create_sync_engine(settings)
        try:
            return await engine.sync_all(owner_id)
        finally:
            engine.close()
            await engine.remote_store.close()

    try:
        report = asyncio.run(_run())
    except (SyncError, ValueError) as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        raise

    console.print(_report_table(report))
    if report.ok:
        console.print("[green]✓ Sync complete[/green]")
    else:
        console.print(f"[yellow]⚠ {len(report.failed)} records failed to sync[/yellow]")


@app.command
def status(
    owner_id: Annotated[str, cyclopts.Parameter(help="Owner to show status for")],
):
    """Show pending drafts, lockouts and recent sync failures for an owner.

    Example:
        recyclesync status household-42
    """
    console = _get_console()
    settings = _load_settings()

    session_factory = create_session_factory(settings.database_url)
    store = SqlLocalStore(session_factory)
    status_store = SyncStatusStore(
        session_factory,
        max_attempts=settings.max_failed_attempts,
        lockout_seconds=settings.lockout_seconds,
        max_lockout_seconds=settings.max_lockout_seconds,
        case_sensitive=True,
    )

    pending = asyncio.run(store.get_unsynced(owner_id))

    table = Table(title="Sync Status", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")
    table.add_row("Owner", owner_id)
    table.add_row("Remote configured", "✓ Yes" if settings.remote_configured else "✗ No")
    table.add_row("Pending records", str(len(pending)))
    table.add_row(
        "Pending attachments",
        str(sum(1 for r in pending if r.attachment_state == AttachmentState.PENDING)),
    )

    oplog = SyncOperationLog(settings.operation_log)
    stats = oplog.get_statistics()
    table.add_row("Logged operations", str(stats["total_operations"]))
    table.add_row("Failures (24h)", str(stats["recent_failures"]))
    console.print(table)

    if not pending:
        console.print("[green]✓ Everything is synced[/green]")
        return

    records = Table(title="Unsynced Records")
    records.add_column("ID", style="cyan")
    records.add_column("Type")
    records.add_column("Weight", justify="right")
    records.add_column("Attachment")
    records.add_column("Retry")
    for record in pending:
        limit = status_store.check_limit(record_identifier(record.id))
        records.add_row(
            record.id,
            record.type,
            f"{record.weight:g}",
            record.attachment_state.value,
            limit.message or "ready",
        )
    console.print(records)


@app.command(name="add-draft")
def add_draft(
    owner_id: Annotated[str, cyclopts.Parameter(help="Owner of the new draft")],
    *,
    item_type: Annotated[str, cyclopts.Parameter(name="--type", help="Waste type")],
    weight: Annotated[float, cyclopts.Parameter(help="Weight in kg")],
    value: Annotated[float, cyclopts.Parameter(help="Estimated value")],
    description: Annotated[str, cyclopts.Parameter(help="Free text description")] = "",
    image: Annotated[
        Optional[Path], cyclopts.Parameter(help="Image to upload on next sync")
    ] = None,
):
    """Create a draft in the local cache.

    An image is not uploaded right away: its path is remembered and the
    draft carries a pending attachment until the next sync resolves it.

    Example:
        recyclesync add-draft household-42 --type plastic --weight 2.5 --value 3000
    """
    console = _get_console()
    settings = _load_settings()

    if image is not None and not image.is_file():
        console.print(f"[red]Image not found: {image}[/red]")
        return

    session_factory = create_session_factory(settings.database_url)
    store = SqlLocalStore(session_factory)
    pending_cache = SqlPendingAttachmentCache(session_factory)

    async def _create() -> DraftRecord:
        attachment_ref = ""
        if image is not None:
            temp_id = await pending_cache.put(str(image.resolve()))
            attachment_ref = make_pending_ref(temp_id)
        record = DraftRecord(
            id=new_record_id(owner_id),
            owner_id=owner_id,
            type=item_type,
            weight=weight,
            estimated_value=value,
            description=description,
            attachment_ref=attachment_ref,
        )
        await store.save_draft(record)
        return record

    record = asyncio.run(_create())
    console.print(
        Panel(
            Text.assemble(
                ("✓ ", "green bold"),
                ("Draft saved\n\n", "green"),
                ("ID: ", "cyan"),
                (record.id, "white"),
                ("\n"),
                ("Attachment: ", "cyan"),
                (record.attachment_state.value, "white"),
            ),
            title="Draft Created",
            border_style="green",
        )
    )


@app.command
def cleanup(
    *,
    days: Annotated[
        Optional[int], cyclopts.Parameter(help="Evict synced drafts older than this")
    ] = None,
):
    """Evict old synced drafts and truncate the operation log.

    Unsynced drafts are never evicted.

    Example:
        recyclesync cleanup --days 14
    """
    console = _get_console()
    settings = _load_settings()
    days = days if days is not None else settings.eviction_days

    store = SqlLocalStore(create_session_factory(settings.database_url))
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    evicted = asyncio.run(store.evict_synced_older_than(cutoff))
    truncated = SyncOperationLog(settings.operation_log).truncate_after_sync(keep_days=days)

    console.print(
        f"[green]✓ Evicted {evicted} synced drafts, "
        f"removed {truncated} log entries older than {days} days[/green]"
    )


@app.command(name="serve-proxy")
def serve_proxy(
    *,
    host: Annotated[str, cyclopts.Parameter(help="Bind address")] = "0.0.0.0",
    port: Annotated[int, cyclopts.Parameter(help="Port")] = 8000,
):
    """Run the records proxy service.

    Example:
        recyclesync serve-proxy --port 8080
    """
    import uvicorn

    uvicorn.run("recyclesync.records_proxy.app:app", host=host, port=port)


load_dotenv()


def main():
    app()
