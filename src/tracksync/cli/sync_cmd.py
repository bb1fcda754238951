"""Sync commands: now, status, export, import, configure."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

import click
from rich.panel import Panel

from ..errors import TrackSyncError
from ..sync.models import SyncInterval, SyncOutcome, SyncTarget
from ._common import console, fail, format_time, get_engine, home_option


def register_sync_commands(main: click.Group) -> None:
    """Register the sync command group."""

    @main.group()
    def sync():
        """Snapshot sync with your other devices.

        Download the shared snapshot, merge it (newest record wins),
        upload the merged result.
        """

    @sync.command("now")
    @home_option
    def sync_now(home):
        """Run one sync cycle immediately."""
        engine = get_engine(home)
        target = engine.settings.target

        console.print(f"\n  Syncing via [cyan]{target.value}[/]...", end=" ")
        try:
            result = engine.sync_now()
        except (TrackSyncError, ValueError) as exc:
            console.print("[red]failed[/]")
            fail(str(exc))

        if result.outcome == SyncOutcome.DISABLED:
            console.print("[yellow]no sync target configured[/]")
            console.print("  Run [cyan]tracksync sync configure --target ...[/] first.\n")
            return
        if result.outcome == SyncOutcome.SKIPPED:
            console.print("[yellow]another sync is running[/]\n")
            return

        console.print("[green]done[/]")
        if not result.remote_found:
            console.print("  [dim]No remote snapshot yet, uploaded the first one.[/]")
        if result.merge is not None:
            console.print(f"  [dim]Merged: {result.merge.summary()}[/]")
        console.print(f"  [dim]Uploaded {result.uploaded_bytes} bytes.[/]\n")

    @sync.command("status")
    @home_option
    def sync_status(home):
        """Show sync settings and recent activity."""
        engine = get_engine(home)
        settings = engine.settings
        state = engine.state

        where = settings.host_url or settings.bucket_name or settings.local_path or "-"
        console.print()
        console.print(
            Panel(
                f"Target: [cyan]{settings.target.value}[/] ({where})\n"
                f"Interval: [cyan]{settings.interval.value}[/]\n"
                f"Remote file: {settings.remote_name}\n"
                f"Last sync: {format_time(settings.last_sync_time)}\n"
                f"Syncs: [bold]{state.sync_count}[/]  "
                f"Failures: [bold]{state.failure_count}[/]\n"
                f"Last error: {state.last_error or '[dim]none[/]'}",
                title="Sync",
                border_style="magenta",
            )
        )
        for name, collection in engine.store.collections.items():
            active = len(collection.list_active())
            total = len(collection)
            console.print(f"  {name}: {active} active, {total - active} deleted")
        console.print()

    @sync.command("export")
    @home_option
    @click.option("--output", "-o", default=None, help="Output file (default: stdout).")
    def sync_export(home, output: Optional[str]):
        """Write the full snapshot of this device."""
        data = get_engine(home).export_snapshot()
        if output:
            Path(output).write_bytes(data)
            console.print(f"  [green]Snapshot exported to:[/] {output}")
        else:
            sys.stdout.buffer.write(data)
            sys.stdout.flush()

    @sync.command("import")
    @home_option
    @click.argument("path", type=click.Path(exists=True, dir_okay=False))
    def sync_import(home, path: str):
        """Merge a snapshot file into this device."""
        engine = get_engine(home)
        try:
            report = engine.import_snapshot(Path(path).read_bytes())
        except TrackSyncError as exc:
            fail(str(exc))
        console.print(f"  [green]Imported[/] {path}")
        console.print(f"  [dim]Merged: {report.summary()}[/]")

    @sync.command("configure")
    @home_option
    @click.option("--target", type=click.Choice([t.value for t in SyncTarget]), default=None)
    @click.option("--interval", type=click.Choice([i.value for i in SyncInterval]), default=None)
    @click.option("--host-url", default=None, help="WebDAV URL or S3 endpoint.")
    @click.option("--username", default=None, help="WebDAV user or S3 access key.")
    @click.option("--password", default=None, help="WebDAV password or S3 secret key.")
    @click.option("--bucket", "bucket_name", default=None, help="S3 bucket.")
    @click.option("--region", default=None, help="S3 region.")
    @click.option("--local-path", default=None, type=click.Path(), help="Folder for the local target.")
    @click.option("--remote-name", default=None, help="Name of the shared snapshot file.")
    def sync_configure(home, target, interval, host_url, username, password,
                       bucket_name, region, local_path, remote_name):
        """Change sync settings. Unspecified options keep their value."""
        engine = get_engine(home)
        changes = {
            "target": SyncTarget(target) if target else None,
            "interval": SyncInterval(interval) if interval else None,
            "host_url": host_url,
            "username": username,
            "password": password,
            "bucket_name": bucket_name,
            "region": region,
            "local_path": Path(local_path).expanduser() if local_path else None,
            "remote_name": remote_name,
        }
        changes = {k: v for k, v in changes.items() if v is not None}
        settings = engine.settings.model_copy(update=changes)
        engine.save_settings(settings)

        console.print(
            f"  [green]Sync settings saved:[/] target=[cyan]{settings.target.value}[/] "
            f"interval=[cyan]{settings.interval.value}[/]"
        )
        if settings.auto_sync_enabled:
            console.print(
                "  Run [cyan]tracksync daemon start[/] to sync in the background."
            )
