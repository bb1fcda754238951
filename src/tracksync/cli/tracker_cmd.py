"""Tracker commands: add, list, delete, start, status, stop, edit-start, history, delete-session, export."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import click
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..errors import TrackerStateError
from ..models import ManifestEntry, TrackerConfig, TrackingStage
from ..tracker import TrackerProgress, format_duration
from ._common import console, fail, format_time, get_tracker_service, home_option, parse_time


def _parse_stage(index: int, value: str) -> TrackingStage:
    """Parse ``TITLE:START:END`` into a stage; bounds use the duration unit."""
    parts = value.split(":")
    if len(parts) != 3:
        raise click.BadParameter(f"stage must be TITLE:START:END, got {value!r}")
    title, start, end = parts
    try:
        return TrackingStage(id=index, title=title, start=float(start), end=float(end))
    except ValueError as exc:
        raise click.BadParameter(f"invalid stage bounds in {value!r}") from exc


def _stage_label(progress: TrackerProgress) -> str:
    if progress.stage is None:
        return "[dim]no stage[/]"
    return f"[bold]{escape(progress.stage.title)}[/]"


def register_tracker_commands(main: click.Group) -> None:
    """Register the tracker command group."""

    @main.group()
    def tracker():
        """Trackers, the running timer, and session history."""

    @tracker.command("add")
    @home_option
    @click.argument("file_id")
    @click.option("--name", "-n", required=True, help="Display name.")
    @click.option("--icon", default="", help="Icon shown next to the name.")
    @click.option(
        "--duration-type",
        type=click.Choice(["Time", "Day", "Week"]),
        default="Time",
        help="How elapsed time is displayed.",
    )
    @click.option("--start-text", default="Start", help="Start button label.")
    @click.option("--stop-text", default="Stop", help="Stop button label.")
    @click.option(
        "--stage",
        "stages",
        multiple=True,
        help="TITLE:START:END in hours, days or weeks per --duration-type (repeatable).",
    )
    @click.option("--stopped-title", default=None, help="Stage title shown while stopped.")
    def tracker_add(
        home, file_id, name, icon, duration_type, start_text, stop_text, stages, stopped_title
    ):
        """Create or update a tracker."""
        svc = get_tracker_service(home)
        entry = ManifestEntry(file_id=file_id, name=name, icon=icon)
        config = TrackerConfig(
            file_id=file_id,
            tracker_name=name,
            duration_type=duration_type,
            button_start_text=start_text,
            button_stop_text=stop_text,
            stages=[_parse_stage(i, s) for i, s in enumerate(stages, start=1)],
            stopped_state=TrackingStage(title=stopped_title) if stopped_title else None,
        )
        svc.save_tracker(entry, config)
        console.print(f"  [green]Saved tracker[/] [cyan]{name}[/] ({file_id})")

    @tracker.command("list")
    @home_option
    def tracker_list(home):
        """List trackers."""
        svc = get_tracker_service(home)
        state = svc.active_state()
        entries = svc.list_trackers()
        if not entries:
            console.print("  [yellow]No trackers yet.[/] Add one with [cyan]tracksync tracker add[/].")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Id", style="cyan")
        table.add_column("Name", style="bold")
        table.add_column("Icon")
        table.add_column("State")
        for entry in entries:
            marker = ""
            if entry.file_id == state.selected_tracker_file_id:
                marker = "[green]running[/]" if state.is_tracking else "[dim]selected[/]"
            table.add_row(entry.file_id, entry.name, entry.icon, marker)
        console.print(table)

    @tracker.command("delete")
    @home_option
    @click.argument("file_id")
    def tracker_delete(home, file_id):
        """Delete a tracker (the delete syncs to other devices)."""
        svc = get_tracker_service(home)
        if not svc.delete_tracker(file_id):
            fail(f"No tracker {file_id!r}")
        console.print(f"  [green]Deleted tracker[/] {file_id}")

    @tracker.command("start")
    @home_option
    @click.argument("file_id", required=False)
    @click.option("--at", "start_at", default=None, help="Start time (ISO-8601). Defaults to now.")
    def tracker_start(home, file_id: Optional[str], start_at: Optional[str]):
        """Start the timer for FILE_ID (or the selected tracker)."""
        svc = get_tracker_service(home)
        try:
            state = svc.start_tracking(file_id, parse_time(start_at))
        except TrackerStateError as exc:
            fail(str(exc))
        name = svc.tracker_name(state.selected_tracker_file_id)
        console.print(f"  [green]Tracking[/] [cyan]{name}[/] since {format_time(state.start_time)}")
        console.print(f"  Stage: {_stage_label(svc.current_progress())}")

    @tracker.command("status")
    @home_option
    @click.option("--json-out", is_flag=True, help="Output as machine-readable JSON.")
    def tracker_status(home, json_out: bool):
        """Show elapsed time and the current stage."""
        svc = get_tracker_service(home)
        progress = svc.current_progress()
        if json_out:
            click.echo(progress.model_dump_json(indent=2))
            return

        if not progress.file_id:
            console.print("  [yellow]No tracker selected.[/]")
            return
        state = "[green]running[/]" if progress.is_tracking else "[dim]stopped[/]"
        console.print(
            Panel(
                f"Tracker: [cyan]{escape(progress.tracker_name)}[/] ({state})\n"
                f"Elapsed: [bold]{progress.elapsed_display}[/]\n"
                f"Progress: {progress.value:.2f} {progress.unit}\n"
                f"Stage: {_stage_label(progress)}",
                title="Tracker status",
                border_style="cyan",
            )
        )

    @tracker.command("edit-start")
    @home_option
    @click.argument("start_at")
    def tracker_edit_start(home, start_at: str):
        """Correct the start time of the running interval."""
        svc = get_tracker_service(home)
        try:
            state = svc.edit_start_time(parse_time(start_at))
        except TrackerStateError as exc:
            fail(str(exc))
        console.print(f"  [green]Start time set to[/] {format_time(state.start_time)}")

    @tracker.command("stop")
    @home_option
    @click.option("--at", "end_at", default=None, help="End time (ISO-8601). Defaults to now.")
    def tracker_stop(home, end_at: Optional[str]):
        """Stop the timer and record the session."""
        svc = get_tracker_service(home)
        try:
            session = svc.stop_tracking(parse_time(end_at))
        except TrackerStateError as exc:
            fail(str(exc))
        console.print(
            Panel(
                f"Tracker: [cyan]{session.tracker_name}[/]\n"
                f"Start: {format_time(session.start_time)}\n"
                f"End: {format_time(session.end_time)}\n"
                f"Duration: [bold]{format_duration(session.duration_seconds)}[/]",
                title="Session recorded",
                border_style="green",
            )
        )

    @tracker.command("history")
    @home_option
    @click.option("--tracker", "tracker_name", default=None, help="Only this tracker's sessions.")
    def tracker_history(home, tracker_name: Optional[str]):
        """Show recorded sessions, newest first."""
        svc = get_tracker_service(home)
        sessions = svc.history(tracker_name)
        if not sessions:
            console.print("  [dim]No sessions recorded.[/]")
            return

        table = Table(show_header=True, header_style="bold", box=None, padding=(0, 2))
        table.add_column("Id", style="dim")
        table.add_column("Tracker", style="cyan")
        table.add_column("Start")
        table.add_column("End")
        table.add_column("Duration", style="bold")
        for s in sessions:
            table.add_row(
                s.session_id[:8],
                s.tracker_name,
                format_time(s.start_time),
                format_time(s.end_time),
                format_duration(s.duration_seconds),
            )
        console.print(table)

    @tracker.command("delete-session")
    @home_option
    @click.argument("session_id")
    def tracker_delete_session(home, session_id: str):
        """Delete a session by id or unique id prefix."""
        svc = get_tracker_service(home)
        matches = [s for s in svc.history() if s.session_id.startswith(session_id)]
        if not matches:
            fail(f"No session {session_id!r}")
        if len(matches) > 1:
            fail(f"Session id {session_id!r} is ambiguous ({len(matches)} matches)")
        svc.delete_session(matches[0].session_id)
        console.print(f"  [green]Deleted session[/] {matches[0].session_id}")

    @tracker.command("export")
    @home_option
    @click.option("--format", "fmt", type=click.Choice(["csv", "json"]), default="csv")
    @click.option("--output", "-o", default=None, help="Output file (default: stdout).")
    def tracker_export(home, fmt: str, output: Optional[str]):
        """Export session history as CSV or JSON."""
        svc = get_tracker_service(home)
        text = svc.export_history_csv() if fmt == "csv" else svc.export_history_json()
        if output:
            Path(output).write_text(text, encoding="utf-8")
            console.print(f"  [green]History exported to:[/] {output}")
        else:
            click.echo(text, nl=False)
