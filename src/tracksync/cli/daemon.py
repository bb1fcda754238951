"""Daemon commands: start, stop, status, resume."""

from __future__ import annotations

import json
import os
import sys

import click
from rich.panel import Panel

from ._common import console, home_option, resolve_home


def register_daemon_commands(main: click.Group) -> None:
    """Register the daemon command group."""

    @main.group()
    def daemon():
        """Background auto-sync.

        Checks every minute whether a sync is due under the configured
        interval and serves a local status API.
        """

    @daemon.command("start")
    @home_option
    @click.option("--port", default=7788, help="API port (default: 7788).")
    @click.option("--tick", default=60, help="Seconds between due-checks.")
    def daemon_start(home: str, port: int, tick: int):
        """Start the daemon in the foreground (use systemd for background)."""
        from ..daemon import DaemonConfig, DaemonService, is_running

        home_path = resolve_home(home)
        if is_running(home_path):
            console.print("[yellow]Daemon is already running.[/]")
            sys.exit(0)

        config = DaemonConfig(home=home_path, tick_interval=tick, port=port)
        svc = DaemonService(config)
        settings = svc.engine.settings

        console.print(f"\n  [green]Starting daemon[/] on port [cyan]{port}[/]")
        console.print(f"  Target: {settings.target.value} | Interval: {settings.interval.value}")
        console.print(f"  Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        if not settings.auto_sync_enabled:
            console.print("  [yellow]Auto-sync is off (manual interval or no target).[/]")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")

        svc.start()
        svc.run_forever()

    @daemon.command("stop")
    @home_option
    def daemon_stop(home: str):
        """Stop the running daemon."""
        import signal as sig

        from ..daemon import PID_FILE, read_pid

        home_path = resolve_home(home)
        pid = read_pid(home_path)
        if pid is None:
            console.print("[yellow]Daemon is not running.[/]")
            return

        try:
            os.kill(pid, sig.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to daemon (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Daemon process not found -- cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @daemon.command("resume")
    @click.option("--port", default=7788, help="API port of the daemon.")
    def daemon_resume(port: int):
        """Ask the daemon to sync now if one is due."""
        from ..daemon import trigger_daemon_sync

        if trigger_daemon_sync(port):
            console.print("  [green]Daemon is checking for a due sync.[/]")
        else:
            console.print("[yellow]Daemon is not reachable.[/]")
            sys.exit(1)

    @daemon.command("status")
    @home_option
    @click.option("--port", default=7788, help="API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def daemon_status(home: str, port: int, json_out: bool):
        """Show daemon status."""
        from ..daemon import get_daemon_status, read_pid

        home_path = resolve_home(home)
        pid = read_pid(home_path)
        if pid is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Daemon is not running.[/]\n")
            return

        status = get_daemon_status(port)
        if json_out:
            click.echo(json.dumps(status or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return

        if not status:
            console.print(f"\n  [yellow]Daemon running (PID {pid}) but API unreachable on port {port}.[/]\n")
            return

        uptime = status.get("uptime_seconds", 0)
        h, remainder = divmod(int(uptime), 3600)
        m, s = divmod(remainder, 60)
        uptime_str = f"{h}h {m}m {s}s" if h else f"{m}m {s}s"
        sync = status.get("sync", {})
        sync_state = sync.get("state", {})
        settings = sync.get("settings", {})

        console.print()
        console.print(
            Panel(
                f"PID: [bold]{status.get('pid')}[/]\n"
                f"Uptime: [bold]{uptime_str}[/]\n"
                f"Target: {settings.get('target')} | Interval: {settings.get('interval')}\n"
                f"Engine: {sync.get('status')}\n"
                f"Syncs completed: [bold]{sync_state.get('sync_count', 0)}[/]\n"
                f"Last sync: {settings.get('last_sync_time') or '[dim]never[/]'}\n"
                f"Last error: {sync_state.get('last_error') or '[dim]none[/]'}\n"
                f"API: [green]http://127.0.0.1:{port}[/]",
                title="[green]Daemon Running[/]",
                border_style="green",
            )
        )
        console.print()
