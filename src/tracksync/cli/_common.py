"""Shared utilities for all CLI command modules.

Provides the Rich console instance, home/engine helpers, and
formatting shared across command groups.
"""

from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.markup import escape

from .. import TRACKSYNC_HOME
from ..store import EntityStore
from ..sync.engine import SyncEngine
from ..tracker import TrackerService

console = Console()
logger = logging.getLogger("tracksync.cli")

HOME_OPTION_HELP = "Replica home directory."


def home_option(func):
    """Add the shared ``--home`` option to a command."""
    return click.option(
        "--home", default=TRACKSYNC_HOME, type=click.Path(), help=HOME_OPTION_HELP
    )(func)


def resolve_home(home: str) -> Path:
    return Path(home).expanduser()


def get_tracker_service(home: str) -> TrackerService:
    return TrackerService(EntityStore(resolve_home(home)))


def get_engine(home: str) -> SyncEngine:
    return SyncEngine(resolve_home(home))


def parse_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 time from the command line.

    Times without an offset are local time.

    Raises:
        click.BadParameter: If the value is not ISO-8601.
    """
    if value is None:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise click.BadParameter(f"not an ISO-8601 time: {value}") from exc
    return parsed.astimezone(timezone.utc)


def format_time(value: Optional[datetime]) -> str:
    """Render a stored UTC time in local time for display."""
    if value is None:
        return "[dim]never[/]"
    return value.astimezone().strftime("%Y-%m-%d %H:%M")


def fail(message: str) -> NoReturn:
    """Print an error and exit with status 1."""
    console.print(f"[bold red]Error:[/] {escape(message)}")
    sys.exit(1)
