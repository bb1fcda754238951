"""
tracksync CLI -- tracker and sync command line.

Each command group lives in its own module and is attached to the
main Click group through a register function.

Entry point: tracksync.cli:main
"""

from __future__ import annotations

import logging

import click

from .. import __version__


@click.group()
@click.version_option(version=__version__, prog_name="tracksync")
@click.option("--verbose", "-v", is_flag=True, help="Log sync activity to stderr.")
def main(verbose: bool):
    """tracksync -- your trackers, on every device.

    Track intervals offline; sync a shared snapshot when you like.
    """
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )


# ---------------------------------------------------------------------------
# Register all command groups from modular files
# ---------------------------------------------------------------------------

from .tracker_cmd import register_tracker_commands
from .sync_cmd import register_sync_commands
from .daemon import register_daemon_commands

register_tracker_commands(main)
register_sync_commands(main)
register_daemon_commands(main)
