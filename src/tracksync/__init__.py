"""
tracksync -- offline-first sync for tracker state.

Run the same trackers, session history and running timer on every
device. Each replica merges a shared snapshot file from a remote
blob store, last write wins.
"""

import os

__version__ = "0.1.0"
__author__ = "tracksync contributors"

TRACKSYNC_HOME = os.environ.get("TRACKSYNC_HOME", "~/.tracksync")
