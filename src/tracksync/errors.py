"""Error taxonomy for the sync engine."""

from __future__ import annotations

from typing import Optional


class TrackSyncError(Exception):
    """Base class for all tracksync errors."""


class TransportError(TrackSyncError):
    """The remote store failed (network, auth, or server error).

    A missing remote file is not an error: transports report it by
    returning None from ``get``.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class DecodeError(TrackSyncError):
    """A snapshot document could not be parsed.

    Raised before anything touches the local store.
    """


class SyncCancelled(TrackSyncError):
    """A sync cycle was aborted between steps."""


class TrackerStateError(TrackSyncError):
    """A tracker operation does not fit the current state.

    For example stopping when nothing is running, or starting an
    unknown tracker.
    """
