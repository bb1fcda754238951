"""
Snapshot sync -- keep every replica's tracker state converged.

Each cycle downloads the shared snapshot, merges it into the local
store record by record (last write wins, tombstones included),
re-exports the merged store and uploads it again.

Transports: WebDAV, S3, local folder.
"""

from .engine import SyncEngine
from .merge import merge_snapshot
from .scheduler import AutoSyncScheduler, is_sync_due
from .snapshot import Snapshot, decode_snapshot, encode_snapshot, export_snapshot

__all__ = [
    "AutoSyncScheduler",
    "Snapshot",
    "SyncEngine",
    "decode_snapshot",
    "encode_snapshot",
    "export_snapshot",
    "is_sync_due",
    "merge_snapshot",
]
