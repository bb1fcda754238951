"""
Merge engine -- apply a remote snapshot onto the local store.

Whole-record last-write-wins, one direction (remote onto local):

    local missing                          -> insert remote
    remote.last_modified >  local's        -> replace with remote
    remote.last_modified <= local's        -> keep local (ties favor local)

Records only present locally are left alone; absence is not deletion.
The comparison is strict, so applying the same snapshot again is a
no-op.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from ..models import TimestampedRecord
from ..store import Collection, EntityStore
from .models import MergeCounts, MergeReport
from .snapshot import Snapshot

logger = logging.getLogger("tracksync.sync.merge")


def remote_wins(local: Optional[TimestampedRecord], remote: TimestampedRecord) -> bool:
    """True if ``remote`` should replace ``local``."""
    return local is None or remote.last_modified > local.last_modified


def merge_records(
    collection: Collection,
    remote_records: Iterable[TimestampedRecord],
) -> MergeCounts:
    """Merge remote records into one collection.

    Winners are collected first and written with one ``put_many``, so a
    snapshot costs one file write per collection.

    Args:
        collection: Local collection to update.
        remote_records: Records decoded from the remote snapshot.

    Returns:
        Counts of inserted, replaced and kept records.
    """
    counts = MergeCounts()
    winners: dict[str, TimestampedRecord] = {}
    with collection.lock:
        for remote in remote_records:
            local = winners.get(remote.key) or collection.get(remote.key)
            if not remote_wins(local, remote):
                counts.kept += 1
                continue
            winners[remote.key] = remote
            if local is None:
                counts.inserted += 1
            else:
                counts.replaced += 1
                logger.debug(
                    "%s/%s replaced (%s > %s)",
                    collection.name,
                    remote.key,
                    remote.last_modified.isoformat(),
                    local.last_modified.isoformat(),
                )
        collection.put_many(winners.values())
    return counts


def merge_snapshot(store: EntityStore, snapshot: Snapshot) -> MergeReport:
    """Apply a remote snapshot onto a local store.

    Each collection and the active state singleton merge independently
    with the same rule. Runs under the store lock.

    Args:
        store: The local replica.
        snapshot: Decoded remote snapshot.

    Returns:
        MergeReport describing what changed.
    """
    report = MergeReport()
    with store.lock:
        for name, collection in store.collections.items():
            setattr(report, name, merge_records(collection, snapshot.records(name)))

        if snapshot.active_state is not None:
            report.active_state = merge_records(store.active, [snapshot.active_state])

    if report.changed:
        logger.info("Merged remote snapshot: %s", report.summary())
    else:
        logger.debug("Remote snapshot brought no changes")
    return report
