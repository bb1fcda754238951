"""
Entity store -- typed, JSON-backed record collections with soft delete.

Layout under the home directory:

    store/manifest.json       tracker definitions
    store/configs.json        tracker configurations
    store/sessions.json       completed tracking sessions
    store/active_state.json   the one-row "what is running" collection
    store/.lock               flock target shared by every process

No operation here ever removes a record. Deletes set ``is_deleted``
and refresh ``last_modified`` so the tombstone can travel to other
replicas.

The CLI and the daemon open the same home from separate processes.
Every access holds the store lock, which pairs a thread lock with an
exclusive ``flock`` on ``store/.lock``. Collections trust their cached
records only while the lock stays held; the next outermost acquire
reads the files again.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Generic, Iterable, Iterator, Optional, TypeVar

from .models import (
    ACTIVE_STATE_KEY,
    ActiveState,
    ManifestEntry,
    TimestampedRecord,
    TrackerConfig,
    TrackingSession,
)

logger = logging.getLogger("tracksync.store")

T = TypeVar("T", bound=TimestampedRecord)


def stamp(
    previous: Optional[datetime] = None,
    now: Optional[datetime] = None,
) -> datetime:
    """Return the next ``last_modified`` value for a record.

    Never goes backwards: if the clock reads at or before the previous
    stamp, the result is the previous stamp plus one microsecond.

    Args:
        previous: The record's current ``last_modified``, if any.
        now: Override for the current time (UTC).

    Returns:
        A timezone-aware UTC datetime strictly after ``previous``.
    """
    current = now or datetime.now(timezone.utc)
    if previous is not None and current <= previous:
        current = previous + timedelta(microseconds=1)
    return current


class StoreLock:
    """Re-entrant lock that also excludes other processes.

    The outermost ``acquire`` takes the thread lock and then an
    exclusive ``flock`` on ``path``; nested acquires by the same thread
    only bump a depth counter. ``generation`` advances on every
    outermost acquire so collections know when their cache may be stale.

    Args:
        path: Lock file, created on first use.
    """

    def __init__(self, path: Path):
        self.path = path
        self.generation = 0
        self._thread_lock = threading.RLock()
        self._depth = 0
        self._fd: Optional[int] = None

    def acquire(self) -> None:
        self._thread_lock.acquire()
        if self._depth == 0:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX)
                except OSError:
                    os.close(fd)
                    raise
            except OSError:
                self._thread_lock.release()
                raise
            self._fd = fd
            self.generation += 1
        self._depth += 1

    def release(self) -> None:
        self._depth -= 1
        if self._depth == 0 and self._fd is not None:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
            self._fd = None
        self._thread_lock.release()

    def __enter__(self) -> "StoreLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


class Collection(Generic[T]):
    """One keyed collection of records persisted as a JSON list.

    Records are read from disk once per outermost hold of the store lock
    and written back in full on every change. Reads hand out copies so
    callers cannot mutate stored state without going through ``put``.

    Args:
        path: JSON file backing this collection.
        model: Record class stored here.
        lock: Store lock shared by every collection of the store.
    """

    def __init__(self, path: Path, model: type[T], lock: StoreLock):
        self.path = path
        self.model = model
        self.lock = lock
        self._records: Optional[dict[str, T]] = None
        self._generation = -1

    @property
    def name(self) -> str:
        return self.path.stem

    def _load(self) -> dict[str, T]:
        # Another process may have replaced the file since the lock was last free.
        if self._records is None or self._generation != self.lock.generation:
            records: dict[str, T] = {}
            if self.path.exists():
                data = json.loads(self.path.read_text(encoding="utf-8"))
                for item in data:
                    record = self.model.model_validate(item)
                    records[record.key] = record
                logger.debug("Loaded %d record(s) from %s", len(records), self.path)
            self._records = records
            self._generation = self.lock.generation
        return self._records

    def _save(self) -> None:
        records = self._load()
        payload = [r.model_dump(mode="json", by_alias=True) for r in records.values()]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[T]:
        """Look up a record by key, tombstones included.

        Returns:
            A copy of the record, or None if the key was never stored.
        """
        with self.lock:
            record = self._load().get(key)
            return record.model_copy(deep=True) if record is not None else None

    def put(self, record: T) -> None:
        """Insert or replace a record.

        The caller stamps ``last_modified`` beforehand; the merge engine
        relies on this to store remote records verbatim.
        """
        self.put_many([record])

    def put_many(self, records: Iterable[T]) -> int:
        """Insert or replace several records with a single write.

        Returns:
            Number of records written. Nothing touches disk when zero.
        """
        with self.lock:
            current = self._load()
            count = 0
            for record in records:
                current[record.key] = record.model_copy(deep=True)
                count += 1
            if count:
                self._save()
            return count

    def list_all(self) -> list[T]:
        """Every record, tombstones included."""
        with self.lock:
            return [r.model_copy(deep=True) for r in self._load().values()]

    def list_active(self) -> list[T]:
        """Records that are not tombstoned."""
        return [r for r in self.list_all() if not getattr(r, "is_deleted", False)]

    def soft_delete(self, key: str, now: Optional[datetime] = None) -> bool:
        """Tombstone a record.

        Args:
            key: Record key.
            now: Override for the deletion time.

        Returns:
            True if the record existed, False (and nothing changes) otherwise.
        """
        if "is_deleted" not in self.model.model_fields:
            raise TypeError(f"{self.model.__name__} records cannot be deleted")

        with self.lock:
            record = self._load().get(key)
            if record is None:
                return False
            record.is_deleted = True
            record.last_modified = stamp(record.last_modified, now)
            self._save()
            logger.info("Tombstoned %s/%s", self.name, key)
            return True

    def __len__(self) -> int:
        with self.lock:
            return len(self._load())

    def __contains__(self, key: object) -> bool:
        with self.lock:
            return key in self._load()

    def __iter__(self) -> Iterator[T]:
        return iter(self.list_all())


class EntityStore:
    """All collections of one replica plus the shared store lock.

    ``lock`` is a re-entrant :class:`StoreLock`. Hold it to make a
    sequence of reads and writes atomic with respect to other threads
    and other processes on the same home (the sync engine holds it from
    download to upload).

    Args:
        home: Replica home directory. Defaults to ~/.tracksync.
    """

    def __init__(self, home: Optional[Path] = None):
        from . import TRACKSYNC_HOME

        self.home = (home or Path(TRACKSYNC_HOME)).expanduser()
        self.store_dir = self.home / "store"
        self.store_dir.mkdir(parents=True, exist_ok=True)
        self.lock = StoreLock(self.store_dir / ".lock")

        self.manifest: Collection[ManifestEntry] = Collection(
            self.store_dir / "manifest.json", ManifestEntry, self.lock
        )
        self.configs: Collection[TrackerConfig] = Collection(
            self.store_dir / "configs.json", TrackerConfig, self.lock
        )
        self.sessions: Collection[TrackingSession] = Collection(
            self.store_dir / "sessions.json", TrackingSession, self.lock
        )
        self.active: Collection[ActiveState] = Collection(
            self.store_dir / "active_state.json", ActiveState, self.lock
        )

    @property
    def collections(self) -> dict[str, Collection]:
        """The tombstone-capable collections, in snapshot order."""
        return {
            "manifest": self.manifest,
            "configs": self.configs,
            "sessions": self.sessions,
        }

    def get_active_state(self) -> ActiveState:
        """Current active state; a never-modified default if none was stored."""
        return self.active.get(ACTIVE_STATE_KEY) or ActiveState()

    def put_active_state(self, state: ActiveState) -> None:
        self.active.put(state)

    def has_active_state(self) -> bool:
        return ACTIVE_STATE_KEY in self.active
