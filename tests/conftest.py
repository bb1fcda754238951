"""Shared test fixtures for tracksync."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

import pytest

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def at(minutes: float) -> datetime:
    """A fixed UTC time ``minutes`` after T0."""
    return T0 + timedelta(minutes=minutes)


class MemoryTransport:
    """In-memory stand-in for a remote blob store.

    Counts calls and can be told to fail the next get or put.
    """

    name = "memory"

    def __init__(self):
        self.blobs: dict[str, bytes] = {}
        self.gets = 0
        self.puts = 0
        self.fail_get: Optional[Exception] = None
        self.fail_put: Optional[Exception] = None

    def get(self, name: str) -> Optional[bytes]:
        self.gets += 1
        if self.fail_get is not None:
            exc, self.fail_get = self.fail_get, None
            raise exc
        return self.blobs.get(name)

    def put(self, name: str, data: bytes) -> None:
        self.puts += 1
        if self.fail_put is not None:
            exc, self.fail_put = self.fail_put, None
            raise exc
        self.blobs[name] = data


@pytest.fixture
def tmp_home(tmp_path: Path) -> Path:
    """Provide a temporary replica home directory."""
    home = tmp_path / ".tracksync"
    home.mkdir()
    return home


@pytest.fixture
def store(tmp_home: Path):
    from tracksync.store import EntityStore

    return EntityStore(tmp_home)


@pytest.fixture
def remote() -> MemoryTransport:
    return MemoryTransport()


@pytest.fixture
def make_engine(tmp_path: Path, remote: MemoryTransport):
    """Build engines for independent replicas sharing one remote.

    Each call gets its own home directory; all engines have a
    webdav target configured so sync is enabled.
    """
    from tracksync.sync.engine import SyncEngine
    from tracksync.sync.models import SyncInterval, SyncSettings, SyncTarget

    def _make(name: str = "device", transport=None) -> SyncEngine:
        home = tmp_path / name
        engine = SyncEngine(home, transport=transport or remote)
        engine.save_settings(
            SyncSettings(
                target=SyncTarget.WEBDAV,
                interval=SyncInterval.HOURLY,
                host_url="https://dav.example.com/remote.php/dav/files/me",
            )
        )
        return engine

    return _make
