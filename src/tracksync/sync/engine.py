"""
Sync Engine -- one download, merge, re-export, upload cycle.

    tracksync sync now  ->  get remote -> decode -> merge -> export -> put

The remote file is fetched first so stale local data never overwrites
newer remote records. The upload is built from the merged store, so
it always holds the union of both sides. If the upload fails, the
local store is already merged and the next cycle re-uploads the same
superset.

At most one cycle runs at a time. A call made while another cycle is
running returns SKIPPED instead of queueing.
"""

from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml

from ..errors import SyncCancelled
from ..store import EntityStore
from .merge import merge_snapshot
from .models import (
    MergeReport,
    SyncOutcome,
    SyncResult,
    SyncSettings,
    SyncState,
    SyncTarget,
)
from .snapshot import Snapshot, decode_snapshot, encode_snapshot, export_snapshot
from .transports import RemoteTransport, create_transport

logger = logging.getLogger("tracksync.sync.engine")


class EngineStatus(str, Enum):
    """Orchestrator guard state."""

    IDLE = "idle"
    SYNCING = "syncing"


class SyncGuard:
    """Non-blocking, non-reentrant IDLE/SYNCING state."""

    def __init__(self):
        self._lock = threading.Lock()
        self._status = EngineStatus.IDLE

    @property
    def status(self) -> EngineStatus:
        with self._lock:
            return self._status

    def try_acquire(self) -> bool:
        """Move IDLE -> SYNCING. False if a cycle is already running."""
        with self._lock:
            if self._status == EngineStatus.SYNCING:
                return False
            self._status = EngineStatus.SYNCING
            return True

    def release(self) -> None:
        with self._lock:
            self._status = EngineStatus.IDLE


class SyncEngine:
    """Orchestrates snapshot synchronization for one replica.

    Owns the sync settings (YAML), sync state (JSON), the entity store,
    and the guard that keeps cycles from overlapping.

    Args:
        home: Replica home directory. Defaults to ~/.tracksync.
        store: Entity store to sync. Defaults to the one under ``home``.
        transport: Remote transport. Defaults to one built from settings
            on each cycle.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        store: Optional[EntityStore] = None,
        transport: Optional[RemoteTransport] = None,
    ):
        from .. import TRACKSYNC_HOME

        self.home = (home or Path(TRACKSYNC_HOME)).expanduser()
        self.sync_dir = self.home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)

        self.store = store or EntityStore(self.home)
        self._transport = transport
        self._guard = SyncGuard()
        self._state_lock = threading.Lock()

        self.settings = self._load_settings()
        self.state = self._load_state()

    # ------------------------------------------------------------------
    # Settings & state
    # ------------------------------------------------------------------

    @property
    def settings_file(self) -> Path:
        return self.sync_dir / "config.yaml"

    @property
    def state_file(self) -> Path:
        return self.sync_dir / "state.json"

    def _load_settings(self) -> SyncSettings:
        """Load sync settings from disk."""
        if self.settings_file.exists():
            try:
                data = yaml.safe_load(self.settings_file.read_text(encoding="utf-8")) or {}
                return SyncSettings(**data)
            except (yaml.YAMLError, ValueError, TypeError) as exc:
                logger.warning("Failed to load sync settings: %s", exc)
        return SyncSettings()

    def _load_state(self) -> SyncState:
        """Load sync state from disk."""
        if self.state_file.exists():
            try:
                data = json.loads(self.state_file.read_text(encoding="utf-8"))
                return SyncState(**data)
            except (json.JSONDecodeError, ValueError, TypeError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _write_settings(self) -> None:
        data = self.settings.model_dump(mode="json")
        self.settings_file.write_text(
            yaml.dump(data, default_flow_style=False), encoding="utf-8"
        )

    def _save_state(self) -> None:
        """Persist sync state to disk."""
        self.state_file.write_text(
            self.state.model_dump_json(indent=2), encoding="utf-8"
        )

    def save_settings(self, settings: SyncSettings) -> None:
        """Replace and persist the sync settings.

        A configured transport is rebuilt from the new settings on the
        next cycle unless one was injected explicitly.
        """
        self.settings = settings
        self._write_settings()
        logger.info(
            "Sync settings saved: target=%s interval=%s",
            settings.target.value,
            settings.interval.value,
        )

    def reload_settings(self) -> SyncSettings:
        """Re-read settings written by another process (e.g. the CLI)."""
        self.settings = self._load_settings()
        return self.settings

    @property
    def status(self) -> EngineStatus:
        return self._guard.status

    @property
    def is_syncing(self) -> bool:
        return self._guard.status == EngineStatus.SYNCING

    def transport(self) -> RemoteTransport:
        """The transport for the current settings."""
        return self._transport or create_transport(self.settings)

    # ------------------------------------------------------------------
    # Export / import
    # ------------------------------------------------------------------

    def export_snapshot(self) -> bytes:
        """Encode the whole local store as a snapshot document."""
        return encode_snapshot(export_snapshot(self.store))

    def import_snapshot(self, data: bytes) -> MergeReport:
        """Merge a snapshot document into the local store.

        Raises:
            DecodeError: If the document is malformed. Nothing is merged.
        """
        snapshot = decode_snapshot(data)
        report = merge_snapshot(self.store, snapshot)
        logger.info("Imported snapshot exported at %s", snapshot.export_date.isoformat())
        return report

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync_now(self, cancel: Optional[threading.Event] = None) -> SyncResult:
        """Run one sync cycle against the configured remote.

        Settings are re-read from disk first, so a target or interval
        changed by another process applies to this cycle.

        Args:
            cancel: Set to abort the cycle before its next step.

        Returns:
            SyncResult. DISABLED when no target is configured, SKIPPED
            when another cycle is running.

        Raises:
            TransportError: The remote could not be read or written.
            DecodeError: The remote snapshot is malformed.
            SyncCancelled: ``cancel`` was set mid-cycle.
        """
        self.reload_settings()
        if self.settings.target == SyncTarget.NONE:
            logger.debug("Sync target is none, nothing to do")
            return SyncResult(outcome=SyncOutcome.DISABLED)

        if not self._guard.try_acquire():
            logger.info("Sync already in progress, skipping")
            with self._state_lock:
                self._refresh_state()
                self.state.skipped_count += 1
                self._save_state()
            return SyncResult(outcome=SyncOutcome.SKIPPED)

        try:
            self._record_attempt()
            result = self._run_cycle(cancel)
        except Exception as exc:
            self._record_failure(exc)
            raise
        finally:
            self._guard.release()

        self._record_success(result)
        return result

    def _run_cycle(self, cancel: Optional[threading.Event]) -> SyncResult:
        transport = self.transport()
        remote_name = self.settings.remote_name

        with self.store.lock:
            self._check_cancel(cancel, "download")
            data = transport.get(remote_name)

            if data is None:
                logger.info("No remote snapshot on %s, first sync", transport.name)
                snapshot = Snapshot()
            else:
                snapshot = decode_snapshot(data)

            self._check_cancel(cancel, "merge")
            report = merge_snapshot(self.store, snapshot)

            self._check_cancel(cancel, "upload")
            payload = encode_snapshot(export_snapshot(self.store))
            transport.put(remote_name, payload)

        return SyncResult(
            outcome=SyncOutcome.COMPLETED,
            remote_found=data is not None,
            merge=report,
            uploaded_bytes=len(payload),
            finished_at=datetime.now(timezone.utc),
        )

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event], step: str) -> None:
        if cancel is not None and cancel.is_set():
            raise SyncCancelled(f"Sync cancelled before {step}")

    def _refresh_state(self) -> None:
        # The CLI and the daemon both keep counters in the same file.
        self.state = self._load_state()

    def _record_attempt(self) -> None:
        with self._state_lock:
            self._refresh_state()
            self.state.last_attempt = datetime.now(timezone.utc)
            self._save_state()

    def _record_success(self, result: SyncResult) -> None:
        # Only last_sync_time is ours to write; the rest may have been
        # reconfigured by another process while the cycle ran.
        settings = self._load_settings()
        settings.last_sync_time = result.finished_at
        self.settings = settings
        self._write_settings()
        with self._state_lock:
            self._refresh_state()
            self.state.last_success = result.finished_at
            self.state.last_error = None
            self.state.sync_count += 1
            self._save_state()
        logger.info(
            "Sync completed via %s (%d bytes uploaded)",
            self.settings.target.value,
            result.uploaded_bytes,
        )

    def _record_failure(self, exc: Exception) -> None:
        with self._state_lock:
            self._refresh_state()
            self.state.last_error = str(exc)
            self.state.failure_count += 1
            self._save_state()
        logger.warning("Sync failed: %s", exc)

    def status_report(self) -> dict:
        """Current settings and state, JSON-safe, without the password."""
        return {
            "status": self.status.value,
            "settings": self.settings.model_dump(mode="json", exclude={"password"}),
            "state": self.state.model_dump(mode="json"),
            "records": {
                name: len(collection.list_active())
                for name, collection in self.store.collections.items()
            },
        }
