"""
Sync data models -- settings and state for the sync system.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

DEFAULT_REMOTE_NAME = "opentracker_backup.json"


class SyncTarget(str, Enum):
    """Where the shared snapshot lives."""

    NONE = "none"
    WEBDAV = "webdav"
    S3 = "s3"
    SFTP = "sftp"
    LOCAL = "local"


class SyncInterval(str, Enum):
    """How often the scheduler syncs on its own."""

    MANUAL = "manual"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"


class SyncOutcome(str, Enum):
    """How a sync cycle ended when it did not raise."""

    COMPLETED = "completed"
    SKIPPED = "skipped"
    DISABLED = "disabled"


class SyncSettings(BaseModel):
    """User-facing sync configuration, persisted as YAML."""

    target: SyncTarget = SyncTarget.NONE
    interval: SyncInterval = SyncInterval.MANUAL
    host_url: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    bucket_name: Optional[str] = None
    region: Optional[str] = None
    local_path: Optional[Path] = None
    remote_name: str = DEFAULT_REMOTE_NAME
    timeout_seconds: float = 30.0
    last_sync_time: Optional[datetime] = None

    @property
    def auto_sync_enabled(self) -> bool:
        """True when the scheduler should run at all."""
        return (
            self.target != SyncTarget.NONE
            and self.interval != SyncInterval.MANUAL
        )


class MergeCounts(BaseModel):
    """Per-collection tally of one merge."""

    inserted: int = 0
    replaced: int = 0
    kept: int = 0

    @property
    def changed(self) -> int:
        return self.inserted + self.replaced


class MergeReport(BaseModel):
    """What a merge did to the local store."""

    manifest: MergeCounts = Field(default_factory=MergeCounts)
    configs: MergeCounts = Field(default_factory=MergeCounts)
    sessions: MergeCounts = Field(default_factory=MergeCounts)
    active_state: MergeCounts = Field(default_factory=MergeCounts)

    @property
    def changed(self) -> int:
        """Total records inserted or replaced."""
        return sum(
            counts.changed
            for counts in (self.manifest, self.configs, self.sessions, self.active_state)
        )

    def summary(self) -> str:
        """One-line description for logs and CLI output."""
        parts = []
        for name in ("manifest", "configs", "sessions", "active_state"):
            counts: MergeCounts = getattr(self, name)
            parts.append(f"{name} +{counts.inserted}/~{counts.replaced}")
        return ", ".join(parts)


class SyncResult(BaseModel):
    """Return value of a sync cycle."""

    outcome: SyncOutcome
    remote_found: bool = False
    merge: Optional[MergeReport] = None
    uploaded_bytes: int = 0
    finished_at: Optional[datetime] = None

    @property
    def skipped(self) -> bool:
        return self.outcome == SyncOutcome.SKIPPED


class SyncState(BaseModel):
    """Sync bookkeeping persisted to disk."""

    last_attempt: Optional[datetime] = None
    last_success: Optional[datetime] = None
    last_error: Optional[str] = None
    sync_count: int = 0
    skipped_count: int = 0
    failure_count: int = 0
