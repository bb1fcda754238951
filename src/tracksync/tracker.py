"""
Tracker service -- the ordinary, non-sync mutations of a replica.

Creating and deleting trackers, starting and stopping the timer,
recording sessions, and reporting progress through a tracker's
stages while it runs. Every write stamps ``last_modified`` through
the store so the sync engine can order it against remote changes,
and every write holds the store lock so it never interleaves with
a merge.
"""

from __future__ import annotations

import csv
import io
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel

from .errors import TrackerStateError
from .models import (
    ActiveState,
    ManifestEntry,
    TrackerConfig,
    TrackingSession,
    TrackingStage,
    as_utc,
)
from .store import EntityStore, stamp

logger = logging.getLogger("tracksync.tracker")

CSV_HEADER = ["Id", "TrackerName", "StartTime", "EndTime", "DurationSeconds", "DurationDisplay"]


def format_duration(seconds: float) -> str:
    """Short human display for a session length.

    Returns:
        str: ``"1.5 hrs"`` for an hour or more, otherwise ``"45 mins"``.
    """
    hours = seconds / 3600
    if hours >= 1:
        return f"{hours:.1f} hrs"
    return f"{seconds / 60:.0f} mins"


# duration_type (case-insensitive) -> unit of the stage bounds
DURATION_UNITS = {
    "week": "weeks",
    "weeks": "weeks",
    "day": "days",
    "days": "days",
}


def duration_unit(duration_type: Optional[str]) -> str:
    """Unit that stage bounds are measured in; hours unless days or weeks."""
    return DURATION_UNITS.get((duration_type or "").lower(), "hours")


def duration_value(seconds: float, duration_type: Optional[str]) -> float:
    """Elapsed time expressed in the tracker's unit."""
    unit = duration_unit(duration_type)
    if unit == "weeks":
        return seconds / 86400 / 7
    if unit == "days":
        return seconds / 86400
    return seconds / 3600


def format_elapsed(seconds: float, duration_type: Optional[str]) -> str:
    """Running-timer display for a tracker's duration type.

    Returns:
        str: ``"2 Wks, 3 Days"`` for weeks, ``"4 Days, 6 Hrs"`` for days,
        otherwise ``"HH:MM:SS"`` with hours running past 24.
    """
    whole = int(max(seconds, 0))
    unit = duration_unit(duration_type)
    if unit == "weeks":
        days = whole // 86400
        return f"{days // 7} Wks, {days % 7} Days"
    if unit == "days":
        return f"{whole // 86400} Days, {whole % 86400 // 3600} Hrs"
    hours, rest = divmod(whole, 3600)
    return f"{hours:02d}:{rest // 60:02d}:{rest % 60:02d}"


def find_stage(stages: list[TrackingStage], value: float) -> Optional[TrackingStage]:
    """The stage whose ``[start, end)`` window holds ``value``.

    Past the end of the last stage the last stage stays current. A value
    in a gap between stages, or before the first one, has no stage.
    """
    for stage in stages:
        if stage.start <= value < stage.end:
            return stage
    if stages and value > stages[-1].end:
        return stages[-1]
    return None


class TrackerProgress(BaseModel):
    """Where the running timer stands against its tracker's stages."""

    is_tracking: bool = False
    file_id: str = ""
    tracker_name: str = ""
    start_time: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    value: float = 0.0
    unit: str = "hours"
    elapsed_display: str = "00:00:00"
    stage: Optional[TrackingStage] = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TrackerService:
    """User-facing tracker operations over an EntityStore.

    Args:
        store: The local replica.
    """

    def __init__(self, store: EntityStore):
        self.store = store

    # ------------------------------------------------------------------
    # Trackers
    # ------------------------------------------------------------------

    def save_tracker(self, entry: ManifestEntry, config: TrackerConfig) -> None:
        """Create or update a tracker definition and its config.

        Both records get the same fresh stamp and are marked active,
        which also revives a previously deleted tracker.
        """
        if entry.file_id != config.file_id:
            raise ValueError(
                f"Manifest entry {entry.file_id!r} and config {config.file_id!r} differ"
            )

        with self.store.lock:
            previous = [
                r.last_modified
                for r in (self.store.manifest.get(entry.file_id), self.store.configs.get(config.file_id))
                if r is not None
            ]
            now = stamp(max(previous) if previous else None)

            entry = entry.model_copy(update={"last_modified": now, "is_deleted": False})
            config = config.model_copy(update={"last_modified": now, "is_deleted": False})
            self.store.manifest.put(entry)
            self.store.configs.put(config)
        logger.info("Saved tracker %s (%s)", entry.file_id, entry.name)

    def delete_tracker(self, file_id: str) -> bool:
        """Tombstone a tracker's manifest entry and config.

        Returns:
            True if either record existed.
        """
        with self.store.lock:
            found_entry = self.store.manifest.soft_delete(file_id)
            found_config = self.store.configs.soft_delete(file_id)
        return found_entry or found_config

    def list_trackers(self) -> list[ManifestEntry]:
        """Active tracker definitions, sorted by name."""
        return sorted(self.store.manifest.list_active(), key=lambda e: e.name.lower())

    def get_config(self, file_id: str) -> Optional[TrackerConfig]:
        """A tracker's config, or None if missing or deleted."""
        config = self.store.configs.get(file_id)
        if config is None or config.is_deleted:
            return None
        return config

    def tracker_name(self, file_id: str) -> str:
        """Display name for a tracker, falling back to its file id."""
        config = self.store.configs.get(file_id)
        if config is not None and config.tracker_name:
            return config.tracker_name
        entry = self.store.manifest.get(file_id)
        if entry is not None:
            return entry.name
        return file_id

    # ------------------------------------------------------------------
    # Active state
    # ------------------------------------------------------------------

    def active_state(self) -> ActiveState:
        return self.store.get_active_state()

    def _update_active(self, **changes) -> ActiveState:
        with self.store.lock:
            current = self.store.get_active_state()
            changes["last_modified"] = stamp(current.last_modified)
            updated = ActiveState.model_validate({**current.model_dump(), **changes})
            self.store.put_active_state(updated)
        return updated

    def select_tracker(self, file_id: str) -> ActiveState:
        """Make ``file_id`` the tracker shown and started by default."""
        if self.get_config(file_id) is None:
            raise TrackerStateError(f"Unknown tracker: {file_id}")
        return self._update_active(selected_tracker_file_id=file_id)

    def start_tracking(
        self,
        file_id: Optional[str] = None,
        start_time: Optional[datetime] = None,
    ) -> ActiveState:
        """Start the timer.

        Args:
            file_id: Tracker to start. Defaults to the selected one.
            start_time: When the interval began. Defaults to now.

        Raises:
            TrackerStateError: Already tracking, or no valid tracker.
        """
        with self.store.lock:
            current = self.store.get_active_state()
            if current.is_tracking:
                raise TrackerStateError("A tracker is already running")

            target = file_id or current.selected_tracker_file_id
            if not target or self.get_config(target) is None:
                raise TrackerStateError(f"Unknown tracker: {target or '(none selected)'}")

            state = self._update_active(
                is_tracking=True,
                start_time=start_time or _utcnow(),
                selected_tracker_file_id=target,
            )
        logger.info("Tracking started for %s", target)
        return state

    def edit_start_time(self, start_time: datetime) -> ActiveState:
        """Correct the start of the running interval."""
        with self.store.lock:
            if not self.store.get_active_state().is_tracking:
                raise TrackerStateError("Nothing is being tracked")
            return self._update_active(start_time=start_time)

    def current_progress(self, now: Optional[datetime] = None) -> TrackerProgress:
        """Elapsed time and current stage of the selected tracker.

        While stopped the stage is the tracker's ``stopped_state`` and
        the elapsed values are zero.

        Args:
            now: Override for the current time (UTC).
        """
        state = self.store.get_active_state()
        file_id = state.selected_tracker_file_id
        config = self.get_config(file_id) if file_id else None
        duration_type = config.duration_type if config else None
        progress = TrackerProgress(
            file_id=file_id,
            tracker_name=self.tracker_name(file_id) if file_id else "",
            unit=duration_unit(duration_type),
            elapsed_display=format_elapsed(0, duration_type),
        )

        if not state.is_tracking or state.start_time is None:
            progress.stage = config.stopped_state if config else None
            return progress

        elapsed = max(((as_utc(now) or _utcnow()) - state.start_time).total_seconds(), 0.0)
        value = duration_value(elapsed, duration_type)
        progress.is_tracking = True
        progress.start_time = state.start_time
        progress.elapsed_seconds = elapsed
        progress.value = value
        progress.elapsed_display = format_elapsed(elapsed, duration_type)
        progress.stage = find_stage(config.stages, value) if config else None
        return progress

    def stop_tracking(self, end_time: Optional[datetime] = None) -> TrackingSession:
        """Stop the timer and record the finished interval.

        Returns:
            The new session.

        Raises:
            TrackerStateError: Nothing is being tracked.
        """
        with self.store.lock:
            current = self.store.get_active_state()
            if not current.is_tracking or current.start_time is None:
                raise TrackerStateError("Nothing is being tracked")

            end = as_utc(end_time) or _utcnow()
            if end < current.start_time:
                raise TrackerStateError("End time is before the start time")

            session = TrackingSession(
                tracker_name=self.tracker_name(current.selected_tracker_file_id),
                start_time=current.start_time,
                end_time=end,
                duration_seconds=(end - current.start_time).total_seconds(),
                last_modified=stamp(),
            )
            self.store.sessions.put(session)
            self._update_active(is_tracking=False, start_time=None)

        logger.info(
            "Tracking stopped for %s after %s",
            session.tracker_name,
            format_duration(session.duration_seconds),
        )
        return session

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def delete_session(self, session_id: str) -> bool:
        return self.store.sessions.soft_delete(session_id)

    def history(self, tracker_name: Optional[str] = None) -> list[TrackingSession]:
        """Active sessions, newest first.

        Args:
            tracker_name: Only sessions of this tracker (case-insensitive).
        """
        sessions = self.store.sessions.list_active()
        if tracker_name:
            needle = tracker_name.lower()
            sessions = [s for s in sessions if s.tracker_name.lower() == needle]
        return sorted(sessions, key=lambda s: s.start_time, reverse=True)

    def export_history_json(self) -> str:
        """All sessions, tombstones included, as indented JSON."""
        sessions = self.store.sessions.list_all()
        return json.dumps(
            [s.model_dump(mode="json", by_alias=True) for s in sessions],
            indent=2,
        )

    def export_history_csv(self) -> str:
        """All sessions, tombstones included, as CSV."""
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)
        for s in self.store.sessions.list_all():
            writer.writerow([
                s.session_id,
                s.tracker_name,
                s.start_time.isoformat(),
                s.end_time.isoformat(),
                s.duration_seconds,
                format_duration(s.duration_seconds),
            ])
        return buffer.getvalue()
