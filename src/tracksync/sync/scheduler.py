"""
Auto-sync scheduler -- decides when a background sync is due.

Two independent triggers feed the same ``sync_now()`` entry point:

    periodic tick   every ``tick_seconds`` while started
    trigger()       the host regained foreground (resume)

Neither queues anything. The engine's guard is the only coordination:
an overlapping attempt is skipped and the next trigger retries.
Background failures are logged and never propagate.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from .engine import SyncEngine
from .models import SyncInterval, SyncResult, SyncSettings

logger = logging.getLogger("tracksync.sync.scheduler")

DEFAULT_TICK_SECONDS = 60

INTERVAL_PERIODS = {
    SyncInterval.HOURLY: timedelta(hours=1),
    SyncInterval.DAILY: timedelta(days=1),
    SyncInterval.WEEKLY: timedelta(days=7),
}


def is_sync_due(settings: SyncSettings, now: Optional[datetime] = None) -> bool:
    """Whether an automatic sync should run now.

    Args:
        settings: Current sync settings.
        now: Override for the current time (UTC).

    Returns:
        False for MANUAL or target NONE. Otherwise True once the
        interval has elapsed since the last successful sync, or if
        there never was one.
    """
    if not settings.auto_sync_enabled:
        return False

    period = INTERVAL_PERIODS.get(settings.interval)
    if period is None:
        return False

    if settings.last_sync_time is None:
        return True

    last = settings.last_sync_time
    if last.tzinfo is None:
        last = last.replace(tzinfo=timezone.utc)
    elapsed = (now or datetime.now(timezone.utc)) - last
    return elapsed >= period


class AutoSyncScheduler:
    """Periodic background driver for a SyncEngine.

    Args:
        engine: Engine to drive.
        tick_seconds: Seconds between due-checks.
    """

    def __init__(self, engine: SyncEngine, tick_seconds: float = DEFAULT_TICK_SECONDS):
        self.engine = engine
        self.tick_seconds = tick_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.last_result: Optional[SyncResult] = None
        self.last_error: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def check_and_sync(self) -> Optional[SyncResult]:
        """Run a sync if one is due. Never raises.

        Settings are re-read first so the daemon follows changes the
        CLI made since the last tick.

        Returns:
            The sync result, or None if nothing ran or the sync failed.
        """
        self.engine.reload_settings()
        settings = self.engine.settings
        if not is_sync_due(settings):
            return None

        logger.info(
            "Auto-sync triggered. Last sync was: %s",
            settings.last_sync_time.isoformat() if settings.last_sync_time else "never",
        )
        try:
            result = self.engine.sync_now(cancel=self._stop_event)
        except Exception as exc:
            logger.error("Auto-sync failed: %s", exc)
            self.last_error = str(exc)
            return None

        self.last_result = result
        self.last_error = None
        return result

    def start(self) -> None:
        """Start periodic checks and run one immediately.

        Does nothing while the settings disable auto-sync. Calling it
        again while running only performs the immediate check.
        """
        if not self.engine.settings.auto_sync_enabled:
            logger.debug("Auto-sync disabled by settings")
            return

        with self._lock:
            if not self.running:
                self._stop_event.clear()
                self._thread = threading.Thread(
                    target=self._loop, name="tracksync-autosync", daemon=True
                )
                self._thread.start()
                logger.info("Auto-sync started, checking every %ss", self.tick_seconds)

        self.check_and_sync()

    def stop(self) -> None:
        """Stop periodic checks."""
        with self._lock:
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)
            logger.info("Auto-sync stopped")

    def trigger(self) -> threading.Thread:
        """Run one due-check now on a worker thread (app resumed).

        Returns:
            The worker thread, so callers may join it.
        """
        worker = threading.Thread(
            target=self.check_and_sync, name="tracksync-resume", daemon=True
        )
        worker.start()
        return worker

    def apply_settings(self) -> None:
        """Start or stop the timer to match the engine's current settings."""
        if self.engine.settings.auto_sync_enabled:
            if not self.running:
                self.start()
        else:
            self.stop()

    def _loop(self) -> None:
        while not self._stop_event.wait(timeout=self.tick_seconds):
            self.check_and_sync()
