"""Tests for the auto-sync scheduler."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import T0


def _settings(interval="hourly", target="webdav", last=None):
    from tracksync.sync.models import SyncInterval, SyncSettings, SyncTarget

    return SyncSettings(
        target=SyncTarget(target),
        interval=SyncInterval(interval),
        last_sync_time=last,
    )


class TestIsSyncDue:
    """Interval thresholds."""

    @pytest.mark.parametrize(
        "interval,elapsed,due",
        [
            ("hourly", timedelta(minutes=59), False),
            ("hourly", timedelta(hours=1), True),
            ("daily", timedelta(hours=23), False),
            ("daily", timedelta(days=1, seconds=1), True),
            ("weekly", timedelta(days=6), False),
            ("weekly", timedelta(days=7), True),
        ],
    )
    def test_thresholds(self, interval, elapsed, due):
        from tracksync.sync.scheduler import is_sync_due

        settings = _settings(interval, last=T0)
        assert is_sync_due(settings, now=T0 + elapsed) is due

    def test_never_synced_is_due(self):
        from tracksync.sync.scheduler import is_sync_due

        assert is_sync_due(_settings("weekly"), now=T0) is True

    def test_manual_never_due(self):
        from tracksync.sync.scheduler import is_sync_due

        assert is_sync_due(_settings("manual"), now=T0) is False

    def test_no_target_never_due(self):
        from tracksync.sync.scheduler import is_sync_due

        assert is_sync_due(_settings("hourly", target="none"), now=T0) is False

    def test_naive_last_sync_treated_as_utc(self):
        from tracksync.sync.scheduler import is_sync_due

        settings = _settings("hourly", last=T0.replace(tzinfo=None))
        assert is_sync_due(settings, now=T0 + timedelta(hours=2)) is True


@pytest.fixture
def engine():
    """A mock engine with hourly sync that has never run."""
    mock = MagicMock()
    mock.settings = _settings("hourly")
    return mock


class TestCheckAndSync:
    """One due-check."""

    def test_runs_when_due(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine)
        result = scheduler.check_and_sync()

        engine.sync_now.assert_called_once()
        assert result is engine.sync_now.return_value
        assert scheduler.last_result is result

    def test_passes_stop_event_as_cancel(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine)
        scheduler.check_and_sync()

        assert engine.sync_now.call_args.kwargs["cancel"] is scheduler._stop_event

    def test_skips_when_not_due(self, engine):
        from datetime import datetime, timezone

        from tracksync.sync.scheduler import AutoSyncScheduler

        engine.settings = _settings("daily", last=datetime.now(timezone.utc))
        assert AutoSyncScheduler(engine).check_and_sync() is None
        engine.sync_now.assert_not_called()

    def test_failure_is_swallowed_and_recorded(self, engine):
        """Background failures never escape the scheduler."""
        from tracksync.errors import TransportError
        from tracksync.sync.scheduler import AutoSyncScheduler

        engine.sync_now.side_effect = TransportError("offline")
        scheduler = AutoSyncScheduler(engine)

        assert scheduler.check_and_sync() is None
        assert scheduler.last_error == "offline"


class TestLifecycle:
    """Starting, stopping and resume triggers."""

    def test_start_is_noop_when_manual(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        engine.settings = _settings("manual")
        scheduler = AutoSyncScheduler(engine)
        scheduler.start()

        assert scheduler.running is False
        engine.sync_now.assert_not_called()

    def test_start_runs_immediately_then_stops(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine, tick_seconds=3600)
        scheduler.start()
        try:
            assert scheduler.running is True
            engine.sync_now.assert_called_once()
        finally:
            scheduler.stop()

        assert scheduler.running is False

    def test_tick_triggers_checks(self, engine):
        import time

        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine, tick_seconds=0.05)
        scheduler.start()
        time.sleep(0.3)
        scheduler.stop()

        assert engine.sync_now.call_count >= 2

    def test_trigger_runs_on_worker(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine)
        worker = scheduler.trigger()
        worker.join(timeout=5)

        engine.sync_now.assert_called_once()

    def test_apply_settings_stops_when_disabled(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(engine, tick_seconds=3600)
        scheduler.start()
        engine.settings = _settings("manual")
        scheduler.apply_settings()

        assert scheduler.running is False

    def test_with_real_engine(self, make_engine, remote):
        """A due scheduler drives a real cycle to the remote."""
        from tracksync.sync.scheduler import AutoSyncScheduler

        scheduler = AutoSyncScheduler(make_engine("a"))
        result = scheduler.check_and_sync()

        assert result.outcome.value == "completed"
        assert remote.puts == 1


class TestSettingsReload:
    """The daemon's scheduler follows settings written elsewhere."""

    def test_reloads_before_each_check(self, engine):
        from tracksync.sync.scheduler import AutoSyncScheduler

        AutoSyncScheduler(engine).check_and_sync()

        engine.reload_settings.assert_called_once()

    def test_manual_written_by_other_process_stops_syncs(self, make_engine, remote, tmp_path):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncInterval
        from tracksync.sync.scheduler import AutoSyncScheduler

        engine = make_engine("a")
        cli = SyncEngine(tmp_path / "a")
        cli.save_settings(cli.settings.model_copy(update={"interval": SyncInterval.MANUAL}))

        assert AutoSyncScheduler(engine).check_and_sync() is None
        assert remote.gets == 0
