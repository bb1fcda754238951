"""Tests for the sync engine -- cycles, guard, failure handling."""

from __future__ import annotations

import json
import threading

import pytest

from conftest import MemoryTransport, at


def _add_tracker(engine, file_id="f1", name="Fasting", minutes=0):
    from tracksync.models import ManifestEntry, TrackerConfig

    engine.store.manifest.put(ManifestEntry(file_id=file_id, name=name, last_modified=at(minutes)))
    engine.store.configs.put(TrackerConfig(file_id=file_id, tracker_name=name, last_modified=at(minutes)))


class BlockingTransport(MemoryTransport):
    """Holds every get until released, so a cycle can be caught mid-flight."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def get(self, name):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().get(name)


class CancellingTransport(MemoryTransport):
    """Sets the cancel event while the download is in flight."""

    def __init__(self, cancel):
        super().__init__()
        self.cancel = cancel

    def get(self, name):
        data = super().get(name)
        self.cancel.set()
        return data


class TestSyncCycle:
    """End-to-end cycles against an in-memory remote."""

    def test_first_sync_uploads_local_state(self, make_engine, remote):
        """No remote file yet: nothing merges, the local store is uploaded."""
        from tracksync.sync.models import DEFAULT_REMOTE_NAME, SyncOutcome

        engine = make_engine("a")
        _add_tracker(engine)

        result = engine.sync_now()

        assert result.outcome == SyncOutcome.COMPLETED
        assert result.remote_found is False
        assert result.merge.changed == 0
        doc = json.loads(remote.blobs[DEFAULT_REMOTE_NAME])
        assert doc["manifest"][0]["fileId"] == "f1"
        assert result.uploaded_bytes == len(remote.blobs[DEFAULT_REMOTE_NAME])

    def test_second_device_receives_records(self, make_engine):
        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a)

        engine_a.sync_now()
        result = engine_b.sync_now()

        assert result.remote_found is True
        assert result.merge.manifest.inserted == 1
        assert engine_b.store.manifest.get("f1").name == "Fasting"

    def test_concurrent_edits_newest_wins(self, make_engine):
        """Both devices rename the same tracker; the later rename survives everywhere."""
        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a, minutes=0)
        engine_a.sync_now()
        engine_b.sync_now()

        _add_tracker(engine_a, name="Fast A", minutes=5)
        _add_tracker(engine_b, name="Fast B", minutes=7)
        engine_a.sync_now()
        engine_b.sync_now()
        engine_a.sync_now()

        assert engine_a.store.manifest.get("f1").name == "Fast B"
        assert engine_b.store.manifest.get("f1").name == "Fast B"

    def test_delete_propagates(self, make_engine):
        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a)
        engine_a.sync_now()
        engine_b.sync_now()

        engine_b.store.manifest.soft_delete("f1")
        engine_b.sync_now()
        engine_a.sync_now()

        assert engine_a.store.manifest.get("f1").is_deleted is True

    def test_upload_contains_merged_union(self, make_engine, remote):
        from tracksync.sync.models import DEFAULT_REMOTE_NAME

        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a, "fa")
        _add_tracker(engine_b, "fb")

        engine_a.sync_now()
        engine_b.sync_now()

        doc = json.loads(remote.blobs[DEFAULT_REMOTE_NAME])
        assert {e["fileId"] for e in doc["manifest"]} == {"fa", "fb"}

    def test_success_updates_settings_and_state(self, make_engine, tmp_path):
        from tracksync.sync.engine import SyncEngine

        engine = make_engine("a")
        engine.sync_now()

        assert engine.settings.last_sync_time is not None
        assert engine.state.sync_count == 1
        assert engine.state.last_error is None

        reloaded = SyncEngine(tmp_path / "a")
        assert reloaded.settings.last_sync_time == engine.settings.last_sync_time
        assert reloaded.state.sync_count == 1


class TestFailures:
    """Transport and decode failures."""

    def test_download_error_propagates_and_is_recorded(self, make_engine, remote):
        from tracksync.errors import TransportError

        engine = make_engine("a")
        remote.fail_get = TransportError("boom", status_code=500)

        with pytest.raises(TransportError):
            engine.sync_now()

        assert engine.state.failure_count == 1
        assert engine.state.last_error == "boom"
        assert engine.settings.last_sync_time is None
        assert remote.puts == 0

    def test_decode_error_leaves_store_untouched(self, make_engine, remote):
        from tracksync.errors import DecodeError
        from tracksync.sync.models import DEFAULT_REMOTE_NAME

        engine = make_engine("a")
        _add_tracker(engine)
        remote.blobs[DEFAULT_REMOTE_NAME] = b"not json"

        with pytest.raises(DecodeError):
            engine.sync_now()

        assert engine.store.manifest.get("f1").name == "Fasting"
        assert remote.blobs[DEFAULT_REMOTE_NAME] == b"not json"

    def test_upload_failure_keeps_merge_and_retry_succeeds(self, make_engine, remote):
        """The merged store survives a failed upload; the next cycle re-uploads it."""
        from tracksync.errors import TransportError
        from tracksync.sync.models import DEFAULT_REMOTE_NAME

        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a, "fa")
        engine_a.sync_now()
        _add_tracker(engine_b, "fb")

        remote.fail_put = TransportError("disk full")
        with pytest.raises(TransportError):
            engine_b.sync_now()
        assert engine_b.store.manifest.get("fa") is not None

        engine_b.sync_now()
        doc = json.loads(remote.blobs[DEFAULT_REMOTE_NAME])
        assert {e["fileId"] for e in doc["manifest"]} == {"fa", "fb"}

    def test_guard_released_after_failure(self, make_engine, remote):
        from tracksync.errors import TransportError
        from tracksync.sync.engine import EngineStatus

        engine = make_engine("a")
        remote.fail_get = TransportError("offline")
        with pytest.raises(TransportError):
            engine.sync_now()

        assert engine.status == EngineStatus.IDLE
        assert engine.sync_now().outcome.value == "completed"


class TestGuard:
    """At most one cycle at a time."""

    def test_try_acquire_is_exclusive(self):
        from tracksync.sync.engine import SyncGuard

        guard = SyncGuard()
        assert guard.try_acquire() is True
        assert guard.try_acquire() is False
        guard.release()
        assert guard.try_acquire() is True

    def test_overlapping_sync_is_skipped(self, make_engine):
        from tracksync.sync.models import SyncOutcome

        transport = BlockingTransport()
        engine = make_engine("a", transport=transport)
        results = []
        worker = threading.Thread(target=lambda: results.append(engine.sync_now()))
        worker.start()
        assert transport.entered.wait(timeout=5)

        assert engine.is_syncing is True
        second = engine.sync_now()
        transport.release.set()
        worker.join(timeout=5)

        assert second.outcome == SyncOutcome.SKIPPED
        assert second.skipped is True
        assert results[0].outcome == SyncOutcome.COMPLETED
        assert transport.gets == 1
        assert engine.state.skipped_count == 1

    def test_skipped_attempt_is_persisted(self, make_engine, tmp_path):
        from tracksync.sync.engine import SyncEngine

        transport = BlockingTransport()
        engine = make_engine("a", transport=transport)
        worker = threading.Thread(target=engine.sync_now)
        worker.start()
        assert transport.entered.wait(timeout=5)

        engine.sync_now()
        transport.release.set()
        worker.join(timeout=5)

        reloaded = SyncEngine(tmp_path / "a").state
        assert reloaded.skipped_count == 1
        assert reloaded.sync_count == 1


class TestDisabledAndCancel:
    """Target NONE and cooperative cancellation."""

    def test_no_target_is_disabled(self, tmp_home):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncOutcome

        transport = MemoryTransport()
        engine = SyncEngine(tmp_home, transport=transport)

        assert engine.sync_now().outcome == SyncOutcome.DISABLED
        assert transport.gets == 0

    def test_cancel_before_start(self, make_engine, remote):
        from tracksync.errors import SyncCancelled

        engine = make_engine("a")
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(SyncCancelled):
            engine.sync_now(cancel=cancel)

        assert remote.gets == 0
        assert engine.state.failure_count == 1

    def test_cancel_during_download_merges_nothing(self, make_engine, remote):
        from tracksync.errors import SyncCancelled

        engine_a = make_engine("a")
        _add_tracker(engine_a, "fa")
        engine_a.sync_now()

        cancel = threading.Event()
        transport = CancellingTransport(cancel)
        transport.blobs = remote.blobs
        engine_b = make_engine("b", transport=transport)

        with pytest.raises(SyncCancelled, match="merge"):
            engine_b.sync_now(cancel=cancel)

        assert engine_b.store.manifest.get("fa") is None
        assert transport.puts == 0

    def test_cancel_after_merge_skips_upload(self, make_engine, remote):
        """The merged store is kept; the remote and last_sync_time are not touched."""
        from unittest.mock import patch

        from tracksync.errors import SyncCancelled
        from tracksync.sync.merge import merge_snapshot
        from tracksync.sync.models import DEFAULT_REMOTE_NAME

        engine_a = make_engine("a")
        _add_tracker(engine_a, "fa")
        engine_a.sync_now()
        engine_b = make_engine("b")
        _add_tracker(engine_b, "fb")
        uploaded = remote.blobs[DEFAULT_REMOTE_NAME]
        puts = remote.puts
        cancel = threading.Event()

        def merge_then_cancel(store, snapshot):
            report = merge_snapshot(store, snapshot)
            cancel.set()
            return report

        with patch("tracksync.sync.engine.merge_snapshot", side_effect=merge_then_cancel):
            with pytest.raises(SyncCancelled, match="upload"):
                engine_b.sync_now(cancel=cancel)

        assert engine_b.store.manifest.get("fa") is not None
        assert remote.puts == puts
        assert remote.blobs[DEFAULT_REMOTE_NAME] == uploaded
        assert engine_b.settings.last_sync_time is None
        assert engine_b.state.failure_count == 1

    def test_unsupported_target_raises(self, tmp_home):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncSettings, SyncTarget

        engine = SyncEngine(tmp_home)
        engine.save_settings(SyncSettings(target=SyncTarget.SFTP))

        with pytest.raises(ValueError, match="sftp"):
            engine.sync_now()


class TestSettingsAndExport:
    """Persistence and manual export/import."""

    def test_settings_round_trip_yaml(self, tmp_home):
        import yaml

        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncInterval, SyncSettings, SyncTarget

        engine = SyncEngine(tmp_home)
        engine.save_settings(
            SyncSettings(target=SyncTarget.LOCAL, interval=SyncInterval.DAILY, local_path=tmp_home / "share")
        )

        raw = yaml.safe_load(engine.settings_file.read_text())
        assert raw["target"] == "local"
        assert SyncEngine(tmp_home).settings.interval == SyncInterval.DAILY

    def test_corrupt_settings_fall_back_to_defaults(self, tmp_home):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncTarget

        (tmp_home / "sync").mkdir()
        (tmp_home / "sync" / "config.yaml").write_text("target: [unclosed")

        assert SyncEngine(tmp_home).settings.target == SyncTarget.NONE

    def test_reload_settings_sees_external_write(self, tmp_home):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncSettings, SyncTarget

        daemon_engine = SyncEngine(tmp_home)
        SyncEngine(tmp_home).save_settings(SyncSettings(target=SyncTarget.WEBDAV, host_url="https://x"))

        assert daemon_engine.settings.target == SyncTarget.NONE
        assert daemon_engine.reload_settings().target == SyncTarget.WEBDAV

    def test_export_then_import_into_other_replica(self, make_engine):
        engine_a = make_engine("a")
        engine_b = make_engine("b")
        _add_tracker(engine_a)

        report = engine_b.import_snapshot(engine_a.export_snapshot())

        assert report.manifest.inserted == 1
        assert engine_b.store.configs.get("f1").tracker_name == "Fasting"

    def test_status_report_hides_password(self, tmp_home):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncSettings, SyncTarget

        engine = SyncEngine(tmp_home)
        engine.save_settings(SyncSettings(target=SyncTarget.WEBDAV, host_url="https://x", password="hunter2"))

        report = engine.status_report()
        assert "password" not in report["settings"]
        assert report["status"] == "idle"
        assert report["records"] == {"manifest": 0, "configs": 0, "sessions": 0}


class TestSharedSettingsAndState:
    """Another process on the same home changes settings or counters."""

    def test_target_disabled_elsewhere_applies_to_next_cycle(self, make_engine, remote, tmp_path):
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncOutcome, SyncSettings, SyncTarget

        daemon_engine = make_engine("a")
        SyncEngine(tmp_path / "a").save_settings(SyncSettings(target=SyncTarget.NONE))

        assert daemon_engine.sync_now().outcome == SyncOutcome.DISABLED
        assert remote.gets == 0
        assert SyncEngine(tmp_path / "a").settings.target == SyncTarget.NONE

    def test_success_only_writes_last_sync_time(self, make_engine, tmp_path):
        """A reconfigure during a cycle survives the cycle's completion."""
        from tracksync.sync.engine import SyncEngine
        from tracksync.sync.models import SyncInterval

        transport = BlockingTransport()
        daemon_engine = make_engine("a", transport=transport)
        worker = threading.Thread(target=daemon_engine.sync_now)
        worker.start()
        assert transport.entered.wait(timeout=5)

        cli = SyncEngine(tmp_path / "a")
        cli.save_settings(cli.settings.model_copy(update={"interval": SyncInterval.WEEKLY}))
        transport.release.set()
        worker.join(timeout=5)

        on_disk = SyncEngine(tmp_path / "a").settings
        assert on_disk.interval == SyncInterval.WEEKLY
        assert on_disk.last_sync_time is not None

    def test_counters_accumulate_across_engines(self, make_engine, remote, tmp_path):
        from tracksync.sync.engine import SyncEngine

        make_engine("a").sync_now()
        SyncEngine(tmp_path / "a", transport=remote).sync_now()

        assert SyncEngine(tmp_path / "a").state.sync_count == 2
