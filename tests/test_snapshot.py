"""Tests for the snapshot codec."""

from __future__ import annotations

import json

import pytest

from conftest import at


@pytest.fixture
def filled_store(store):
    """A store with one tracker, one session, a tombstone and an active state."""
    from tracksync.models import (
        ActiveState,
        ManifestEntry,
        TrackerConfig,
        TrackingSession,
        TrackingStage,
    )

    store.manifest.put(ManifestEntry(file_id="f1", name="Fasting", icon="F", last_modified=at(0)))
    store.manifest.put(ManifestEntry(file_id="f2", name="Gone", last_modified=at(1), is_deleted=True))
    store.configs.put(
        TrackerConfig(
            file_id="f1",
            tracker_name="Fasting",
            stages=[TrackingStage(id=1, title="Ketosis", start=12, end=18)],
            last_modified=at(0),
        )
    )
    store.sessions.put(
        TrackingSession(
            session_id="s1",
            tracker_name="Fasting",
            start_time=at(0),
            end_time=at(90),
            duration_seconds=5400,
            last_modified=at(90),
        )
    )
    store.put_active_state(
        ActiveState(is_tracking=True, start_time=at(100), selected_tracker_file_id="f1", last_modified=at(100))
    )
    return store


class TestExport:
    """Capturing a store."""

    def test_includes_everything(self, filled_store):
        from tracksync.sync.snapshot import export_snapshot

        snapshot = export_snapshot(filled_store)

        assert {e.file_id for e in snapshot.manifest} == {"f1", "f2"}
        assert len(snapshot.configs) == 1
        assert len(snapshot.sessions) == 1
        assert snapshot.active_state.is_tracking is True

    def test_tombstones_exported(self, filled_store):
        """Deletes must travel, so tombstones are part of every snapshot."""
        from tracksync.sync.snapshot import export_snapshot

        snapshot = export_snapshot(filled_store)
        gone = next(e for e in snapshot.manifest if e.file_id == "f2")

        assert gone.is_deleted is True

    def test_no_active_state_until_written(self, store):
        from tracksync.sync.snapshot import export_snapshot

        assert export_snapshot(store).active_state is None

    def test_empty_store(self, store):
        from tracksync.sync.snapshot import export_snapshot

        snapshot = export_snapshot(store)
        assert snapshot.manifest == []
        assert snapshot.configs == []
        assert snapshot.sessions == []


class TestEncode:
    """The wire format."""

    def test_camel_case_keys(self, filled_store):
        from tracksync.sync.snapshot import encode_snapshot, export_snapshot

        doc = json.loads(encode_snapshot(export_snapshot(filled_store)))

        assert set(doc) == {"exportDate", "manifest", "configs", "sessions", "activeState"}
        assert doc["manifest"][0]["fileId"] in ("f1", "f2")
        assert doc["activeState"]["selectedTrackerFileId"] == "f1"
        assert doc["configs"][0]["stages"][0]["colorHex"] == "#CCCCCC"
        assert "isDeleted" in doc["sessions"][0]

    def test_round_trip_preserves_records(self, filled_store):
        from tracksync.sync.snapshot import decode_snapshot, encode_snapshot, export_snapshot

        original = export_snapshot(filled_store)
        decoded = decode_snapshot(encode_snapshot(original))

        assert decoded.manifest == original.manifest
        assert decoded.configs == original.configs
        assert decoded.sessions == original.sessions
        assert decoded.active_state == original.active_state


class TestDecode:
    """Parsing documents from other replicas."""

    def test_minimal_document(self):
        from tracksync.sync.snapshot import decode_snapshot

        snapshot = decode_snapshot(b'{"exportDate": "2026-03-01T12:00:00Z"}')

        assert snapshot.manifest == []
        assert snapshot.active_state is None

    def test_null_collections_treated_as_empty(self):
        from tracksync.sync.snapshot import decode_snapshot

        snapshot = decode_snapshot(b'{"manifest": null, "configs": null, "sessions": []}')

        assert snapshot.manifest == []
        assert snapshot.configs == []

    def test_accepts_text(self):
        from tracksync.sync.snapshot import decode_snapshot

        assert decode_snapshot("{}").sessions == []

    def test_invalid_json_raises(self):
        from tracksync.errors import DecodeError
        from tracksync.sync.snapshot import decode_snapshot

        with pytest.raises(DecodeError):
            decode_snapshot(b"{not json")

    def test_non_utf8_raises(self):
        from tracksync.errors import DecodeError
        from tracksync.sync.snapshot import decode_snapshot

        with pytest.raises(DecodeError):
            decode_snapshot(b"\xff\xfe\x00garbage")

    def test_non_object_raises(self):
        from tracksync.errors import DecodeError
        from tracksync.sync.snapshot import decode_snapshot

        with pytest.raises(DecodeError, match="JSON object"):
            decode_snapshot(b"[1, 2, 3]")

    def test_wrong_shape_raises(self):
        from tracksync.errors import DecodeError
        from tracksync.sync.snapshot import decode_snapshot

        with pytest.raises(DecodeError):
            decode_snapshot(b'{"manifest": [{"name": "no file id"}]}')

    def test_failed_import_leaves_store_untouched(self, filled_store, tmp_home):
        """A malformed document is rejected before anything is merged."""
        from tracksync.errors import DecodeError
        from tracksync.sync.engine import SyncEngine

        engine = SyncEngine(tmp_home, store=filled_store)
        before = filled_store.manifest.list_all()

        with pytest.raises(DecodeError):
            engine.import_snapshot(b'{"manifest": "oops"}')

        assert filled_store.manifest.list_all() == before
