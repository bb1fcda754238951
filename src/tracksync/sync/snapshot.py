"""
Snapshot codec -- the whole replica as one portable JSON document.

A snapshot is never a delta. It carries every record of every
collection, tombstones included, plus the active state, so applying
it to any replica is enough to converge.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import Field, ValidationError

from ..errors import DecodeError
from ..models import (
    ActiveState,
    ManifestEntry,
    TrackerConfig,
    TrackingSession,
    WireModel,
)
from ..store import EntityStore


class Snapshot(WireModel):
    """Complete, self-describing replica state."""

    export_date: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    manifest: list[ManifestEntry] = Field(default_factory=list)
    configs: list[TrackerConfig] = Field(default_factory=list)
    sessions: list[TrackingSession] = Field(default_factory=list)
    active_state: Optional[ActiveState] = None

    def records(self, collection: str) -> list:
        """Records of one collection by store name."""
        return list(getattr(self, collection))


def export_snapshot(store: EntityStore) -> Snapshot:
    """Capture the full contents of a store.

    Tombstones are exported for all three collections so deletes reach
    other replicas. The active state is only included once something
    on this replica has written it.
    """
    with store.lock:
        return Snapshot(
            manifest=store.manifest.list_all(),
            configs=store.configs.list_all(),
            sessions=store.sessions.list_all(),
            active_state=(
                store.get_active_state() if store.has_active_state() else None
            ),
        )


def encode_snapshot(snapshot: Snapshot) -> bytes:
    """Serialize a snapshot to indented UTF-8 JSON with camelCase fields."""
    return snapshot.model_dump_json(by_alias=True, indent=2).encode("utf-8")


def decode_snapshot(data: Union[bytes, str]) -> Snapshot:
    """Parse a snapshot document.

    Args:
        data: Raw document bytes (or text).

    Returns:
        The decoded Snapshot.

    Raises:
        DecodeError: If the document is not valid JSON or has the wrong shape.
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise DecodeError(f"Snapshot is not valid JSON: {exc}") from exc

    if not isinstance(raw, dict):
        raise DecodeError(
            f"Snapshot must be a JSON object, got {type(raw).__name__}"
        )

    # Older exports wrote explicit nulls for empty collections.
    for name in ("manifest", "configs", "sessions"):
        if raw.get(name) is None:
            raw.pop(name, None)

    try:
        return Snapshot.model_validate(raw)
    except ValidationError as exc:
        raise DecodeError(f"Snapshot has an invalid shape: {exc}") from exc
