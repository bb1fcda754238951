"""
Pydantic models for every record a replica owns.

Each synchronized record carries ``last_modified`` (stamped by the
replica that changed it) and, except for the active state singleton,
an ``is_deleted`` tombstone flag. Records are never erased by sync;
deletes travel as tombstones.

On the wire the fields use camelCase (``fileId``, ``lastModified``);
in Python they are snake_case. Both spellings are accepted on input.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import ClassVar, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
ACTIVE_STATE_KEY = "active"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes from older exports as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for models serialized into snapshot documents."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )


class TimestampedRecord(WireModel):
    """A keyed record that merges by last-write-wins."""

    key_field: ClassVar[str] = ""

    last_modified: datetime = EPOCH

    @field_validator("last_modified")
    @classmethod
    def last_modified_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def key(self) -> str:
        """Value of this record's key field."""
        return str(getattr(self, self.key_field))


class SyncRecord(TimestampedRecord):
    """A record that can be tombstoned."""

    is_deleted: bool = False


class ManifestEntry(SyncRecord):
    """Describes one tracker definition."""

    key_field: ClassVar[str] = "file_id"

    file_id: str
    name: str
    icon: str = ""


class TrackingStage(WireModel):
    """A named phase of a tracking interval (e.g. hours 12-18)."""

    id: int = 0
    title: str
    start: float = 0.0
    end: float = 0.0
    description: str = ""
    icon: str = ""
    color_hex: str = "#CCCCCC"


class TrackerConfig(SyncRecord):
    """Configuration for a tracker; shares its key with the manifest entry."""

    key_field: ClassVar[str] = "file_id"

    file_id: str
    tracker_name: str
    duration_type: str = "Time"
    button_start_text: str = "Start"
    button_stop_text: str = "Stop"
    stopped_state: Optional[TrackingStage] = None
    stages: list[TrackingStage] = Field(default_factory=list)


class TrackingSession(SyncRecord):
    """One completed tracking interval. Immutable apart from tombstoning."""

    key_field: ClassVar[str] = "session_id"

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tracker_name: str
    start_time: datetime
    end_time: datetime
    duration_seconds: float = 0.0

    @field_validator("start_time", "end_time")
    @classmethod
    def times_as_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class ActiveState(TimestampedRecord):
    """What is running right now on this replica.

    Exactly one per replica, stored under a fixed key and merged with
    the same rule as every other record.
    """

    is_tracking: bool = False
    start_time: Optional[datetime] = None
    selected_tracker_file_id: str = ""

    @field_validator("start_time")
    @classmethod
    def start_time_as_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value)

    @property
    def key(self) -> str:
        return ACTIVE_STATE_KEY
