"""Type definitions for the hosted API client.

All types use dataclasses for simplicity and automatic __eq__, __repr__.
Enums inherit from str for JSON serialization compatibility.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Status of a remote asynchronous task."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCEEDED, TaskStatus.FAILED)


# Remote task phases and the status each one maps to.
_TASK_PHASES: dict[str, TaskStatus] = {
    "pending": TaskStatus.PENDING,
    "waiting": TaskStatus.PENDING,
    "running": TaskStatus.RUNNING,
    "completed": TaskStatus.SUCCEEDED,
    "succeeded": TaskStatus.SUCCEEDED,
    "failed": TaskStatus.FAILED,
    "cancelled": TaskStatus.FAILED,
}


def parse_task_status(phase: str | None) -> TaskStatus:
    """Map a remote task phase onto TaskStatus.

    Unknown phases are treated as pending so the poller keeps waiting
    instead of declaring a result the remote side never reported.
    """
    if not phase:
        return TaskStatus.PENDING
    return _TASK_PHASES.get(phase.lower(), TaskStatus.PENDING)


class PlaybackSourceType(str, Enum):
    """Known playback source types."""

    HLS = "html5/application/vnd.apple.mpegurl"
    MP4 = "html5/video/mp4"
    WEBRTC = "html5/video/h264"


@dataclass
class Task:
    """A remote asynchronous job."""

    id: str
    type: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    progress: float | None = None
    error_message: str | None = None
    output_asset_id: str | None = None
    output: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        status = data.get("status") or {}
        return cls(
            id=data["id"],
            type=data.get("type"),
            status=parse_task_status(status.get("phase")),
            progress=status.get("progress"),
            error_message=status.get("errorMessage"),
            output_asset_id=data.get("outputAssetId"),
            output=data.get("output") or {},
        )


@dataclass
class Asset:
    """A media asset stored by the hosted platform."""

    id: str
    name: str | None = None
    playback_id: str | None = None
    status: str | None = None
    duration: float = 0.0
    created_at: datetime | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Asset:
        video_spec = data.get("videoSpec") or {}
        status = data.get("status") or {}
        return cls(
            id=data["id"],
            name=data.get("name"),
            playback_id=data.get("playbackId"),
            status=status.get("phase") if isinstance(status, dict) else status,
            duration=float(video_spec.get("duration") or 0.0),
            created_at=_parse_millis(data.get("createdAt")),
        )


@dataclass
class PlaybackSource:
    """One way of playing an asset or stream."""

    type: str
    url: str
    hrn: str | None = None


@dataclass
class PlaybackInfo:
    """Playback description returned for a playback ID."""

    type: str
    sources: list[PlaybackSource] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlaybackInfo:
        meta = data.get("meta") or {}
        return cls(
            type=data.get("type", ""),
            sources=[
                PlaybackSource(type=s.get("type", ""), url=s.get("url", ""), hrn=s.get("hrn"))
                for s in meta.get("source") or []
            ],
        )

    def find_source(self, source_type: PlaybackSourceType) -> PlaybackSource | None:
        for source in self.sources:
            if source.type == source_type.value and source.url:
                return source
        return None


@dataclass
class UploadRequest:
    """Result of requesting an upload slot."""

    url: str
    tus_endpoint: str
    asset: Asset
    task: Task

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UploadRequest:
        return cls(
            url=data["url"],
            tus_endpoint=data.get("tusEndpoint", ""),
            asset=Asset.from_dict(data["asset"]),
            task=Task(id=data["task"]["id"]),
        )


@dataclass
class Stream:
    """A live stream object."""

    id: str
    name: str
    stream_key: str
    playback_id: str
    is_active: bool = False
    record: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Stream:
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            stream_key=data.get("streamKey", ""),
            playback_id=data.get("playbackId", ""),
            is_active=bool(data.get("isActive", False)),
            record=bool(data.get("record", False)),
        )


@dataclass
class StreamSession:
    """One ingest session of a stream, with its recording state."""

    id: str
    record_status: str | None = None
    recording_url: str | None = None
    asset_id: str | None = None
    duration: float = 0.0

    @property
    def recording_ready(self) -> bool:
        return self.record_status == "ready"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StreamSession:
        return cls(
            id=data["id"],
            record_status=data.get("recordingStatus"),
            recording_url=data.get("recordingUrl"),
            asset_id=data.get("assetId"),
            duration=float(data.get("sourceSegmentsDuration") or 0.0),
        )


@dataclass
class Ingest:
    """An ingest point (RTMP base URL plus playback base URL)."""

    base: str
    ingest: str
    playback: str


def _parse_millis(value: Any) -> datetime | None:
    """Parse a millisecond epoch timestamp.

    Returns:
        Parsed datetime, or None if value is missing or unparseable.
    """
    if value is None:
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError):
        return None
