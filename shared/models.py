"""
Data models for cached tracks, groups and cache jobs.

TrackRecord and Group are persisted as JSON documents in the durable store
using camelCase field names. CacheJob is process-local and never
persisted.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional
from enum import Enum
from datetime import datetime, timezone
import threading
import time
import uuid

from shared.constants import UNKNOWN_AUTHOR


def utc_now_iso() -> str:
    """UTC timestamp in the index's ISO-8601 form, e.g. 2024-05-01T12:00:00.000Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class TrackInfo:
    """
    Descriptive metadata for a piece of source media.

    Attributes:
        title: Display title
        author: Uploader or channel name
        duration_seconds: Length in seconds, if the origin reported one
        thumbnail_url: Largest known thumbnail, if any
    """
    title: str
    author: str
    duration_seconds: Optional[float] = None
    thumbnail_url: Optional[str] = None

    @classmethod
    def placeholder(cls, content_id: str) -> 'TrackInfo':
        """Metadata used when the lookup failed."""
        return cls(title=content_id, author=UNKNOWN_AUTHOR)


@dataclass
class TrackRecord:
    """
    One entry of the track index: a content id that has been cached.

    Attributes:
        content_id: External video id
        storage_key: Object key of the encoded audio in the durable store
        title: Display title
        author: Uploader or channel name
        duration_seconds: Length in seconds (optional)
        thumbnail_url: Thumbnail URL (optional)
        created_at: ISO timestamp of the first successful upload
        updated_at: ISO timestamp of the last index write
    """
    content_id: str
    storage_key: str
    title: str
    author: str
    duration_seconds: Optional[float] = None
    thumbnail_url: Optional[str] = None
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    # python attribute -> JSON key
    _WIRE_NAMES = {
        "content_id": "contentId",
        "storage_key": "storageKey",
        "title": "title",
        "author": "author",
        "duration_seconds": "durationSeconds",
        "thumbnail_url": "thumbnailUrl",
        "created_at": "createdAt",
        "updated_at": "updatedAt",
    }

    @classmethod
    def from_info(cls, content_id: str, storage_key: str, info: TrackInfo) -> 'TrackRecord':
        return cls(
            content_id=content_id,
            storage_key=storage_key,
            title=info.title,
            author=info.author,
            duration_seconds=info.duration_seconds,
            thumbnail_url=info.thumbnail_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the JSON shape stored in the index."""
        return {wire: getattr(self, attr) for attr, wire in self._WIRE_NAMES.items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TrackRecord':
        """Create a TrackRecord from an index entry, ignoring unknown keys."""
        data = dict(data)
        # Legacy index entries carry videoId instead of contentId
        if "contentId" not in data and "videoId" in data:
            data["contentId"] = data["videoId"]
        kwargs = {}
        for attr, wire in cls._WIRE_NAMES.items():
            if wire in data:
                kwargs[attr] = data[wire]
        if not kwargs.get("author"):
            kwargs["author"] = UNKNOWN_AUTHOR
        if not kwargs.get("title"):
            kwargs["title"] = kwargs.get("content_id", "")
        return cls(**kwargs)


@dataclass
class Group:
    """A named, ordered list of content ids."""
    id: str
    name: str
    track_ids: List[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now_iso)
    updated_at: str = field(default_factory=utc_now_iso)

    @staticmethod
    def generate_id() -> str:
        return str(uuid.uuid4())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "trackIds": list(self.track_ids),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Group':
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            track_ids=list(data.get("trackIds") or []),
            created_at=data.get("createdAt") or utc_now_iso(),
            updated_at=data.get("updatedAt") or utc_now_iso(),
        )


class JobState(Enum):
    """Lifecycle of a cache job."""
    NOT_STARTED = "not_started"
    FETCHING = "fetching"
    TRANSCODING = "transcoding"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class CacheJob:
    """
    Ephemeral unit of work that fetches, transcodes and uploads one content id.

    Owned by the CacheCoordinator. ``broadcast`` is the live stream of encoded
    bytes while the job runs, ``response_stream`` the fork consumer reserved
    for the first live listener, and ``cancel_hooks`` kill the job's
    subprocesses. ``done`` is set once the job reaches a terminal state.
    """
    content_id: str
    storage_key: str
    started_at: float = field(default_factory=time.time)
    state: JobState = JobState.NOT_STARTED
    last_error: Optional[str] = None
    timed_out: bool = False
    broadcast: Any = field(default=None, repr=False, compare=False)
    response_stream: Any = field(default=None, repr=False, compare=False)
    cancel_hooks: List[Callable[[], None]] = field(default_factory=list, repr=False, compare=False)
    done: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly status view."""
        return {
            "contentId": self.content_id,
            "storageKey": self.storage_key,
            "startedAt": datetime.fromtimestamp(self.started_at, timezone.utc)
            .isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "state": self.state.value,
            "error": self.last_error,
        }


# --- Resolutions ---

@dataclass(frozen=True)
class Hit:
    """A confirmed cached object; ``locator`` is a time-limited access URL."""
    locator: str
    storage_key: str


@dataclass(frozen=True)
class MissStarted:
    """No cached object and no job; a new job was registered and launched."""
    content_id: str


@dataclass(frozen=True)
class MissInProgress:
    """A job for this id is already running."""
    content_id: str


@dataclass(frozen=True)
class MissFailed:
    """The previous job failed; the failure has now been observed and cleared."""
    content_id: str
    error: str
