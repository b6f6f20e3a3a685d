"""
Abstract base class for durable storage providers.

This module defines the interface every backend implements (Cloudflare R2 or
any S3-compatible service, or a local directory) together with the track and
group index operations, which are built on the JSON helpers and therefore
shared by all backends.
"""

import io
import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, Iterator, List, Optional

from shared.constants import AUDIO_CONTENT_TYPE, GROUPS_INDEX_KEY, TRACKS_INDEX_KEY
from shared.errors import StorageError
from shared.models import Group, TrackRecord, utc_now_iso

logger = logging.getLogger(__name__)


class IterableReader(io.RawIOBase):
    """Read-only file object over an iterator of byte chunks.

    Errors raised by the iterator propagate out of ``read``, which is how an
    upstream failure aborts an in-flight upload.
    """

    def __init__(self, chunks: Iterable[bytes]):
        self._chunks = iter(chunks)
        self._pending = b""
        self.bytes_read = 0

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        while not self._pending:
            try:
                self._pending = next(self._chunks)
            except StopIteration:
                return 0
        size = min(len(buffer), len(self._pending))
        buffer[:size] = self._pending[:size]
        self._pending = self._pending[size:]
        self.bytes_read += size
        return size


class StorageProvider(ABC):
    """
    Abstract base class for durable storage providers.

    Object writes are all-or-nothing: ``exists`` must not report a key until
    ``write`` has flushed the complete stream.
    """

    def __init__(self):
        self._index_lock = threading.RLock()

    @abstractmethod
    def exists(self, key: str) -> bool:
        """
        Check if an object exists.

        Args:
            key: Object key

        Returns:
            True if a complete object is stored under ``key``

        Raises:
            StorageError: If the store could not be reached
        """
        pass

    @abstractmethod
    def read(self, key: str) -> Iterator[bytes]:
        """
        Stream an object's bytes.

        Args:
            key: Object key

        Returns:
            Iterator of byte chunks

        Raises:
            StorageError: If the object is missing or unreadable
        """
        pass

    @abstractmethod
    def write(self, key: str, chunks: Iterable[bytes],
              content_type: str = AUDIO_CONTENT_TYPE) -> int:
        """
        Store a stream of bytes under ``key``.

        Nothing becomes visible under ``key`` unless the whole stream was
        consumed and flushed. An exception from ``chunks`` aborts the write.

        Args:
            key: Object key
            chunks: Iterable of byte chunks
            content_type: MIME type recorded with the object

        Returns:
            Number of bytes written

        Raises:
            UploadError: If the write failed or the stream raised
        """
        pass

    @abstractmethod
    def issue_access_locator(self, key: str, ttl: int = 3600) -> str:
        """
        Get a time-limited URL for reading an object.

        Args:
            key: Object key
            ttl: Lifetime in seconds (ignored where URLs do not expire)

        Returns:
            URL string
        """
        pass

    @abstractmethod
    def delete(self, key: str) -> None:
        """Delete an object. Deleting a missing key is not an error."""
        pass

    @abstractmethod
    def upload_json(self, data: str, key: str) -> None:
        """Replace the JSON document at ``key`` in one write."""
        pass

    @abstractmethod
    def download_json(self, key: str) -> Optional[str]:
        """
        Download a JSON document.

        Returns:
            JSON string, or None if the document does not exist

        Raises:
            StorageError: On any failure other than not-found
        """
        pass

    # --- JSON documents ---

    def _load_json(self, key: str, default: Any) -> Any:
        json_str = self.download_json(key)
        if json_str is None:
            return default
        try:
            return json.loads(json_str)
        except ValueError as e:
            # Refuse to continue; a later save would overwrite the damaged document
            raise StorageError(f"Corrupt index document {key}: {e}")

    def _save_json(self, key: str, data: Any) -> None:
        self.upload_json(json.dumps(data, indent=2), key)

    # --- Track index ---

    def _track_index(self) -> Dict[str, Dict[str, Any]]:
        index = self._load_json(TRACKS_INDEX_KEY, {})
        if not isinstance(index, dict):
            raise StorageError(f"{TRACKS_INDEX_KEY} is not a JSON object")
        return index

    def get_metadata(self, content_id: str) -> Optional[TrackRecord]:
        """Look up the TrackRecord for a content id."""
        entry = self._track_index().get(content_id)
        if not entry:
            return None
        return TrackRecord.from_dict(entry)

    def put_metadata(self, record: TrackRecord) -> TrackRecord:
        """
        Insert or update a TrackRecord.

        The new fields are merged over any existing entry, the original
        ``createdAt`` is kept and ``updatedAt`` is stamped. The index document
        is rewritten as a whole.

        Returns:
            The record as stored
        """
        with self._index_lock:
            index = self._track_index()
            existing = index.get(record.content_id) or {}
            merged = {**existing, **record.to_dict()}
            merged["createdAt"] = existing.get("createdAt") or record.created_at
            merged["updatedAt"] = utc_now_iso()
            merged.pop("videoId", None)
            index[record.content_id] = merged
            self._save_json(TRACKS_INDEX_KEY, index)
        logger.info(f"[Store] Indexed {record.content_id} -> {record.storage_key}")
        return TrackRecord.from_dict(merged)

    def list_metadata(self) -> List[TrackRecord]:
        """All TrackRecords, newest first."""
        records = [TrackRecord.from_dict(entry) for entry in self._track_index().values()]
        return sorted(records, key=lambda r: r.created_at or "", reverse=True)

    def delete_track(self, content_id: str) -> bool:
        """
        Remove a cached track: its object, its index entry and its group memberships.

        Returns:
            True if the track was indexed, False if not found
        """
        with self._index_lock:
            index = self._track_index()
            entry = index.get(content_id)
            if not entry:
                return False

            storage_key = entry.get("storageKey")
            if storage_key:
                self.delete(storage_key)

            del index[content_id]
            self._save_json(TRACKS_INDEX_KEY, index)

            groups = self.list_groups()
            mutated = False
            for group in groups:
                if content_id in group.track_ids:
                    group.track_ids = [tid for tid in group.track_ids if tid != content_id]
                    group.updated_at = utc_now_iso()
                    mutated = True
            if mutated:
                self.save_groups(groups)

        logger.info(f"[Store] Deleted track {content_id}")
        return True

    # --- Groups ---

    def list_groups(self) -> List[Group]:
        groups = self._load_json(GROUPS_INDEX_KEY, [])
        if not isinstance(groups, list):
            raise StorageError(f"{GROUPS_INDEX_KEY} is not a JSON array")
        return [Group.from_dict(g) for g in groups]

    def save_groups(self, groups: List[Group]) -> None:
        with self._index_lock:
            self._save_json(GROUPS_INDEX_KEY, [g.to_dict() for g in groups])

    @property
    def index_lock(self) -> threading.RLock:
        """Lock serialising read-modify-write cycles on the index documents."""
        return self._index_lock
