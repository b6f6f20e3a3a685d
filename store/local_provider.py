"""
Local filesystem storage provider.
Implements the StorageProvider interface on a directory tree.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Iterable, Iterator, Optional

from shared.constants import AUDIO_CONTENT_TYPE, STREAM_CHUNK_SIZE
from shared.errors import StorageError, UploadError
from .storage_provider import StorageProvider

logger = logging.getLogger(__name__)


class LocalStorageProvider(StorageProvider):
    """
    Storage provider that uses the local filesystem.
    Useful for self-hosting on a NAS or local drive, and for tests.

    Writes land in a hidden ``.part`` file next to the target and are moved
    into place with ``os.replace`` once the stream is complete.
    """

    def __init__(self, base_path: str):
        super().__init__()
        self.base_path = Path(base_path).expanduser().absolute()
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _get_path(self, key: str) -> Path:
        """Get absolute local path for a key, refusing keys that escape the root."""
        path = (self.base_path / key).resolve()
        if path != self.base_path.resolve() and self.base_path.resolve() not in path.parents:
            raise StorageError(f"Key escapes storage root: {key}")
        return path

    @staticmethod
    def _temp_path(path: Path) -> Path:
        return path.with_name(f".{path.name}.{uuid.uuid4().hex[:8]}.part")

    def exists(self, key: str) -> bool:
        return self._get_path(key).is_file()

    def read(self, key: str) -> Iterator[bytes]:
        path = self._get_path(key)
        if not path.is_file():
            raise StorageError(f"No object at {key}")
        return self._iter_file(path)

    @staticmethod
    def _iter_file(path: Path) -> Iterator[bytes]:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(STREAM_CHUNK_SIZE), b''):
                yield chunk

    def write(self, key: str, chunks: Iterable[bytes],
              content_type: str = AUDIO_CONTENT_TYPE) -> int:
        dest_path = self._get_path(key)
        temp_path = self._temp_path(dest_path)
        written = 0
        try:
            dest_path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, 'wb') as f:
                for chunk in chunks:
                    f.write(chunk)
                    written += len(chunk)
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise UploadError(f"Local write of {key} failed: {e}") from e
        except BaseException:
            # Upstream stream failure: drop the partial file, keep the cause
            temp_path.unlink(missing_ok=True)
            raise

        try:
            os.replace(temp_path, dest_path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise UploadError(f"Local publish of {key} failed: {e}") from e
        logger.debug(f"[Store] Wrote {written} bytes to {dest_path}")
        return written

    def issue_access_locator(self, key: str, ttl: int = 3600) -> str:
        """Return a file:// URL; local paths do not expire."""
        return self._get_path(key).as_uri()

    def delete(self, key: str) -> None:
        try:
            self._get_path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageError(f"Local delete of {key} failed: {e}") from e

    def upload_json(self, data: str, key: str) -> None:
        path = self._get_path(key)
        temp_path = self._temp_path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(data, encoding='utf-8')
            os.replace(temp_path, path)
        except OSError as e:
            temp_path.unlink(missing_ok=True)
            raise StorageError(f"Local upload_json of {key} failed: {e}") from e

    def download_json(self, key: str) -> Optional[str]:
        path = self._get_path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding='utf-8')
        except OSError as e:
            raise StorageError(f"Local download_json of {key} failed: {e}") from e
