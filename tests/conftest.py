"""
Shared fixtures: a local-directory store standing in for R2 plus scripted
fetchers, transcoders and subprocesses, so no test needs yt-dlp or ffmpeg.
"""

import io
import threading
from concurrent.futures import Future

import pytest

from gateway.coordinator import CacheCoordinator
from shared.errors import OriginExitError, StorageError, UploadError
from shared.models import TrackInfo
from store.local_provider import LocalStorageProvider

VIDEO_ID = "dQw4w9WgXcQ"
RAW_CHUNKS = [b"raw-1|", b"raw-2|", b"raw-3|", b"raw-4"]


def encode_bytes(raw_chunks):
    """What FakeTranscoder produces for ``raw_chunks``."""
    return b"".join(b"mp3:" + chunk for chunk in raw_chunks)


class FakeFetch:
    """Scripted stand-in for OriginFetch."""

    def __init__(self, content_id, chunks, metadata, gate=None, error=None):
        self.content_id = content_id
        self.metadata = metadata
        self.killed = threading.Event()
        self._chunks = list(chunks)
        self._gate = gate
        self._error = error

    def chunks(self):
        if self._gate is not None:
            while not self._gate.wait(0.01):
                if self.killed.is_set():
                    raise OriginExitError(-9, "killed")
        for chunk in self._chunks:
            if self.killed.is_set():
                raise OriginExitError(-9, "killed")
            yield chunk
        if self._error is not None:
            raise self._error

    def kill(self):
        self.killed.set()


class FakeFetcher:
    """
    Records every fetch. ``gate`` holds the download before its first chunk
    until set; ``metadata_error`` makes the metadata Future fail.
    """

    def __init__(self, chunks=None, gate=None, error=None, metadata_error=None):
        self.chunks = RAW_CHUNKS if chunks is None else chunks
        self.gate = gate
        self.error = error
        self.metadata_error = metadata_error
        self.calls = []
        self.fetches = []
        self._lock = threading.Lock()

    def fetch(self, content_id):
        metadata = Future()
        if self.metadata_error is not None:
            metadata.set_exception(self.metadata_error)
        else:
            metadata.set_result(TrackInfo(
                title="Never Gonna Give You Up",
                author="Rick Astley",
                duration_seconds=213,
                thumbnail_url="https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
            ))
        fetch = FakeFetch(content_id, self.chunks, metadata, gate=self.gate, error=self.error)
        with self._lock:
            self.calls.append(content_id)
            self.fetches.append(fetch)
        return fetch


class FakeSession:
    def __init__(self, raw, error=None):
        self._raw = raw
        self._error = error
        self.killed = False

    def chunks(self):
        for chunk in self._raw:
            yield b"mp3:" + chunk
        if self._error is not None:
            raise self._error

    def kill(self):
        self.killed = True


class FakeTranscoder:
    """Prefixes every raw chunk with ``mp3:``; ``error`` fails after the last chunk."""

    def __init__(self, error=None, session_factory=None):
        self.error = error
        self.session_factory = session_factory
        self.sessions = []

    def encode(self, content_id, raw):
        if self.session_factory is not None:
            session = self.session_factory(content_id, raw)
        else:
            session = FakeSession(raw, self.error)
        self.sessions.append(session)
        return session


class FakeSink:
    """ffmpeg stdin replacement."""

    def __init__(self, broken=False):
        self.written = []
        self.closed = False
        self.broken = broken

    def write(self, data):
        if self.broken:
            raise BrokenPipeError(32, "Broken pipe")
        self.written.append(data)
        return len(data)

    def close(self):
        self.closed = True


class FakeProcess:
    """Popen-shaped object with canned stdout/stderr and exit status."""

    def __init__(self, stdout=b"", stderr=b"", returncode=0, broken_stdin=False):
        self.pid = 4242
        self.stdin = FakeSink(broken=broken_stdin)
        self.stdout = io.BytesIO(stdout)
        self.stderr = io.BytesIO(stderr)
        self.returncode = returncode
        self.killed = False
        self._exited = False

    def wait(self, timeout=None):
        self._exited = True
        return self.returncode

    def poll(self):
        return self.returncode if self._exited else None

    def kill(self):
        self.killed = True
        self._exited = True


class FlakyStore(LocalStorageProvider):
    """
    Local store whose first ``failures`` object writes raise UploadError and
    whose first ``index_failures`` index writes raise StorageError.
    ``after_write`` runs once an object write has returned.
    """

    def __init__(self, base_path, failures=1, index_failures=0):
        super().__init__(base_path)
        self.failures = failures
        self.index_failures = index_failures
        self.write_calls = 0
        self.index_calls = 0
        self.after_write = None

    def write(self, key, chunks, content_type="audio/mpeg"):
        self.write_calls += 1
        if self.write_calls <= self.failures:
            raise UploadError(f"Simulated upload failure for {key}")
        written = super().write(key, chunks, content_type)
        if self.after_write is not None:
            self.after_write(key)
        return written

    def put_metadata(self, record):
        self.index_calls += 1
        if self.index_calls <= self.index_failures:
            raise StorageError(f"Simulated index write failure for {record.content_id}")
        return super().put_metadata(record)


@pytest.fixture
def store(tmp_path):
    return LocalStorageProvider(str(tmp_path / "bucket"))


@pytest.fixture
def gate():
    return threading.Event()


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def transcoder():
    return FakeTranscoder()


@pytest.fixture
def make_coordinator():
    created = []

    def _make(store, fetcher, transcoder, **kwargs):
        coordinator = CacheCoordinator(store, fetcher, transcoder, **kwargs)
        created.append(coordinator)
        return coordinator

    yield _make
    for coordinator in created:
        # Release downloads a test left parked so shutdown can join
        gate = getattr(coordinator.fetcher, "gate", None)
        if gate is not None:
            gate.set()
        coordinator.shutdown(wait=True)


@pytest.fixture
def coordinator(make_coordinator, store, fetcher, transcoder):
    return make_coordinator(store, fetcher, transcoder)


