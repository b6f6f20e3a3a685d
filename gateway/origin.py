"""
Origin fetcher: pulls best-quality audio for a content id out of yt-dlp.

The audio bytes come from a yt-dlp subprocess writing to stdout. Title,
author and thumbnail are looked up separately through the yt-dlp Python API
on a worker thread, so a failed lookup never interrupts the audio.
"""

import logging
import subprocess
import sys
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Dict, Iterator, List, Optional

import yt_dlp

from shared.constants import (
    STDERR_TAIL_LINES,
    STREAM_CHUNK_SIZE,
    UNKNOWN_AUTHOR,
    YDL_FORMAT_AUDIO,
    YOUTUBE_WATCH_URL,
)
from shared.errors import MetadataLookupError, OriginExitError, OriginSpawnError
from shared.models import TrackInfo

logger = logging.getLogger(__name__)


def track_info_from_payload(content_id: str, payload: Dict[str, Any]) -> TrackInfo:
    """Map a yt-dlp info dict onto TrackInfo."""
    thumbnails = payload.get('thumbnails') if isinstance(payload.get('thumbnails'), list) else []
    thumbnail_url = payload.get('thumbnail')
    if not thumbnail_url and thumbnails:
        thumbnail_url = (thumbnails[-1] or {}).get('url')
    duration = payload.get('duration')
    return TrackInfo(
        title=payload.get('title') or content_id,
        author=payload.get('uploader') or payload.get('channel') or UNKNOWN_AUTHOR,
        duration_seconds=duration if isinstance(duration, (int, float)) else None,
        thumbnail_url=thumbnail_url or None,
    )


class OriginFetch:
    """
    A running download: the raw audio stream plus the pending metadata lookup.

    Iterate ``chunks()`` exactly once. After the last chunk the process exit
    status is checked and a non-zero exit raises OriginExitError.
    """

    def __init__(self, content_id: str, process: subprocess.Popen, metadata: Future):
        self.content_id = content_id
        self.process = process
        self.metadata = metadata
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name=f"yt-dlp-stderr-{content_id}", daemon=True
        )
        self._stderr_thread.start()

    def _drain_stderr(self) -> None:
        if self.process.stderr is None:
            return
        for line in iter(self.process.stderr.readline, b""):
            text = line.decode("utf-8", "ignore").strip()
            if text:
                self._stderr_tail.append(text)
                logger.warning(f"[Origin] yt-dlp warning for {self.content_id}: {text}")

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def chunks(self) -> Iterator[bytes]:
        stdout = self.process.stdout
        try:
            for chunk in iter(lambda: stdout.read(STREAM_CHUNK_SIZE), b""):
                yield chunk
            returncode = self.process.wait()
            self._stderr_thread.join(timeout=1)
            if returncode != 0:
                raise OriginExitError(returncode, self.stderr_tail)
        finally:
            if self.process.poll() is None:
                self.process.kill()
            stdout.close()

    def kill(self) -> None:
        """Stop the download subprocess if it is still running."""
        if self.process.poll() is None:
            logger.info(f"[Origin] Killing yt-dlp for {self.content_id}")
            self.process.kill()


class OriginFetcher:
    """Launches yt-dlp downloads and metadata lookups."""

    def __init__(self, yt_dlp_binary: Optional[str] = None,
                 cookies_file: Optional[str] = None,
                 metadata_workers: int = 4):
        self.yt_dlp_binary = yt_dlp_binary
        self.cookies_file = cookies_file
        self._metadata_pool = ThreadPoolExecutor(
            max_workers=metadata_workers, thread_name_prefix="origin-metadata"
        )

    def build_command(self, content_id: str) -> List[str]:
        if self.yt_dlp_binary:
            args = [self.yt_dlp_binary]
        else:
            args = [sys.executable, "-m", "yt_dlp"]
        args.extend([
            "-f", YDL_FORMAT_AUDIO,
            "-o", "-",
            "--quiet",
            "--no-warnings",
        ])
        if self.cookies_file:
            args.extend(["--cookies", self.cookies_file])
        args.append(YOUTUBE_WATCH_URL.format(content_id=content_id))
        return args

    def fetch(self, content_id: str) -> OriginFetch:
        """
        Start downloading ``content_id``.

        Returns:
            OriginFetch with the raw byte stream and a metadata Future

        Raises:
            OriginSpawnError: If yt-dlp could not be started
        """
        metadata = self._metadata_pool.submit(self.lookup_metadata, content_id)
        args = self.build_command(content_id)
        try:
            process = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
            )
        except OSError as e:
            metadata.cancel()
            raise OriginSpawnError(f"Failed to spawn yt-dlp for {content_id}: {e}") from e
        logger.info(f"[Origin] Fetching {content_id} (pid {process.pid})")
        return OriginFetch(content_id, process, metadata)

    def lookup_metadata(self, content_id: str) -> TrackInfo:
        """
        Fetch title/author/duration/thumbnail without downloading.

        Raises:
            MetadataLookupError: On any yt-dlp failure
        """
        ydl_opts = {
            'quiet': True,
            'no_warnings': True,
            'skip_download': True,
        }
        if self.cookies_file:
            ydl_opts['cookiefile'] = self.cookies_file
        url = YOUTUBE_WATCH_URL.format(content_id=content_id)
        try:
            with yt_dlp.YoutubeDL(ydl_opts) as ydl:
                payload = ydl.extract_info(url, download=False)
        except Exception as e:
            raise MetadataLookupError(f"Metadata lookup failed for {content_id}: {e}") from e
        if not payload:
            raise MetadataLookupError(f"Metadata lookup returned nothing for {content_id}")
        return track_info_from_payload(content_id, payload)

    def shutdown(self) -> None:
        self._metadata_pool.shutdown(wait=False)
