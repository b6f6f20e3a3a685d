"""
Transcoder: normalises a raw audio stream to constant-bitrate MP3 with ffmpeg.
"""

import logging
import threading
from collections import deque
from typing import Iterable, Iterator, Optional

import ffmpeg

from shared.constants import (
    DEFAULT_AUDIO_BITRATE,
    DEFAULT_AUDIO_CODEC,
    DEFAULT_AUDIO_FORMAT,
    STDERR_TAIL_LINES,
    STREAM_CHUNK_SIZE,
)
from shared.errors import TranscodeError

logger = logging.getLogger(__name__)

# ffmpeg messages meaning "whoever reads my output went away"
SINK_CLOSED_MARKERS = (
    "broken pipe",
    "output stream closed",
    "connection reset by peer",
    "epipe",
)


def is_benign_sink_closed(stderr_text: str, bytes_delivered: int) -> bool:
    """
    True when an encoder failure only says the sink closed after receiving data.

    Args:
        stderr_text: Tail of the encoder's stderr
        bytes_delivered: Encoded bytes read from the encoder before it exited
    """
    if bytes_delivered <= 0:
        return False
    lowered = (stderr_text or "").lower()
    return any(marker in lowered for marker in SINK_CLOSED_MARKERS)


class EncodeSession:
    """
    One running encoder process.

    Raw chunks are written to the encoder's stdin on a feeder thread while
    ``chunks()`` yields encoded output. An error raised by the raw source is
    re-raised from ``chunks()`` after the encoder's output is drained.
    """

    def __init__(self, content_id: str, process, raw: Iterable[bytes]):
        self.content_id = content_id
        self.process = process
        self.bytes_delivered = 0
        self._raw = raw
        self._source_error: Optional[BaseException] = None
        self._stdin_closed_early = False
        self._stderr_tail: deque = deque(maxlen=STDERR_TAIL_LINES)

        self._feeder = threading.Thread(
            target=self._feed, name=f"ffmpeg-feed-{content_id}", daemon=True
        )
        self._stderr_thread = threading.Thread(
            target=self._drain_stderr, name=f"ffmpeg-stderr-{content_id}", daemon=True
        )
        self._feeder.start()
        self._stderr_thread.start()

    def _feed(self) -> None:
        stdin = self.process.stdin
        try:
            for chunk in self._raw:
                stdin.write(chunk)
        except BrokenPipeError:
            self._stdin_closed_early = True
        except Exception as e:
            self._source_error = e
        finally:
            try:
                stdin.close()
            except BrokenPipeError:
                self._stdin_closed_early = True
            close_raw = getattr(self._raw, "close", None)
            if close_raw is not None:
                close_raw()

    def _drain_stderr(self) -> None:
        if self.process.stderr is None:
            return
        for line in iter(self.process.stderr.readline, b""):
            text = line.decode("utf-8", "ignore").strip()
            if text:
                self._stderr_tail.append(text)

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def chunks(self) -> Iterator[bytes]:
        stdout = self.process.stdout
        try:
            for chunk in iter(lambda: stdout.read(STREAM_CHUNK_SIZE), b""):
                self.bytes_delivered += len(chunk)
                yield chunk
            returncode = self.process.wait()
            self._feeder.join()
            self._stderr_thread.join(timeout=1)
        finally:
            if self.process.poll() is None:
                self.process.kill()

        if self._source_error is not None:
            raise self._source_error

        if returncode != 0:
            if is_benign_sink_closed(self.stderr_tail, self.bytes_delivered):
                logger.info(f"[Transcode] Sink closed after complete output for {self.content_id}; not an error")
                return
            detail = self.stderr_tail or f"ffmpeg exited with code {returncode}"
            raise TranscodeError(f"Transcode failed for {self.content_id}: {detail}")

        if self._stdin_closed_early:
            logger.debug(f"[Transcode] ffmpeg stopped reading input early for {self.content_id}")

    def kill(self) -> None:
        if self.process.poll() is None:
            logger.info(f"[Transcode] Killing ffmpeg for {self.content_id}")
            self.process.kill()


class Transcoder:
    """Builds ffmpeg pipelines for a fixed bitrate and container."""

    def __init__(self, ffmpeg_binary: str = "ffmpeg",
                 bitrate: int = DEFAULT_AUDIO_BITRATE):
        self.ffmpeg_binary = ffmpeg_binary
        self.bitrate = bitrate

    def build_stream(self):
        stream = ffmpeg.input('pipe:0')
        stream = ffmpeg.output(
            stream,
            'pipe:1',
            format=DEFAULT_AUDIO_FORMAT,
            acodec=DEFAULT_AUDIO_CODEC,
            audio_bitrate=f'{self.bitrate}k',
            vn=None,
        )
        return stream.global_args('-hide_banner', '-loglevel', 'error')

    def encode(self, content_id: str, raw: Iterable[bytes]) -> EncodeSession:
        """
        Start encoding ``raw``.

        Raises:
            TranscodeError: If ffmpeg could not be started
        """
        try:
            process = self.build_stream().run_async(
                cmd=self.ffmpeg_binary,
                pipe_stdin=True,
                pipe_stdout=True,
                pipe_stderr=True,
            )
        except OSError as e:
            raise TranscodeError(f"Failed to spawn ffmpeg for {content_id}: {e}") from e
        logger.info(f"[Transcode] Encoding {content_id} at {self.bitrate}k (pid {process.pid})")
        return EncodeSession(content_id, process, raw)
