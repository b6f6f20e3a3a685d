"""
Fan-out of one encoded byte stream to several independent consumers.

The broadcast keeps every published chunk in an append-only log and each
subscriber reads it through its own cursor. The producer never waits for a
consumer, so a slow HTTP client cannot stall the cache writer, and closing
one subscriber only detaches that subscriber.
"""

import logging
import threading
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class StreamBroadcast:
    """Append-only chunk log with any number of cursor-based subscribers."""

    def __init__(self, name: str = "stream"):
        self.name = name
        self._chunks: List[bytes] = []
        self._total_bytes = 0
        self._closed = False
        self._error: Optional[BaseException] = None
        self._cond = threading.Condition()
        self.pump_thread: Optional[threading.Thread] = None

    @property
    def total_bytes(self) -> int:
        with self._cond:
            return self._total_bytes

    @property
    def finished(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def error(self) -> Optional[BaseException]:
        with self._cond:
            return self._error

    def publish(self, chunk: bytes) -> None:
        if not chunk:
            return
        with self._cond:
            if self._closed:
                raise RuntimeError(f"Broadcast {self.name} is already closed")
            self._chunks.append(bytes(chunk))
            self._total_bytes += len(chunk)
            self._cond.notify_all()

    def close(self, error: Optional[BaseException] = None) -> None:
        """End the stream. Subscribers drain what was published, then see ``error`` if given."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._error = error
            self._cond.notify_all()

    def subscribe(self) -> 'Subscriber':
        """New consumer starting at byte 0, even if publishing is under way."""
        return Subscriber(self)

    def pump(self, source: Iterable[bytes]) -> None:
        """Publish every chunk of ``source``, then close with its error, if any."""
        try:
            for chunk in source:
                self.publish(chunk)
        except Exception as e:
            logger.debug(f"[Fork] {self.name} source failed: {e}")
            self.close(e)
        else:
            self.close()

    def start_pump(self, source: Iterable[bytes]) -> threading.Thread:
        self.pump_thread = threading.Thread(
            target=self.pump, args=(source,), name=f"fork-{self.name}", daemon=True
        )
        self.pump_thread.start()
        return self.pump_thread

    def join(self, timeout: Optional[float] = None) -> None:
        if self.pump_thread is not None:
            self.pump_thread.join(timeout)

    def _next_chunk(self, subscriber: 'Subscriber') -> bytes:
        with self._cond:
            while (subscriber.cursor >= len(self._chunks)
                   and not self._closed and not subscriber.detached):
                self._cond.wait()
            if subscriber.detached:
                raise StopIteration
            if subscriber.cursor < len(self._chunks):
                chunk = self._chunks[subscriber.cursor]
                subscriber.cursor += 1
                return chunk
            if self._error is not None:
                raise self._error
            raise StopIteration

    def _wake(self) -> None:
        with self._cond:
            self._cond.notify_all()


class Subscriber:
    """Iterator over a broadcast. ``close()`` detaches it without touching the producer."""

    def __init__(self, broadcast: StreamBroadcast):
        self._broadcast = broadcast
        self.cursor = 0
        self.detached = False

    def __iter__(self) -> 'Subscriber':
        return self

    def __next__(self) -> bytes:
        return self._broadcast._next_chunk(self)

    def close(self) -> None:
        if not self.detached:
            self.detached = True
            self._broadcast._wake()


def fork(encoded: Iterable[bytes],
         broadcast: Optional[StreamBroadcast] = None) -> Tuple[Subscriber, Subscriber]:
    """
    Duplicate ``encoded`` into two independent consumers.

    Args:
        encoded: Source of encoded chunks, consumed on a pump thread
        broadcast: Broadcast to publish into; a new one is made if omitted

    Returns:
        (ConsumerA, ConsumerB), conventionally the HTTP response and the cache writer
    """
    broadcast = broadcast or StreamBroadcast()
    consumer_a = broadcast.subscribe()
    consumer_b = broadcast.subscribe()
    broadcast.start_pump(encoded)
    return consumer_a, consumer_b
