"""
Cache coordinator: acquire once, serve many.

``resolve()`` answers a playback request with a cache hit or one of the miss
outcomes. Concurrent misses for the same content id collapse into a single
fetch -> transcode -> upload job. The job registry is the only shared mutable
state and every read-modify-write on it happens under one lock.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import Dict, List, Optional, Tuple, Union

from shared.constants import DEFAULT_MAX_CONCURRENT_JOBS, DEFAULT_SIGNED_URL_TTL, METADATA_WAIT_SECONDS
from shared.content_id import default_storage_key
from shared.errors import JobTimeoutError, StorageError, TranscodeError, describe_error
from shared.models import (
    CacheJob,
    Hit,
    JobState,
    MissFailed,
    MissInProgress,
    MissStarted,
    TrackInfo,
    TrackRecord,
)
from store.storage_provider import StorageProvider
from .fork import StreamBroadcast, Subscriber, fork

logger = logging.getLogger(__name__)

Resolution = Union[Hit, MissStarted, MissInProgress, MissFailed]


class ClaimOutcome(Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    FAILED = "failed"


class JobRegistry:
    """Mutex-guarded map from content id to its single CacheJob."""

    def __init__(self):
        self._jobs: Dict[str, CacheJob] = {}
        self._lock = threading.Lock()

    def claim(self, content_id: str, storage_key: str) -> Tuple[ClaimOutcome, CacheJob]:
        """
        Atomic test-and-set for a content id.

        - no entry: insert a new job -> STARTED
        - entry carrying an error: remove it -> FAILED (no new job on this call)
        - any other entry -> IN_PROGRESS
        """
        with self._lock:
            job = self._jobs.get(content_id)
            if job is None:
                job = CacheJob(
                    content_id=content_id,
                    storage_key=storage_key,
                    broadcast=StreamBroadcast(name=content_id),
                )
                self._jobs[content_id] = job
                return ClaimOutcome.STARTED, job
            if job.last_error is not None:
                del self._jobs[content_id]
                return ClaimOutcome.FAILED, job
            return ClaimOutcome.IN_PROGRESS, job

    def get(self, content_id: str) -> Optional[CacheJob]:
        with self._lock:
            return self._jobs.get(content_id)

    def set_state(self, job: CacheJob, state: JobState) -> None:
        with self._lock:
            if not job.state.is_terminal:
                job.state = state

    def complete(self, job: CacheJob) -> None:
        with self._lock:
            job.state = JobState.COMPLETED
            if self._jobs.get(job.content_id) is job:
                del self._jobs[job.content_id]
        job.done.set()

    def fail(self, job: CacheJob, error: str) -> None:
        """
        Mark failed; the entry stays until a resolve() observes it.

        Only the error string is kept on the entry. The broadcast and its
        buffered chunks are released; subscribers already attached hold their
        own reference and still drain to the error.
        """
        with self._lock:
            job.state = JobState.FAILED
            job.last_error = error
            job.broadcast = None
            job.response_stream = None
        job.done.set()

    def discard_failed(self, content_id: str) -> Optional[CacheJob]:
        """Drop a failed entry without reporting it, e.g. once its object turned up anyway."""
        with self._lock:
            job = self._jobs.get(content_id)
            if job is None or job.last_error is None:
                return None
            del self._jobs[content_id]
            return job

    def take_listener(self, content_id: str) -> Optional[Subscriber]:
        """Live subscriber for a running job, or None if nothing is running."""
        with self._lock:
            job = self._jobs.get(content_id)
            if job is None or job.state.is_terminal or job.broadcast is None:
                return None
            if job.response_stream is not None:
                stream, job.response_stream = job.response_stream, None
                return stream
            return job.broadcast.subscribe()

    def snapshot(self) -> List[dict]:
        with self._lock:
            return [job.snapshot() for job in self._jobs.values()]

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


class CacheCoordinator:
    """
    Decides hit vs. miss and runs at most one cache job per content id.

    Args:
        store: Durable store holding objects and the track index
        fetcher: Object with ``fetch(content_id)`` returning a download handle
            (``chunks()``, ``metadata`` Future, ``kill()``)
        transcoder: Object with ``encode(content_id, raw)`` returning an
            encode handle (``chunks()``, ``kill()``)
        signed_url_ttl: Lifetime of hit locators in seconds
        max_concurrent_jobs: Size of the job thread pool
        job_timeout: Seconds before a job is killed; 0 disables the limit
    """

    def __init__(self, store: StorageProvider, fetcher, transcoder,
                 signed_url_ttl: int = DEFAULT_SIGNED_URL_TTL,
                 max_concurrent_jobs: int = DEFAULT_MAX_CONCURRENT_JOBS,
                 job_timeout: int = 0):
        self.store = store
        self.fetcher = fetcher
        self.transcoder = transcoder
        self.signed_url_ttl = signed_url_ttl
        self.job_timeout = job_timeout
        self.registry = JobRegistry()
        self._executor = ThreadPoolExecutor(
            max_workers=max_concurrent_jobs, thread_name_prefix="cache-job"
        )

    # --- Resolution ---

    def resolve(self, content_id: str) -> Resolution:
        """
        Resolve a content id to a cached object or a miss outcome.

        Raises:
            StorageError: If the durable store could not be queried
        """
        hit = self._find_cached(content_id)
        if hit is not None:
            return hit

        storage_key = default_storage_key(content_id)
        outcome, job = self.registry.claim(content_id, storage_key)

        if outcome is ClaimOutcome.IN_PROGRESS:
            logger.debug(f"[Stream] Job for {content_id} already running ({job.state.value})")
            return MissInProgress(content_id)

        if outcome is ClaimOutcome.FAILED:
            logger.info(f"[Stream] Reporting failed job for {content_id}: {job.last_error}")
            return MissFailed(content_id, job.last_error)

        logger.info(f"[Stream] Cache miss for {content_id}, starting job")
        try:
            self._executor.submit(self._run_job, job)
        except RuntimeError as e:
            # Executor already shut down
            self.registry.fail(job, describe_error(e))
            raise
        return MissStarted(content_id)

    def _find_cached(self, content_id: str) -> Optional[Hit]:
        record = self.store.get_metadata(content_id)
        checked_key = None
        if record is not None and record.storage_key:
            checked_key = record.storage_key
            if self.store.exists(record.storage_key):
                return self._hit(content_id, record.storage_key)
            logger.warning(f"[Stream] Index entry for {content_id} points at missing object {record.storage_key}")

        storage_key = default_storage_key(content_id)
        if storage_key != checked_key and self.store.exists(storage_key):
            if record is None:
                self._backfill_record(content_id, storage_key)
            return self._hit(content_id, storage_key)
        return None

    def _backfill_record(self, content_id: str, storage_key: str) -> None:
        """Index an object that has no TrackRecord, with placeholder metadata."""
        try:
            self.store.put_metadata(
                TrackRecord.from_info(content_id, storage_key, TrackInfo.placeholder(content_id))
            )
        except StorageError as e:
            logger.error(f"[Stream] Failed to backfill index entry for {content_id}: {describe_error(e)}")

    def _hit(self, content_id: str, storage_key: str) -> Hit:
        if self.registry.discard_failed(content_id) is not None:
            logger.info(f"[Stream] Dropped stale failed job for {content_id}")
        logger.info(f"[Stream] Serving {content_id} from cache")
        locator = self.store.issue_access_locator(storage_key, self.signed_url_ttl)
        return Hit(locator=locator, storage_key=storage_key)

    # --- Jobs ---

    def _run_job(self, job: CacheJob) -> None:
        timer = None
        if self.job_timeout > 0:
            timer = threading.Timer(self.job_timeout, self._expire, args=(job,))
            timer.daemon = True
            timer.start()
        try:
            self._execute(job)
        except Exception as e:
            if job.timed_out:
                e = JobTimeoutError(f"Job for {job.content_id} exceeded {self.job_timeout}s")
            logger.error(f"[Job] {job.content_id} failed: {describe_error(e)}")
            self._cancel(job)
            self._close_response_stream(job)
            if job.broadcast is not None:
                # Ends listeners attached before the fork
                job.broadcast.close(e)
            self.registry.fail(job, describe_error(e))
        else:
            logger.info(f"[Job] {job.content_id} completed")
            self._close_response_stream(job)
            self.registry.complete(job)
        finally:
            if timer is not None:
                timer.cancel()

    def _execute(self, job: CacheJob) -> None:
        content_id = job.content_id

        # Another path may have cached the object between the hit check and the claim
        if self.store.exists(job.storage_key):
            logger.info(f"[Job] {content_id} already stored under {job.storage_key}")
            if self.store.get_metadata(content_id) is None:
                self._backfill_record(content_id, job.storage_key)
            job.broadcast.close()
            return

        self.registry.set_state(job, JobState.FETCHING)
        fetch = self.fetcher.fetch(content_id)
        job.cancel_hooks.append(fetch.kill)

        self.registry.set_state(job, JobState.TRANSCODING)
        try:
            session = self.transcoder.encode(content_id, fetch.chunks())
        except Exception:
            fetch.kill()
            raise
        job.cancel_hooks.append(session.kill)

        response_stream, cache_stream = fork(self._encoded(session, fetch), job.broadcast)
        job.response_stream = response_stream

        self.registry.set_state(job, JobState.UPLOADING)
        try:
            written = self.store.write(job.storage_key, cache_stream)
        except Exception:
            # Nothing left to feed; stop the pipeline so the pump can finish
            self._cancel(job)
            raise
        finally:
            cache_stream.close()
            job.broadcast.join()
        # The object is published; a timeout firing from here on no longer fails the job
        logger.info(f"[Job] Cached {content_id} ({written} bytes) at {job.storage_key}")

        info = self._await_metadata(content_id, fetch)
        try:
            self.store.put_metadata(TrackRecord.from_info(content_id, job.storage_key, info))
        except Exception as e:
            # The object is stored under its canonical key, so it is still served
            logger.error(f"[Job] Failed to index {content_id}: {describe_error(e)}")

    @staticmethod
    def _encoded(session, fetch):
        try:
            yield from session.chunks()
        except TranscodeError:
            # No orphaned downloads once the encoder has died
            fetch.kill()
            raise

    @staticmethod
    def _await_metadata(content_id: str, fetch) -> TrackInfo:
        try:
            return fetch.metadata.result(timeout=METADATA_WAIT_SECONDS)
        except Exception as e:
            logger.warning(f"[Job] Metadata unavailable for {content_id}, using placeholders: {describe_error(e)}")
            return TrackInfo.placeholder(content_id)

    def _expire(self, job: CacheJob) -> None:
        if job.state.is_terminal:
            return
        logger.warning(f"[Job] {job.content_id} timed out after {self.job_timeout}s")
        job.timed_out = True
        self._cancel(job)

    @staticmethod
    def _cancel(job: CacheJob) -> None:
        for hook in job.cancel_hooks:
            try:
                hook()
            except OSError as e:
                logger.debug(f"[Job] Cancel hook for {job.content_id} failed: {e}")

    @staticmethod
    def _close_response_stream(job: CacheJob) -> None:
        if job.response_stream is not None:
            job.response_stream.close()
            job.response_stream = None

    # --- Introspection ---

    def listen(self, content_id: str) -> Optional[Subscriber]:
        """
        Live stream of the running job's encoded bytes, from byte 0.

        Closing the returned subscriber (client disconnect) leaves the job
        and its cache write untouched.
        """
        return self.registry.take_listener(content_id)

    def job_status(self, content_id: str) -> Optional[dict]:
        job = self.registry.get(content_id)
        return job.snapshot() if job else None

    def jobs(self) -> List[dict]:
        return self.registry.snapshot()

    def wait_for(self, content_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job for ``content_id`` is terminal. True if it finished in time."""
        job = self.registry.get(content_id)
        if job is None:
            return True
        return job.done.wait(timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
        shutdown_fetcher = getattr(self.fetcher, "shutdown", None)
        if shutdown_fetcher is not None:
            shutdown_fetcher()
