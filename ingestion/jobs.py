"""Background execution of sync batches with one in-flight batch per root.

`SyncJobRunner.submit` acknowledges immediately and runs the batch on a
worker pool. A keyed lock (one lock per root container id) rejects a second
batch for a root that is already syncing while leaving other roots free to
run. If the process dies mid-batch nothing needs recovering here: the next
batch resumes from the durable crawl state.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone

import config
from ingestion.errors import ConfigurationError
from ingestion.sync_engine import SyncEngine
from types_models import BatchResult, JobState, JobStatus, JobTicket

logger = logging.getLogger(__name__)


class KeyedLock:
    """Lazily created mutex per key."""

    def __init__(self) -> None:
        super().__init__()
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def try_acquire(self, key: str) -> bool:
        return self._lock_for(key).acquire(blocking=False)

    def release(self, key: str) -> None:
        self._lock_for(key).release()

    def locked(self, key: str) -> bool:
        return self._lock_for(key).locked()


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SyncJobRunner:
    """Runs `SyncEngine.run_batch` in the background, single-flight per root."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        max_workers: int | None = None,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        super().__init__()
        self._engine = engine
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers or config.SYNC_WORKERS,
            thread_name_prefix="ragsync",
        )
        self._locks = KeyedLock()
        self._status_guard = threading.Lock()
        self._statuses: dict[str, JobStatus] = {}

    def _update(self, root_id: str, **changes: object) -> JobStatus:
        with self._status_guard:
            current = self._statuses.get(root_id) or JobStatus(root_id=root_id)
            updated = current.model_copy(update=changes)
            self._statuses[root_id] = updated
            return updated

    def status(self, root_id: str) -> JobStatus:
        with self._status_guard:
            return self._statuses.get(root_id) or JobStatus(root_id=root_id)

    def is_running(self, root_id: str) -> bool:
        return self._locks.locked(root_id)

    def submit(
        self, root_id: str, batch_files: int | None = None
    ) -> tuple[JobTicket, Future[BatchResult] | None]:
        """Queue one batch for `root_id` unless a batch for it is in flight."""
        if not root_id:
            raise ConfigurationError("SYSTEM_FOLDER_ID is not configured")
        files = batch_files or config.DRIVE_SYNC_BATCH_FILES
        if not self._locks.try_acquire(root_id):
            logger.info("⏳ Sync already running for %s; request rejected", root_id)
            return (
                JobTicket(
                    root_id=root_id,
                    accepted=False,
                    batch_files=files,
                    message="Sync already running",
                ),
                None,
            )

        _ = self._update(
            root_id,
            state=JobState.RUNNING,
            batch_files=files,
            started_at=_now(),
            finished_at=None,
            last_error=None,
        )
        try:
            future = self._executor.submit(self._run, root_id, files)
        except RuntimeError:
            self._locks.release(root_id)
            _ = self._update(root_id, state=JobState.FAILED, finished_at=_now())
            raise
        return (
            JobTicket(
                root_id=root_id,
                accepted=True,
                batch_files=files,
                message="Sync started",
            ),
            future,
        )

    def _run(self, root_id: str, batch_files: int) -> BatchResult:
        try:
            result = self._engine.run_batch(root_id, batch_files)
        except Exception as exc:
            logger.error("🔥 Background sync for %s failed: %s", root_id, exc, exc_info=True)
            _ = self._update(
                root_id,
                state=JobState.FAILED,
                finished_at=_now(),
                last_error=f"{type(exc).__name__}: {exc}",
            )
            raise
        else:
            _ = self._update(
                root_id,
                state=JobState.SUCCEEDED,
                finished_at=_now(),
                last_result=result,
            )
            logger.info(
                "✅ Background sync for %s finished: done=%s queue=%s",
                root_id,
                result.done,
                result.queue_remaining,
            )
            return result
        finally:
            self._locks.release(root_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


__all__ = ["KeyedLock", "SyncJobRunner"]
