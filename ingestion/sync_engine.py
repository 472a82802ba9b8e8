"""Resumable, batch-at-a-time crawl and indexing of a document source.

Each `SyncEngine.run_batch` call picks up the durable crawl state of a root
container, walks the queue breadth-first (page continuations first, newly
discovered folders last), and indexes at most `max_files` files before
returning. Folder listings do not count against the limit.

Ordering guarantees the rest of the system relies on:

* The head queue entry is removed only after its listing succeeded, so a
  listing failure aborts the batch and the same entry is retried next time.
* State is saved after every handled page and once more before returning; a
  crash loses at most the page in flight.
* A page cut short by the batch limit goes back to the front of the queue
  with the number of children already handled; its next-page token is only
  queued once the page is exhausted.
* A file only becomes ``indexed`` inside the same transaction that replaces
  its chunks (`StateStore.replace_chunks`).

Calls for the same root must not overlap; `ingestion.jobs.SyncJobRunner`
serialises them per root.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from enum import Enum

import config
from ingestion.embeddings import EmbeddingClient, check_embeddings
from ingestion.errors import ConfigurationError
from ingestion.extractors import ExtractorRegistry
from ingestion.sources import DocumentSource
from ingestion.state_store import StateStore
from ingestion.text_processing import Chunker
from types_models import (
    BatchCounts,
    BatchResult,
    ChunkMetadata,
    ChunkRecord,
    CrawlState,
    FileRecord,
    FileStatus,
    QueueEntry,
    RemoteEntry,
    StateSummary,
)

logger = logging.getLogger(__name__)

EMPTY_TEXT_MESSAGE = "Unsupported type or empty text"
EMPTY_CHUNKS_MESSAGE = "Empty text after chunking"


class FileOutcome(str, Enum):
    INDEXED = "indexed"
    SKIPPED = "skipped"
    UNCHANGED = "unchanged"
    ERROR = "error"


def _same_instant(left: str | None, right: str | None) -> bool:
    """Compare two ISO-8601 timestamps as instants, falling back to text."""
    if not left or not right:
        return False
    try:
        return datetime.fromisoformat(left) == datetime.fromisoformat(right)
    except ValueError:
        return left == right


def is_unchanged(existing: FileRecord | None, entry: RemoteEntry) -> bool:
    """True when an indexed record still matches the listed hash or mtime."""
    if existing is None or existing.status != FileStatus.INDEXED:
        return False
    same_hash = bool(
        entry.content_hash
        and existing.content_hash
        and entry.content_hash == existing.content_hash
    )
    return same_hash or _same_instant(entry.modified_time, existing.modified_time)


def oversize_message(size_bytes: int) -> str:
    return f"File too large ({size_bytes} bytes)"


class SyncEngine:
    """Drives crawl batches for any number of root containers."""

    def __init__(
        self,
        store: StateStore,
        source: DocumentSource,
        embedder: EmbeddingClient,
        *,
        extractors: ExtractorRegistry | None = None,
        chunker: Chunker | None = None,
        max_file_bytes: int | None = None,
    ) -> None:
        super().__init__()
        self._store = store
        self._source = source
        self._embedder = embedder
        self._extractors = extractors or ExtractorRegistry.default()
        self._chunker = chunker or Chunker()
        self._max_file_bytes = max_file_bytes or config.DRIVE_MAX_FILE_BYTES

    @staticmethod
    def _require_root(root_id: str | None) -> str:
        root = root_id if root_id is not None else config.SYSTEM_FOLDER_ID
        if not root:
            raise ConfigurationError("SYSTEM_FOLDER_ID is not configured")
        return root

    # ----------------------------------------------------------------- queries

    def summary(self, root_id: str | None = None) -> StateSummary:
        """Compacted counters and queue length for `root_id`."""
        root = self._require_root(root_id)
        return StateSummary.from_state(root, self._store.load_or_init_state(root))

    def reset(self, root_id: str | None = None) -> StateSummary:
        """Restart the crawl of `root_id` from scratch. Indexed files stay indexed."""
        root = self._require_root(root_id)
        state = self._store.reset_state(root)
        logger.info("🔄 Reset crawl state for %s", root)
        return StateSummary.from_state(root, state)

    # ----------------------------------------------------------------- batches

    def run_batch(self, root_id: str | None = None, max_files: int | None = None) -> BatchResult:
        """Process at most `max_files` files of the crawl of `root_id`."""
        root = self._require_root(root_id)
        limit = max_files if max_files is not None else config.DRIVE_SYNC_BATCH_FILES
        if limit <= 0:
            raise ValueError(f"max_files must be positive, got: {limit}")

        state = self._store.load_or_init_state(root)
        counts = BatchCounts()

        if state.done:
            logger.info("✅ Crawl of %s already complete; nothing to do", root)
            return self._result(root, state, counts)

        while not state.done and counts.processed < limit:
            if not state.queue:
                state.done = True
                break

            entry = state.queue[0]
            logger.info(
                "📂 Listing %s (page=%s, offset=%s)",
                entry.container_id,
                entry.page_token or "first",
                entry.offset,
            )
            page = self._source.list_children(entry.container_id, entry.page_token)
            _ = state.queue.pop(0)
            if entry.offset == 0:
                state.scanned_folders += 1

            position = entry.offset
            children = page.entries
            while position < len(children) and counts.processed < limit:
                child = children[position]
                position += 1

                if child.is_container:
                    state.queue.append(QueueEntry(container_id=child.id))
                    continue

                state.scanned_files += 1
                counts.processed += 1
                outcome = self._process_file(root, child)
                self._count(outcome, state, counts)

            if position < len(children):
                state.queue.insert(
                    0,
                    QueueEntry(
                        container_id=entry.container_id,
                        page_token=entry.page_token,
                        offset=position,
                    ),
                )
            elif page.next_page_token:
                state.queue.insert(
                    0,
                    QueueEntry(
                        container_id=entry.container_id,
                        page_token=page.next_page_token,
                    ),
                )

            self._store.save_state(root, state)

        if not state.queue:
            state.done = True
        self._store.save_state(root, state)

        result = self._result(root, state, counts)
        logger.info(
            "📊 Batch for %s: processed=%s indexed=%s skipped=%s errors=%s unchanged=%s "
            + "| queue=%s done=%s",
            root,
            counts.processed,
            counts.indexed,
            counts.skipped,
            counts.errors,
            counts.unchanged,
            result.queue_remaining,
            result.done,
        )
        return result

    def run_until_done(
        self,
        root_id: str | None = None,
        max_files: int | None = None,
        *,
        max_batches: int | None = None,
    ) -> list[BatchResult]:
        """Call `run_batch` until the crawl completes or `max_batches` is reached."""
        results: list[BatchResult] = []
        while max_batches is None or len(results) < max_batches:
            result = self.run_batch(root_id, max_files)
            results.append(result)
            if result.done:
                break
        return results

    @staticmethod
    def _result(root: str, state: CrawlState, counts: BatchCounts) -> BatchResult:
        return BatchResult(
            root_id=root,
            done=state.done,
            queue_remaining=len(state.queue),
            counters=StateSummary.from_state(root, state),
            batch=counts,
        )

    @staticmethod
    def _count(outcome: FileOutcome, state: CrawlState, counts: BatchCounts) -> None:
        if outcome is FileOutcome.INDEXED:
            counts.indexed += 1
            state.indexed += 1
        elif outcome is FileOutcome.SKIPPED:
            counts.skipped += 1
            state.skipped += 1
        elif outcome is FileOutcome.ERROR:
            counts.errors += 1
            state.errors += 1
        else:
            counts.unchanged += 1

    # ------------------------------------------------------------------- files

    def _skip(self, root: str, entry: RemoteEntry, message: str) -> FileOutcome:
        self._store.upsert_file(
            FileRecord.from_entry(root, entry, FileStatus.SKIPPED, message)
        )
        return FileOutcome.SKIPPED

    def _process_file(self, root: str, entry: RemoteEntry) -> FileOutcome:
        """Index one file; failures are recorded on its record, never raised."""
        try:
            if entry.size_bytes and entry.size_bytes > self._max_file_bytes:
                logger.info("⏭️ Skipping %s: %s", entry.name, oversize_message(entry.size_bytes))
                return self._skip(root, entry, oversize_message(entry.size_bytes))

            if is_unchanged(self._store.get_file(root, entry.id), entry):
                logger.debug("Unchanged since last index: %s", entry.name)
                return FileOutcome.UNCHANGED

            self._store.upsert_file(FileRecord.from_entry(root, entry, FileStatus.PROCESSING))

            start_time = time.perf_counter()
            text = self._extractors.extract(self._source, entry)
            extract_time = time.perf_counter() - start_time
            if not text.strip():
                return self._skip(root, entry, EMPTY_TEXT_MESSAGE)

            chunks = self._chunker.chunk(text)
            if not chunks:
                return self._skip(root, entry, EMPTY_CHUNKS_MESSAGE)

            embed_start = time.perf_counter()
            vectors = self._embedder.embed_batch(chunks)
            check_embeddings(chunks, vectors)
            embed_time = time.perf_counter() - embed_start

            metadata = ChunkMetadata(
                file_name=entry.name or "(unnamed)",
                mime_type=entry.mime_hint,
                modified_time=entry.modified_time,
                view_link=entry.view_link,
            )
            records = [
                ChunkRecord(
                    folder_id=root,
                    file_id=entry.id,
                    chunk_index=index,
                    content=chunk,
                    embedding=list(vector),
                    metadata=metadata,
                )
                for index, (chunk, vector) in enumerate(zip(chunks, vectors))
            ]

            persist_start = time.perf_counter()
            self._store.replace_chunks(root, entry.id, records)
            persist_time = time.perf_counter() - persist_start
        except Exception as exc:
            error_type = type(exc).__name__
            logger.warning("⚠️ Failed: %s - %s: %s", entry.name, error_type, str(exc)[:200])
            logger.debug("Full traceback:", exc_info=True)
            self._store.upsert_file(
                FileRecord.from_entry(
                    root, entry, FileStatus.SKIPPED, f"Processing error: {exc}"
                )
            )
            return FileOutcome.ERROR

        logger.info(
            "✅ Indexed %s: chunks=%s extract=%.2fs embed=%.2fs persist=%.2fs",
            entry.name,
            len(records),
            extract_time,
            embed_time,
            persist_time,
        )
        return FileOutcome.INDEXED


__all__ = [
    "EMPTY_CHUNKS_MESSAGE",
    "EMPTY_TEXT_MESSAGE",
    "FileOutcome",
    "SyncEngine",
    "is_unchanged",
    "oversize_message",
]
