"""SQLite-backed durable state for the sync engine.

Three tables live in one sqlite-utils database:

* ``sync_state``: one versioned crawl-state document per root container.
* ``files``: one row per (root, remote file) with metadata and indexing status.
* ``chunks``: the embedded chunks of each file, keyed by (root, file, index).

`replace_chunks` is the only multi-statement write: it deletes a file's
chunks, inserts the new set and flips the file to ``indexed`` inside a single
sqlite transaction, so readers never see a partial chunk set and a file is
never ``indexed`` with stale chunks. A process-wide lock serialises access to
the shared connection so background workers can use one store.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterable, Mapping
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence, cast

import numpy as np
import sqlite_utils
from sqlite_utils.db import NotFoundError, Table

import config
from ingestion.errors import StateMigrationError, SyncError
from types_models import (
    CRAWL_STATE_SCHEMA_VERSION,
    ChunkMetadata,
    ChunkRecord,
    CrawlState,
    FileRecord,
    FileStatus,
    QueueEntry,
)

logger = logging.getLogger(__name__)

_LEGACY_COUNTERS = {
    "scannedFolders": "scanned_folders",
    "scannedFiles": "scanned_files",
    "indexed": "indexed",
    "skipped": "skipped",
    "errors": "errors",
}


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _migrate_v1(document: Mapping[str, Any], root_id: str) -> CrawlState:
    """Convert an unversioned state document.

    Version 1 documents stored the queue either as plain container ids or as
    ``{"id": ..., "pageToken": ...}`` objects and used camelCase counters.
    Entries without an id are dropped. An empty queue on an unfinished crawl
    restarts from the root.
    """
    raw_queue = document.get("queue")
    queue: list[QueueEntry] = []
    if isinstance(raw_queue, list):
        for item in raw_queue:
            if isinstance(item, str) and item:
                queue.append(QueueEntry(container_id=item))
            elif isinstance(item, Mapping) and item.get("id"):
                queue.append(
                    QueueEntry(
                        container_id=str(item["id"]),
                        page_token=item.get("pageToken") or None,
                    )
                )

    done = bool(document.get("done"))
    if not queue and not done:
        queue = [QueueEntry(container_id=root_id)]

    counters = {
        new_name: int(document.get(old_name) or 0)
        for old_name, new_name in _LEGACY_COUNTERS.items()
    }
    return CrawlState(queue=queue, done=done, **counters)


def migrate_state_document(document: Mapping[str, Any], root_id: str) -> CrawlState:
    """Return the stored document as a current-schema `CrawlState`."""
    version = document.get("schema_version")
    if version is None:
        return _migrate_v1(document, root_id)
    if version == CRAWL_STATE_SCHEMA_VERSION:
        return CrawlState.model_validate(dict(document))
    raise StateMigrationError(
        f"Unsupported crawl state schema_version {version!r} for root {root_id}"
    )


class StateStore:
    """Crawl state, file records and chunk records for any number of roots."""

    def __init__(self, db_path: str | Path | None = None) -> None:
        super().__init__()
        self.db_path = str(db_path or config.STATE_DB_PATH)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._db = sqlite_utils.Database(conn)
        self._lock = threading.RLock()
        self._ensure_schema()

    # ------------------------------------------------------------------ schema

    def _table(self, name: str) -> Table:
        return cast(Table, self._db[name])

    def _ensure_schema(self) -> None:
        with self._lock:
            _ = self._table("sync_state").create(
                {
                    "root_id": str,
                    "schema_version": int,
                    "state": str,
                    "updated_at": str,
                },
                pk="root_id",
                if_not_exists=True,
            )
            _ = self._table("files").create(
                {
                    "folder_id": str,
                    "file_id": str,
                    "name": str,
                    "mime_type": str,
                    "view_link": str,
                    "modified_time": str,
                    "content_hash": str,
                    "size_bytes": int,
                    "status": str,
                    "error_message": str,
                    "updated_at": str,
                },
                pk=("folder_id", "file_id"),
                if_not_exists=True,
            )
            _ = self._table("chunks").create(
                {
                    "folder_id": str,
                    "file_id": str,
                    "chunk_index": int,
                    "content": str,
                    "embedding": bytes,
                    "embedding_dim": int,
                    "metadata": str,
                    "created_at": str,
                },
                pk=("folder_id", "file_id", "chunk_index"),
                if_not_exists=True,
            )
            # Status lookups drive the "what failed" queries operators run by hand.
            _ = self._table("files").create_index(
                ["folder_id", "status"], if_not_exists=True
            )

    # ------------------------------------------------------------- crawl state

    def load_state(self, root_id: str) -> CrawlState | None:
        """Read the crawl state for `root_id`, migrating older documents in place."""
        with self._lock:
            try:
                row = self._table("sync_state").get(root_id)
            except NotFoundError:
                return None

            try:
                document = json.loads(row["state"] or "{}")
            except json.JSONDecodeError as exc:
                raise StateMigrationError(
                    f"Stored crawl state for root {root_id} is not valid JSON"
                ) from exc

            state = migrate_state_document(document, root_id)
            if document.get("schema_version") != CRAWL_STATE_SCHEMA_VERSION:
                logger.info(
                    "🔁 Migrated crawl state for %s to schema v%s",
                    root_id,
                    CRAWL_STATE_SCHEMA_VERSION,
                )
                self.save_state(root_id, state)
            return state

    def load_or_init_state(self, root_id: str) -> CrawlState:
        with self._lock:
            state = self.load_state(root_id)
            if state is None:
                state = CrawlState.initial(root_id)
                self.save_state(root_id, state)
            return state

    def save_state(self, root_id: str, state: CrawlState) -> None:
        with self._lock:
            _ = self._table("sync_state").upsert(
                {
                    "root_id": root_id,
                    "schema_version": state.schema_version,
                    "state": state.model_dump_json(),
                    "updated_at": _utc_now(),
                },
                pk="root_id",
            )

    def reset_state(self, root_id: str) -> CrawlState:
        """Rewrite the state of `root_id` to its initial form."""
        state = CrawlState.initial(root_id)
        self.save_state(root_id, state)
        return state

    # ------------------------------------------------------------ file records

    def get_file(self, folder_id: str, file_id: str) -> FileRecord | None:
        with self._lock:
            try:
                row = self._table("files").get((folder_id, file_id))
            except NotFoundError:
                return None
        return FileRecord.model_validate(row)

    def upsert_file(self, record: FileRecord) -> None:
        """Insert or overwrite every attribute of a file record."""
        payload = record.model_dump(mode="json")
        payload["updated_at"] = _utc_now()
        with self._lock:
            _ = self._table("files").upsert(payload, pk=("folder_id", "file_id"))

    def list_files(
        self, folder_id: str, *, status: FileStatus | None = None
    ) -> list[FileRecord]:
        where = "folder_id = ?"
        params: list[Any] = [folder_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status.value)
        with self._lock:
            rows = list(
                self._table("files").rows_where(where, params, order_by="file_id")
            )
        return [FileRecord.model_validate(row) for row in rows]

    # ----------------------------------------------------------- chunk records

    def _insert_chunk_rows(self, rows: Iterable[tuple[Any, ...]]) -> None:
        _ = self._db.conn.executemany(
            "INSERT INTO chunks "
            + "(folder_id, file_id, chunk_index, content, embedding, embedding_dim, metadata, created_at) "
            + "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            rows,
        )

    def replace_chunks(
        self, folder_id: str, file_id: str, chunks: Sequence[ChunkRecord]
    ) -> None:
        """Atomically swap a file's chunk set and mark the file indexed.

        Either all three steps (delete old chunks, insert new ones, flip the
        status) commit together or none of them do.
        """
        created_at = _utc_now()
        rows = [
            (
                folder_id,
                file_id,
                chunk.chunk_index,
                chunk.content,
                np.asarray(chunk.embedding, dtype=np.float32).tobytes(),
                len(chunk.embedding),
                chunk.metadata.model_dump_json(),
                created_at,
            )
            for chunk in chunks
        ]

        with self._lock:
            with self._db.conn:
                _ = self._db.execute(
                    "DELETE FROM chunks WHERE folder_id = ? AND file_id = ?",
                    [folder_id, file_id],
                )
                self._insert_chunk_rows(rows)
                cursor = self._db.execute(
                    "UPDATE files SET status = ?, error_message = NULL, updated_at = ? "
                    + "WHERE folder_id = ? AND file_id = ?",
                    [FileStatus.INDEXED.value, created_at, folder_id, file_id],
                )
                if cursor.rowcount != 1:
                    raise SyncError(
                        f"No file record for {folder_id}/{file_id}; chunk write rolled back"
                    )

    def get_chunks(self, folder_id: str, file_id: str) -> list[ChunkRecord]:
        with self._lock:
            rows = list(
                self._table("chunks").rows_where(
                    "folder_id = ? AND file_id = ?",
                    [folder_id, file_id],
                    order_by="chunk_index",
                )
            )
        return [
            ChunkRecord(
                folder_id=row["folder_id"],
                file_id=row["file_id"],
                chunk_index=int(row["chunk_index"]),
                content=row["content"],
                embedding=np.frombuffer(row["embedding"], dtype=np.float32).tolist(),
                metadata=ChunkMetadata.model_validate_json(row["metadata"]),
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._db.conn.close()


__all__ = ["StateStore", "migrate_state_document"]
