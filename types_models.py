"""
Type definitions and Pydantic models for ragsync.

This module provides validated definitions for the durable records (crawl
state, file records, chunk records) and for the values exchanged with the
document source and the batch caller.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

CRAWL_STATE_SCHEMA_VERSION = 2


class FileStatus(str, Enum):
    """Indexing status of a single remote file."""

    PROCESSING = "processing"
    INDEXED = "indexed"
    SKIPPED = "skipped"


class QueueEntry(BaseModel):
    """Pending container listing, optionally resuming a page part-way."""

    container_id: str = Field(min_length=1, description="Container to list")
    page_token: str | None = Field(
        default=None, description="Pagination cursor, None for the first page"
    )
    offset: int = Field(
        default=0, ge=0, description="Children of this page already handled"
    )

    model_config = ConfigDict(frozen=True)


class CrawlState(BaseModel):
    """Durable crawl progress for one root container."""

    schema_version: int = Field(default=CRAWL_STATE_SCHEMA_VERSION)
    queue: list[QueueEntry] = Field(default_factory=list)
    done: bool = False
    scanned_folders: int = Field(default=0, ge=0)
    scanned_files: int = Field(default=0, ge=0)
    indexed: int = Field(default=0, ge=0)
    skipped: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)

    model_config = ConfigDict(validate_assignment=True)

    @classmethod
    def initial(cls, root_id: str) -> "CrawlState":
        """Fresh state whose queue holds only the root container."""
        return cls(queue=[QueueEntry(container_id=root_id)])


class RemoteEntry(BaseModel):
    """One child returned by a container listing."""

    id: str = Field(min_length=1)
    name: str = ""
    is_container: bool = False
    mime_hint: str = ""
    view_link: str | None = None
    modified_time: str | None = None
    content_hash: str | None = None
    size_bytes: int | None = Field(default=None, ge=0)

    model_config = ConfigDict(frozen=True)


class ListPage(BaseModel):
    """Single page of container children plus the continuation cursor."""

    entries: list[RemoteEntry] = Field(default_factory=list)
    next_page_token: str | None = None


class FileRecord(BaseModel):
    """Per (root, file) indexing status used for change detection."""

    folder_id: str
    file_id: str
    name: str = ""
    mime_type: str = ""
    view_link: str | None = None
    modified_time: str | None = None
    content_hash: str | None = None
    size_bytes: int | None = None
    status: FileStatus
    error_message: str | None = None
    updated_at: str | None = None

    @classmethod
    def from_entry(
        cls,
        folder_id: str,
        entry: RemoteEntry,
        status: FileStatus,
        error_message: str | None = None,
    ) -> "FileRecord":
        return cls(
            folder_id=folder_id,
            file_id=entry.id,
            name=entry.name or "(unnamed)",
            mime_type=entry.mime_hint,
            view_link=entry.view_link,
            modified_time=entry.modified_time,
            content_hash=entry.content_hash,
            size_bytes=entry.size_bytes,
            status=status,
            error_message=error_message,
        )


class ChunkMetadata(BaseModel):
    """File attributes denormalised onto each chunk for display at retrieval time."""

    file_name: str
    mime_type: str
    modified_time: str | None = None
    view_link: str | None = None

    model_config = ConfigDict(frozen=True)


class ChunkRecord(BaseModel):
    """One embedded chunk of a file's extracted text."""

    folder_id: str
    file_id: str
    chunk_index: int = Field(ge=0)
    content: str
    embedding: list[float]
    metadata: ChunkMetadata


class BatchCounts(BaseModel):
    """Work done by a single batch invocation."""

    processed: int = 0
    indexed: int = 0
    skipped: int = 0
    errors: int = 0
    unchanged: int = 0


class StateSummary(BaseModel):
    """Compacted crawl state: counters and queue length, never the queue itself."""

    root_id: str
    done: bool
    scanned_folders: int
    scanned_files: int
    indexed: int
    skipped: int
    errors: int
    queue_remaining: int

    @classmethod
    def from_state(cls, root_id: str, state: CrawlState) -> "StateSummary":
        return cls(
            root_id=root_id,
            done=state.done,
            scanned_folders=state.scanned_folders,
            scanned_files=state.scanned_files,
            indexed=state.indexed,
            skipped=state.skipped,
            errors=state.errors,
            queue_remaining=len(state.queue),
        )


class BatchResult(BaseModel):
    """Outcome of `SyncEngine.run_batch`."""

    root_id: str
    done: bool
    queue_remaining: int = Field(ge=0)
    counters: StateSummary
    batch: BatchCounts


class JobState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class JobStatus(BaseModel):
    """Observable lifecycle of background batches for one root container."""

    root_id: str
    state: JobState = JobState.IDLE
    batch_files: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_result: BatchResult | None = None
    last_error: str | None = None


class JobTicket(BaseModel):
    """Immediate acknowledgement returned when a batch is requested."""

    root_id: str
    accepted: bool
    batch_files: int
    message: str

    model_config = ConfigDict(frozen=True)


def model_to_dict(model: BaseModel) -> dict[str, Any]:
    """Convert a model to a JSON-friendly dict."""
    return model.model_dump(mode="json")
