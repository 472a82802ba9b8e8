from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict

from config import Settings

if TYPE_CHECKING:
    from ingestion.embeddings import EmbeddingClient
    from ingestion.extractors import ExtractorRegistry
    from ingestion.jobs import SyncJobRunner
    from ingestion.sources import DocumentSource
    from ingestion.state_store import StateStore
    from ingestion.sync_engine import SyncEngine
else:
    EmbeddingClient = Any
    ExtractorRegistry = Any
    SyncJobRunner = Any
    DocumentSource = Any
    StateStore = Any
    SyncEngine = Any


class SyncContext(BaseModel):
    """Validated container for the collaborators shared by one process."""

    settings: Settings
    store: StateStore
    source: DocumentSource
    embedder: EmbeddingClient
    extractors: ExtractorRegistry
    engine: SyncEngine
    runner: SyncJobRunner

    model_config = ConfigDict(arbitrary_types_allowed=True, extra="forbid")


__all__ = ["SyncContext"]
