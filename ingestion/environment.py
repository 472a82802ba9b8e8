"""Process-wide wiring for the sync pipeline.

`EnvironmentManager` turns the loaded settings into the shared collaborators
(state store, document source, embedder, extractor registry, engine and job
runner). Expensive pieces such as the embedding model are only constructed
here, once, and are loaded lazily on first use so that commands which only
read or reset crawl state start quickly.
"""

from __future__ import annotations

import logging

import config
from config import Settings
from ingestion.embeddings import build_embedder
from ingestion.extractors import ExtractorRegistry
from ingestion.jobs import SyncJobRunner
from ingestion.models import SyncContext
from ingestion.sources import DocumentSource, DriveSource, LocalFolderSource
from ingestion.state_store import StateStore
from ingestion.sync_engine import SyncEngine
from ingestion.text_processing import Chunker

logger = logging.getLogger(__name__)

NOISY_LOGGERS = [
    "sentence_transformers",
    "transformers",
    "urllib3",
    "fitz",
    "pdfminer",
]


def build_source(settings: Settings) -> DocumentSource:
    """Instantiate the document source selected by `SOURCE`."""
    if settings.SOURCE == "local":
        return LocalFolderSource(
            settings.LOCAL_ROOT_PATH,
            page_size=settings.DRIVE_PAGE_SIZE,
            max_file_bytes=settings.DRIVE_MAX_FILE_BYTES,
        )
    return DriveSource(
        settings.DRIVE_ACCESS_TOKEN,
        base_url=settings.DRIVE_API_BASE_URL,
        page_size=settings.DRIVE_PAGE_SIZE,
        timeout=settings.REQUEST_TIMEOUT,
    )


class EnvironmentManager:
    """Apply logging tweaks and build the shared sync context."""

    def __init__(self, settings: Settings | None = None) -> None:
        super().__init__()
        self._settings = settings or config.CONFIG
        self._context: SyncContext | None = None

    @property
    def settings(self) -> Settings:
        return self._settings

    def apply(self) -> None:
        """Silence verbose third-party loggers."""
        for logger_name in NOISY_LOGGERS:
            logging.getLogger(logger_name).setLevel(logging.WARNING)

    def initialize(self) -> SyncContext:
        """Instantiate the shared sync context, caching the result."""
        if self._context is not None:
            return self._context

        settings = self._settings
        config.validate_config(settings)

        source = build_source(settings)
        embedder = build_embedder(settings)
        store = StateStore(settings.STATE_DB_PATH)
        extractors = ExtractorRegistry.default(max_chars=settings.DRIVE_MAX_TEXT_CHARS)
        engine = SyncEngine(
            store,
            source,
            embedder,
            extractors=extractors,
            chunker=Chunker(settings.CHUNK_MAX_CHARS, settings.CHUNK_OVERLAP_CHARS),
            max_file_bytes=settings.DRIVE_MAX_FILE_BYTES,
        )
        runner = SyncJobRunner(engine, max_workers=settings.SYNC_WORKERS)

        logger.info(
            "Sync context ready: source=%s embed=%s (%s) db=%s",
            settings.SOURCE,
            settings.EMBED_BACKEND,
            settings.EMBED_MODEL,
            settings.STATE_DB_PATH,
        )

        self._context = SyncContext(
            settings=settings,
            store=store,
            source=source,
            embedder=embedder,
            extractors=extractors,
            engine=engine,
            runner=runner,
        )
        return self._context

    def close(self) -> None:
        """Stop background workers and close the database connection."""
        if self._context is None:
            return
        self._context.runner.shutdown(wait=True)
        self._context.store.close()
        self._context = None


__all__ = ["EnvironmentManager", "build_source"]
