"""
Resumable document sync and indexing.

The package is composed of small modules: sources list and fetch remote
files, extractors turn them into text, the chunker and embedder prepare
vectors, and the sync engine drives batches against the durable state store.
"""

from ingestion import (
    cli,
    embeddings,
    environment,
    errors,
    extractors,
    formats,
    jobs,
    models,
    sources,
    state_store,
    sync_engine,
    text_processing,
)

__all__ = [
    "cli",
    "embeddings",
    "environment",
    "errors",
    "extractors",
    "formats",
    "jobs",
    "models",
    "sources",
    "state_store",
    "sync_engine",
    "text_processing",
]
