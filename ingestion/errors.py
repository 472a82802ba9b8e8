"""Exception types raised by the sync pipeline."""

from __future__ import annotations


class SyncError(RuntimeError):
    """Base class for sync pipeline failures."""


class ConfigurationError(SyncError):
    """Raised before any state mutation when required settings are missing."""


class StateMigrationError(SyncError):
    """Raised when a stored crawl state cannot be converted to the current schema."""


class SourceError(SyncError):
    """Raised when the document source responds with an unusable answer."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UnsupportedExportError(SourceError):
    """Raised when a source cannot convert a file to the requested format."""


class EmbeddingError(SyncError):
    """Raised when the embedding service returns vectors that do not match the input."""


__all__ = [
    "ConfigurationError",
    "EmbeddingError",
    "SourceError",
    "StateMigrationError",
    "SyncError",
    "UnsupportedExportError",
]
