"""Normalisation and chunking of extracted document text ahead of embedding.

Extractors hand back raw text of very different quality (PDF text runs,
spreadsheet rows, exported Google Docs). This module centralises the two
transforms applied to all of it: `normalize_text` bounds the total size and
removes control characters, and `chunk_text` cuts fixed-size windows with a
character overlap so each chunk can be embedded independently.
"""

from __future__ import annotations

import logging
import re

import config

logger = logging.getLogger(__name__)

# C0 controls and DEL, keeping tab, newline and carriage return.
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def normalize_text(value: str | None, *, max_chars: int | None = None) -> str:
    """Strip control characters, trim, and truncate to `max_chars`."""
    if max_chars is None:
        max_chars = config.DRIVE_MAX_TEXT_CHARS

    text = _CONTROL_CHARS.sub("", value or "").strip()
    if not text:
        return ""
    if len(text) > max_chars:
        logger.debug("Truncating extracted text from %s to %s chars", len(text), max_chars)
        return text[:max_chars]
    return text


def chunk_text(
    text: str | None,
    *,
    max_chars: int | None = None,
    overlap: int | None = None,
) -> list[str]:
    """Split text into windows of `max_chars` overlapping by `overlap` characters.

    Every window except the last is exactly `max_chars` long and the windows
    cover the text from start to end without gaps. Whitespace-only windows are
    dropped.
    """
    if max_chars is None:
        max_chars = config.CHUNK_MAX_CHARS
    if overlap is None:
        overlap = config.CHUNK_OVERLAP_CHARS
    if max_chars <= 0:
        raise ValueError(f"max_chars must be positive, got: {max_chars}")
    if overlap < 0 or overlap >= max_chars:
        raise ValueError(
            f"overlap must be in [0, max_chars), got: {overlap} (max_chars={max_chars})"
        )

    clean = (text or "").replace("\r", "").strip()
    if not clean:
        return []

    chunks: list[str] = []
    start = 0
    while start < len(clean):
        end = min(len(clean), start + max_chars)
        window = clean[start:end]
        if window.strip():
            chunks.append(window)
        if end >= len(clean):
            break
        start = max(0, end - overlap)
    return chunks


class Chunker:
    """Chunk text with the configured window size and overlap."""

    def __init__(self, max_chars: int | None = None, overlap: int | None = None) -> None:
        super().__init__()
        self._max_chars = max_chars if max_chars is not None else config.CHUNK_MAX_CHARS
        self._overlap = overlap if overlap is not None else config.CHUNK_OVERLAP_CHARS
        if self._overlap >= self._max_chars:
            raise ValueError(
                f"Chunk overlap {self._overlap} must be smaller than chunk size {self._max_chars}"
            )

    def chunk(self, text: str) -> list[str]:
        return chunk_text(text, max_chars=self._max_chars, overlap=self._overlap)


__all__ = [
    "Chunker",
    "chunk_text",
    "normalize_text",
]
