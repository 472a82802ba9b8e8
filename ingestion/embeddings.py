"""Embedding clients: map a batch of chunk texts to fixed-dimension vectors.

The sync engine calls `embed_batch` once per file with the file's full chunk
list and relies on the output order matching the input order. Retries of a
failed batch belong to the caller re-running the sync later; only transient
transport errors are retried here.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Protocol, Sequence, runtime_checkable

import numpy as np
import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
from ingestion.errors import EmbeddingError

if TYPE_CHECKING:
    from sentence_transformers import SentenceTransformer

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingClient(Protocol):
    """Structural type for embedding services used by the sync engine."""

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]: ...


def check_embeddings(texts: Sequence[str], vectors: Sequence[Sequence[float]]) -> None:
    """Raise `EmbeddingError` unless there is one same-sized vector per text."""
    if len(vectors) != len(texts):
        raise EmbeddingError(
            f"Embedding count mismatch: {len(vectors)} vectors for {len(texts)} texts"
        )
    dims = {len(vector) for vector in vectors}
    if len(dims) > 1:
        raise EmbeddingError(f"Embedding dimensions differ within a batch: {sorted(dims)}")
    if dims == {0}:
        raise EmbeddingError("Embedding service returned empty vectors")


class SentenceTransformerEmbedder:
    """Local sentence-transformers model, loaded on first use."""

    def __init__(
        self,
        model_name: str | None = None,
        *,
        batch_size: int | None = None,
        model: "SentenceTransformer | None" = None,
    ) -> None:
        super().__init__()
        self._model_name = model_name or config.EMBED_MODEL
        self._batch_size = batch_size or config.BATCH_SIZE
        self._model = model

    def _get_model(self) -> "SentenceTransformer":
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("🧠 Loading embedding model %s", self._model_name)
            self._model = SentenceTransformer(self._model_name)
        return self._model

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        embs_raw = self._get_model().encode(
            list(texts),
            batch_size=self._batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        )
        embs = np.asarray(embs_raw, dtype=np.float32)
        vectors = [row.tolist() for row in embs]
        check_embeddings(texts, vectors)
        return vectors


class _RetryableOllamaError(RuntimeError):
    """Exception raised when Ollama responds with a retryable status code."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


@retry(
    retry=retry_if_exception_type(
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            _RetryableOllamaError,
        )
    ),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
def _post_with_retry(url: str, payload: dict[str, Any], timeout: int) -> requests.Response:
    """Issue a POST request to Ollama, retrying on transient failures."""
    response = requests.post(url, json=payload, timeout=timeout)

    if response.status_code in {429, 500, 502, 503, 504}:
        raise _RetryableOllamaError(
            response.status_code,
            f"Ollama responded with HTTP {response.status_code}.",
        )

    return response


class OllamaEmbedder:
    """Embeddings served by a local Ollama instance (`/api/embed`)."""

    def __init__(
        self,
        model_name: str | None = None,
        *,
        base_url: str | None = None,
        timeout: int | None = None,
    ) -> None:
        super().__init__()
        self._model_name = model_name or config.EMBED_MODEL
        self._base_url = (base_url or config.OLLAMA_BASE_URL).rstrip("/")
        self._timeout = timeout or config.REQUEST_TIMEOUT

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        response = _post_with_retry(
            f"{self._base_url}/api/embed",
            {"model": self._model_name, "input": list(texts)},
            self._timeout,
        )
        if response.status_code != 200:
            raise EmbeddingError(
                f"Ollama embed request failed with HTTP {response.status_code}: "
                + response.text[:200]
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingError("Failed to parse Ollama /api/embed response as JSON.") from exc

        vectors = [[float(value) for value in row] for row in payload.get("embeddings", [])]
        check_embeddings(texts, vectors)
        return vectors


def build_embedder(settings: config.Settings | None = None) -> EmbeddingClient:
    """Instantiate the configured embedding backend."""
    cfg = settings or config.CONFIG
    backend = cfg.EMBED_BACKEND
    if backend == "ollama":
        return OllamaEmbedder(
            cfg.EMBED_MODEL, base_url=cfg.OLLAMA_BASE_URL, timeout=cfg.REQUEST_TIMEOUT
        )
    if backend == "sentence_transformers":
        return SentenceTransformerEmbedder(cfg.EMBED_MODEL, batch_size=cfg.BATCH_SIZE)
    raise ValueError(f"Unknown embedding backend: {backend}")


__all__ = [
    "EmbeddingClient",
    "OllamaEmbedder",
    "SentenceTransformerEmbedder",
    "build_embedder",
    "check_embeddings",
]
