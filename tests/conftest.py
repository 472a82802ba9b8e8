from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import pytest

from ingestion.state_store import StateStore
from types_models import ListPage, RemoteEntry


def text_file(file_id: str, *, name: str | None = None, **overrides: object) -> RemoteEntry:
    values: dict[str, object] = {
        "id": file_id,
        "name": name or f"{file_id}.txt",
        "mime_hint": "text/plain",
        "modified_time": "2024-05-01T10:00:00+00:00",
        "content_hash": f"hash-{file_id}",
        "size_bytes": 100,
    }
    values.update(overrides)
    return RemoteEntry.model_validate(values)


def folder(folder_id: str) -> RemoteEntry:
    return RemoteEntry(
        id=folder_id,
        name=folder_id,
        is_container=True,
        mime_hint="application/vnd.google-apps.folder",
    )


@dataclass
class FakeSource:
    """In-memory document source keyed by (container, page token)."""

    pages: dict[tuple[str, str | None], ListPage] = field(default_factory=dict)
    contents: dict[str, bytes] = field(default_factory=dict)
    exports: dict[tuple[str, str], bytes] = field(default_factory=dict)
    events: list[tuple[str, str]] = field(default_factory=list)
    fail_listing: set[str] = field(default_factory=set)

    def add_page(
        self,
        container_id: str,
        entries: Sequence[RemoteEntry],
        *,
        token: str | None = None,
        next_token: str | None = None,
    ) -> None:
        self.pages[(container_id, token)] = ListPage(
            entries=list(entries), next_page_token=next_token
        )
        for entry in entries:
            if not entry.is_container:
                self.contents.setdefault(entry.id, f"content of {entry.id}".encode())

    def list_children(self, container_id: str, page_token: str | None) -> ListPage:
        self.events.append(("list", container_id))
        if container_id in self.fail_listing:
            raise ConnectionError(f"listing {container_id} failed")
        return self.pages.get((container_id, page_token), ListPage())

    def fetch_bytes(self, file_id: str) -> bytes:
        self.events.append(("fetch", file_id))
        return self.contents[file_id]

    def export_bytes(self, file_id: str, target_format: str) -> bytes:
        self.events.append(("export", file_id))
        return self.exports[(file_id, target_format)]

    def listed(self) -> list[str]:
        return [item for kind, item in self.events if kind == "list"]

    def fetched(self) -> list[str]:
        return [item for kind, item in self.events if kind == "fetch"]


@dataclass
class FakeEmbedder:
    """Deterministic 3-dimensional embeddings; records each batch."""

    calls: list[list[str]] = field(default_factory=list)
    fail_on: str | None = None

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_on is not None and any(self.fail_on in text for text in texts):
            raise RuntimeError("embedding service unavailable")
        return [[float(len(text)), float(index), 1.0] for index, text in enumerate(texts)]

    def embedded_texts(self) -> list[str]:
        return [text for batch in self.calls for text in batch]


@pytest.fixture
def store(tmp_path: Path):
    state_store = StateStore(tmp_path / "state.db")
    yield state_store
    state_store.close()


@pytest.fixture
def source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()
