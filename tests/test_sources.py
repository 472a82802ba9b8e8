from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest
import requests
from tenacity import wait_none

from ingestion import formats
from ingestion.errors import SourceError, UnsupportedExportError
from ingestion.sources import DriveSource, LocalFolderSource, drive_entry_from_api


@dataclass
class FakeResponse:
    status_code: int = 200
    payload: dict[str, Any] = field(default_factory=dict)
    content: bytes = b""
    text: str = ""

    def json(self) -> dict[str, Any]:
        return self.payload


@dataclass
class FakeSession:
    responses: list[FakeResponse] = field(default_factory=list)
    headers: dict[str, str] = field(default_factory=dict)
    requests: list[tuple[str, dict[str, Any]]] = field(default_factory=list)

    def get(self, url: str, params: dict[str, Any], timeout: int) -> FakeResponse:
        self.requests.append((url, dict(params)))
        return self.responses.pop(0)


def _drive(session: FakeSession) -> DriveSource:
    return DriveSource(
        "secret-token",
        base_url="https://drive.test/v3/",
        page_size=50,
        timeout=5,
        session=session,  # type: ignore[arg-type]
    )


# ------------------------------------------------------------------- drive


def test_drive_requires_a_token() -> None:
    with pytest.raises(SourceError):
        _ = DriveSource("", session=FakeSession())  # type: ignore[arg-type]


def test_drive_lists_children_of_a_folder() -> None:
    session = FakeSession(
        responses=[
            FakeResponse(
                payload={
                    "files": [
                        {"id": "d1", "name": "Reports", "mimeType": formats.FOLDER},
                        {
                            "id": "f1",
                            "name": "q1.pdf",
                            "mimeType": formats.PDF,
                            "webViewLink": "https://drive.test/f1",
                            "modifiedTime": "2024-05-01T10:00:00.000Z",
                            "md5Checksum": "abc",
                            "size": "2048",
                        },
                    ],
                    "nextPageToken": "next-1",
                }
            )
        ]
    )
    drive = _drive(session)

    page = drive.list_children("root-folder", "tok-0")

    url, params = session.requests[0]
    assert url == "https://drive.test/v3/files"
    assert params["q"] == "'root-folder' in parents and trashed = false"
    assert params["pageSize"] == 50
    assert params["pageToken"] == "tok-0"
    assert session.headers["Authorization"] == "Bearer secret-token"
    assert page.next_page_token == "next-1"
    assert [entry.id for entry in page.entries] == ["d1", "f1"]
    assert page.entries[0].is_container is True
    assert page.entries[1].size_bytes == 2048
    assert page.entries[1].content_hash == "abc"


def test_drive_first_page_has_no_token_param() -> None:
    session = FakeSession(responses=[FakeResponse(payload={"files": []})])

    page = _drive(session).list_children("root-folder", None)

    assert "pageToken" not in session.requests[0][1]
    assert page.entries == []
    assert page.next_page_token is None


def test_drive_fetch_and_export_use_distinct_endpoints() -> None:
    session = FakeSession(
        responses=[FakeResponse(content=b"raw bytes"), FakeResponse(content=b"exported")]
    )
    drive = _drive(session)

    assert drive.fetch_bytes("f1") == b"raw bytes"
    assert drive.export_bytes("doc1", formats.PLAIN_TEXT) == b"exported"

    assert session.requests == [
        ("https://drive.test/v3/files/f1", {"alt": "media"}),
        ("https://drive.test/v3/files/doc1/export", {"mimeType": formats.PLAIN_TEXT}),
    ]


def test_drive_client_errors_are_not_retried() -> None:
    session = FakeSession(responses=[FakeResponse(status_code=404, text="File not found")])

    with pytest.raises(SourceError) as excinfo:
        _ = _drive(session).fetch_bytes("missing")

    assert excinfo.value.status_code == 404
    assert len(session.requests) == 1


@dataclass
class UnreachableSession:
    headers: dict[str, str] = field(default_factory=dict)
    attempts: int = 0

    def get(self, url: str, params: dict[str, Any], timeout: int) -> FakeResponse:
        self.attempts += 1
        raise requests.exceptions.ConnectionError("connection refused")


def test_drive_transport_failure_surfaces_as_source_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(DriveSource._request.retry, "wait", wait_none())
    session = UnreachableSession()
    drive = DriveSource("secret-token", session=session)  # type: ignore[arg-type]

    with pytest.raises(SourceError, match="ConnectionError"):
        _ = drive.list_children("root-folder", None)

    assert session.attempts == 3


def test_drive_entry_mapping_tolerates_missing_fields() -> None:
    entry = drive_entry_from_api({"id": "x"})

    assert entry.name == ""
    assert entry.is_container is False
    assert entry.size_bytes is None
    assert entry.modified_time is None


# ------------------------------------------------------------------- local


@pytest.fixture
def tree(tmp_path: Path) -> Path:
    root = tmp_path / "tree"
    (root / "b-folder").mkdir(parents=True)
    (root / "node_modules").mkdir()
    _ = (root / "a.txt").write_text("alpha")
    _ = (root / "c.pdf").write_bytes(b"%PDF-1.4")
    _ = (root / "d.md").write_text("delta")
    _ = (root / "b-folder" / "inner.txt").write_text("inner")
    _ = (root / "node_modules" / "skip.js").write_text("ignored")
    return root


def test_local_listing_pages_in_name_order(tree: Path) -> None:
    source = LocalFolderSource(tree, page_size=2)

    first = source.list_children(".", None)
    second = source.list_children(".", first.next_page_token)

    assert [entry.id for entry in first.entries] == ["a.txt", "b-folder"]
    assert first.next_page_token == "2"
    assert [entry.id for entry in second.entries] == ["c.pdf", "d.md"]
    assert second.next_page_token is None


def test_local_entries_describe_files_and_folders(tree: Path) -> None:
    source = LocalFolderSource(tree)

    entries = {entry.id: entry for entry in source.list_children(".", None).entries}

    assert "node_modules" not in entries
    assert entries["b-folder"].is_container is True
    assert entries["c.pdf"].mime_hint == formats.PDF
    assert entries["d.md"].mime_hint == "text/markdown"
    text = entries["a.txt"]
    assert text.size_bytes == 5
    assert text.content_hash == hashlib.sha256(b"alpha").hexdigest()
    assert text.view_link is not None and text.view_link.startswith("file://")
    assert text.modified_time is not None and text.modified_time.endswith("+00:00")


def test_local_nested_ids_and_fetch(tree: Path) -> None:
    source = LocalFolderSource(tree)

    page = source.list_children("b-folder", None)

    assert [entry.id for entry in page.entries] == ["b-folder/inner.txt"]
    assert source.fetch_bytes("b-folder/inner.txt") == b"inner"


def test_local_source_rejects_paths_outside_root(tree: Path) -> None:
    source = LocalFolderSource(tree)

    with pytest.raises(SourceError):
        _ = source.fetch_bytes("../outside.txt")


def test_local_source_cannot_export(tree: Path) -> None:
    with pytest.raises(UnsupportedExportError):
        _ = LocalFolderSource(tree).export_bytes("a.txt", formats.PLAIN_TEXT)


def test_local_source_requires_existing_folder(tmp_path: Path) -> None:
    with pytest.raises(SourceError):
        _ = LocalFolderSource(tmp_path / "missing")


def test_local_source_skips_directory_symlinks(tree: Path) -> None:
    (tree / "loop").symlink_to(tree, target_is_directory=True)

    entries = LocalFolderSource(tree).list_children(".", None).entries

    assert "loop" not in [entry.id for entry in entries]


def test_local_source_does_not_hash_oversize_files(tree: Path) -> None:
    source = LocalFolderSource(tree, max_file_bytes=5)
    _ = (tree / "big.txt").write_text("x" * 6)

    entries = {entry.id: entry for entry in source.list_children(".", None).entries}

    assert entries["big.txt"].content_hash is None
    assert entries["big.txt"].size_bytes == 6
    assert entries["a.txt"].content_hash == hashlib.sha256(b"alpha").hexdigest()
