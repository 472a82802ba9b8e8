"""Document sources: hierarchical containers the sync engine walks.

A source lists the children of a container one page at a time and hands back
file bytes, either as stored (`fetch_bytes`) or converted by the source system
(`export_bytes`). Two implementations ship here: `DriveSource` talks to the
Google Drive v3 REST API and `LocalFolderSource` exposes a directory tree with
the same contract, which is what the tests and offline runs use.
"""

from __future__ import annotations

import hashlib
import logging
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Mapping, Protocol, runtime_checkable

import requests
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

import config
from ingestion import formats
from ingestion.errors import SourceError, UnsupportedExportError
from types_models import ListPage, RemoteEntry

logger = logging.getLogger(__name__)


@runtime_checkable
class DocumentSource(Protocol):
    """Structural type for anything the sync engine can crawl.

    `list_children` must be a stable cursor: for an unchanged container,
    re-listing the same page token returns the same entries in the same order.
    """

    def list_children(self, container_id: str, page_token: str | None) -> ListPage: ...

    def fetch_bytes(self, file_id: str) -> bytes: ...

    def export_bytes(self, file_id: str, target_format: str) -> bytes: ...


# ===============================
# Google Drive (REST v3)
# ===============================

_DRIVE_LIST_FIELDS = (
    "nextPageToken, files(id,name,mimeType,webViewLink,modifiedTime,md5Checksum,size)"
)


class _RetryableDriveError(SourceError):
    """Drive answered with a status worth retrying (rate limit or 5xx)."""


_drive_retry = retry(
    retry=retry_if_exception_type(
        (
            requests.exceptions.ConnectionError,
            requests.exceptions.Timeout,
            _RetryableDriveError,
        )
    ),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=5),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def drive_entry_from_api(item: Mapping[str, Any]) -> RemoteEntry:
    """Map a Drive `files` resource onto a `RemoteEntry`."""
    mime_type = str(item.get("mimeType") or "")
    size = item.get("size")
    return RemoteEntry(
        id=str(item["id"]),
        name=str(item.get("name") or ""),
        is_container=mime_type == formats.FOLDER,
        mime_hint=mime_type,
        view_link=item.get("webViewLink"),
        modified_time=item.get("modifiedTime"),
        content_hash=item.get("md5Checksum"),
        size_bytes=int(size) if size not in (None, "") else None,
    )


class DriveSource:
    """Google Drive folder tree accessed with a bearer token."""

    def __init__(
        self,
        access_token: str | None = None,
        *,
        base_url: str | None = None,
        page_size: int | None = None,
        timeout: int | None = None,
        session: requests.Session | None = None,
    ) -> None:
        super().__init__()
        token = access_token if access_token is not None else config.DRIVE_ACCESS_TOKEN
        if not token:
            raise SourceError("DRIVE_ACCESS_TOKEN is not configured")
        self._base_url = (base_url or config.DRIVE_API_BASE_URL).rstrip("/")
        self._page_size = page_size or config.DRIVE_PAGE_SIZE
        self._timeout = timeout or config.REQUEST_TIMEOUT
        self._session = session or requests.Session()
        self._session.headers.update({"Authorization": f"Bearer {token}"})

    @_drive_retry
    def _request(self, path: str, params: dict[str, Any]) -> requests.Response:
        url = f"{self._base_url}{path}"
        response = self._session.get(url, params=params, timeout=self._timeout)

        if response.status_code in {429, 500, 502, 503, 504}:
            raise _RetryableDriveError(
                f"Drive responded with HTTP {response.status_code} for {path}.",
                status_code=response.status_code,
            )
        if response.status_code != 200:
            raise SourceError(
                f"Drive responded with HTTP {response.status_code} for {path}: "
                + response.text[:200],
                status_code=response.status_code,
            )
        return response

    def _get(self, path: str, params: dict[str, Any]) -> requests.Response:
        try:
            return self._request(path, params)
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise SourceError(
                f"Drive request for {path} failed after retries: {type(exc).__name__}: {exc}"
            ) from exc

    def list_children(self, container_id: str, page_token: str | None) -> ListPage:
        params: dict[str, Any] = {
            "q": f"'{container_id}' in parents and trashed = false",
            "pageSize": self._page_size,
            "fields": _DRIVE_LIST_FIELDS,
        }
        if page_token:
            params["pageToken"] = page_token

        response = self._get("/files", params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise SourceError("Failed to parse Drive files.list response as JSON.") from exc

        items: list[Mapping[str, Any]] = payload.get("files") or []
        return ListPage(
            entries=[drive_entry_from_api(item) for item in items],
            next_page_token=payload.get("nextPageToken") or None,
        )

    def fetch_bytes(self, file_id: str) -> bytes:
        return self._get(f"/files/{file_id}", {"alt": "media"}).content

    def export_bytes(self, file_id: str, target_format: str) -> bytes:
        return self._get(f"/files/{file_id}/export", {"mimeType": target_format}).content


# ===============================
# Local directory tree
# ===============================

EXCLUDED_DIRS = {
    ".venv",
    "venv",
    ".git",
    ".hg",
    ".svn",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    ".tox",
}


def calculate_file_hash(path: str | Path) -> str:
    """Calculate SHA256 hash of file contents for change detection."""
    try:
        file_size = os.path.getsize(path)
    except OSError as exc:
        logger.error(f"⚠️ Could not read file size for hashing: {exc}")
        return ""

    if file_size < 1024 * 1024:
        chunk_size = 4096
    elif file_size < 10 * 1024 * 1024:
        chunk_size = 64 * 1024
    elif file_size < 100 * 1024 * 1024:
        chunk_size = 256 * 1024
    else:
        chunk_size = 1024 * 1024

    digest = hashlib.sha256()
    try:
        with open(path, "rb") as handle:
            for chunk in iter(lambda: handle.read(chunk_size), b""):
                digest.update(chunk)
        return digest.hexdigest()
    except (OSError, MemoryError) as exc:
        logger.error(f"⚠️ Could not hash {os.path.basename(path)}: {exc}")
        return ""


def guess_format(path: str | Path) -> str:
    """Best-effort MIME type for a local file, by extension."""
    suffix = Path(path).suffix.lower()
    if suffix in formats.EXTENSION_FORMATS:
        return formats.EXTENSION_FORMATS[suffix]
    guessed, _ = mimetypes.guess_type(str(path))
    return guessed or "application/octet-stream"


class LocalFolderSource:
    """Directory tree exposed through the `DocumentSource` contract.

    Container and file ids are POSIX paths relative to `root_path` (the root
    itself is "."). Page tokens are the decimal offset of the next page in the
    sorted directory listing.
    """

    def __init__(
        self,
        root_path: str | Path | None = None,
        *,
        page_size: int | None = None,
        max_file_bytes: int | None = None,
    ) -> None:
        super().__init__()
        self._root = Path(root_path or config.LOCAL_ROOT_PATH).resolve()
        self._page_size = page_size or config.DRIVE_PAGE_SIZE
        self._max_file_bytes = max_file_bytes or config.DRIVE_MAX_FILE_BYTES
        if not self._root.is_dir():
            raise SourceError(f"Folder not found: {self._root}")

    def _resolve(self, item_id: str) -> Path:
        candidate = (self._root / PurePosixPath(item_id)).resolve()
        if candidate != self._root and self._root not in candidate.parents:
            raise SourceError(f"Path escapes the source root: {item_id}")
        return candidate

    def _relative_id(self, path: Path) -> str:
        return path.relative_to(self._root).as_posix()

    def _entry_for(self, path: Path) -> RemoteEntry:
        if path.is_dir():
            return RemoteEntry(
                id=self._relative_id(path),
                name=path.name,
                is_container=True,
                mime_hint=formats.FOLDER,
            )
        stat = path.stat()
        modified = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
        # Oversize files are skipped before download, so their contents are never read.
        content_hash = None
        if stat.st_size <= self._max_file_bytes:
            content_hash = calculate_file_hash(path) or None
        return RemoteEntry(
            id=self._relative_id(path),
            name=path.name,
            is_container=False,
            mime_hint=guess_format(path),
            view_link=path.as_uri(),
            modified_time=modified.isoformat(),
            content_hash=content_hash,
            size_bytes=stat.st_size,
        )

    def list_children(self, container_id: str, page_token: str | None) -> ListPage:
        folder = self._resolve(container_id)
        if not folder.is_dir():
            raise SourceError(f"Not a folder: {container_id}")

        try:
            start = int(page_token) if page_token else 0
        except ValueError as exc:
            raise SourceError(f"Invalid page token for {container_id}: {page_token}") from exc

        children = sorted(
            (
                child
                for child in folder.iterdir()
                if not (child.is_dir() and (child.is_symlink() or child.name in EXCLUDED_DIRS))
            ),
            key=lambda child: child.name,
        )
        page = children[start : start + self._page_size]
        next_offset = start + len(page)
        return ListPage(
            entries=[self._entry_for(child) for child in page],
            next_page_token=str(next_offset) if next_offset < len(children) else None,
        )

    def fetch_bytes(self, file_id: str) -> bytes:
        return self._resolve(file_id).read_bytes()

    def export_bytes(self, file_id: str, target_format: str) -> bytes:
        raise UnsupportedExportError(
            f"Local files cannot be exported to {target_format}: {file_id}"
        )


__all__ = [
    "DocumentSource",
    "DriveSource",
    "EXCLUDED_DIRS",
    "LocalFolderSource",
    "calculate_file_hash",
    "drive_entry_from_api",
    "guess_format",
]
