# ======================================
# Config for the sync/indexing pipeline
# Values come from settings.toml (optional) and are overridden by
# environment variables using the same names.
# ======================================

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

# Type definitions
SourceKind = Literal["local", "drive"]
EmbedBackend = Literal["sentence_transformers", "ollama"]

SETTINGS_FILE: str = os.environ.get("RAGSYNC_SETTINGS_FILE", "settings.toml")


class Settings(BaseModel):
    """Typed view over settings.toml plus environment overrides."""

    # Root container a sync run starts from
    SYSTEM_FOLDER_ID: str | None = None
    SOURCE: SourceKind = "drive"
    LOCAL_ROOT_PATH: str = "."

    # Batching / limits
    DRIVE_SYNC_BATCH_FILES: int = Field(default=10, gt=0)
    DRIVE_MAX_TEXT_CHARS: int = Field(default=60_000, gt=0)
    DRIVE_MAX_FILE_BYTES: int = Field(default=120_000_000, gt=0)
    DRIVE_PAGE_SIZE: int = Field(default=200, gt=0, le=1000)

    # Chunking
    CHUNK_MAX_CHARS: int = Field(default=1800, gt=0)
    CHUNK_OVERLAP_CHARS: int = Field(default=250, ge=0)

    # Embeddings
    EMBED_BACKEND: EmbedBackend = "sentence_transformers"
    EMBED_MODEL: str = "sentence-transformers/all-MiniLM-L6-v2"
    BATCH_SIZE: int = Field(default=16, gt=0)
    OLLAMA_BASE_URL: str = "http://localhost:11434"

    # Google Drive REST access
    DRIVE_API_BASE_URL: str = "https://www.googleapis.com/drive/v3"
    DRIVE_ACCESS_TOKEN: str | None = None
    REQUEST_TIMEOUT: int = Field(default=60, gt=0)

    # Persistence, workers, logging
    STATE_DB_PATH: str = "ragsync.db"
    SYNC_WORKERS: int = Field(default=2, gt=0)
    SYNC_LOG_FILE: str = "sync.log"

    model_config = ConfigDict(extra="ignore", validate_assignment=True)


def _read_settings_file(path: Path) -> dict[str, Any]:
    if not path.is_file():
        return {}
    with open(path, "rb") as handle:
        data = tomllib.load(handle)
    # Accept either a flat file or a [ragsync] table.
    section = data.get("ragsync", data)
    return {str(key).upper(): value for key, value in section.items()}


def load_settings(
    settings_file: str | Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Merge settings.toml with environment overrides and validate the result."""
    env = os.environ if environ is None else environ
    values = _read_settings_file(Path(settings_file or SETTINGS_FILE))
    for name in Settings.model_fields:
        if name in env and env[name] != "":
            values[name] = env[name]
    try:
        return Settings.model_validate(values)
    except ValidationError as exc:
        raise ValueError(f"Invalid ragsync settings: {exc}") from exc


CONFIG: Settings = load_settings()

SYSTEM_FOLDER_ID: str | None = CONFIG.SYSTEM_FOLDER_ID
SOURCE: SourceKind = CONFIG.SOURCE
LOCAL_ROOT_PATH: str = CONFIG.LOCAL_ROOT_PATH

DRIVE_SYNC_BATCH_FILES: int = CONFIG.DRIVE_SYNC_BATCH_FILES
DRIVE_MAX_TEXT_CHARS: int = CONFIG.DRIVE_MAX_TEXT_CHARS
DRIVE_MAX_FILE_BYTES: int = CONFIG.DRIVE_MAX_FILE_BYTES
DRIVE_PAGE_SIZE: int = CONFIG.DRIVE_PAGE_SIZE

CHUNK_MAX_CHARS: int = CONFIG.CHUNK_MAX_CHARS
CHUNK_OVERLAP_CHARS: int = CONFIG.CHUNK_OVERLAP_CHARS

EMBED_BACKEND: EmbedBackend = CONFIG.EMBED_BACKEND
EMBED_MODEL: str = CONFIG.EMBED_MODEL
BATCH_SIZE: int = CONFIG.BATCH_SIZE
OLLAMA_BASE_URL: str = CONFIG.OLLAMA_BASE_URL

DRIVE_API_BASE_URL: str = CONFIG.DRIVE_API_BASE_URL
DRIVE_ACCESS_TOKEN: str | None = CONFIG.DRIVE_ACCESS_TOKEN
REQUEST_TIMEOUT: int = CONFIG.REQUEST_TIMEOUT

STATE_DB_PATH: str = CONFIG.STATE_DB_PATH
SYNC_WORKERS: int = CONFIG.SYNC_WORKERS
SYNC_LOG_FILE: str = CONFIG.SYNC_LOG_FILE


def validate_config(settings: Settings | None = None) -> None:
    """Validate cross-field configuration values at startup."""
    cfg = settings or CONFIG

    if cfg.CHUNK_OVERLAP_CHARS >= cfg.CHUNK_MAX_CHARS:
        raise ValueError(
            "CHUNK_OVERLAP_CHARS must be smaller than CHUNK_MAX_CHARS, got: "
            + f"{cfg.CHUNK_OVERLAP_CHARS} >= {cfg.CHUNK_MAX_CHARS}"
        )

    string_configs = [
        ("EMBED_MODEL", cfg.EMBED_MODEL),
        ("STATE_DB_PATH", cfg.STATE_DB_PATH),
        ("SYNC_LOG_FILE", cfg.SYNC_LOG_FILE),
        ("DRIVE_API_BASE_URL", cfg.DRIVE_API_BASE_URL),
        ("OLLAMA_BASE_URL", cfg.OLLAMA_BASE_URL),
    ]

    for config_name, config_val in string_configs:
        if not isinstance(config_val, str) or not config_val.strip():
            raise ValueError(
                f"{config_name} must be a non-empty string, got: {config_val}"
            )


# Validate on import
validate_config()
