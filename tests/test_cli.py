from __future__ import annotations

import json
from pathlib import Path

import pytest

import config
from conftest import FakeEmbedder
from ingestion import cli, environment
from ingestion.state_store import StateStore
from types_models import FileStatus


@pytest.fixture
def docs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "CONFIG", config.Settings())
    monkeypatch.setattr(environment, "build_embedder", lambda settings: FakeEmbedder())
    root = tmp_path / "docs"
    (root / "notes").mkdir(parents=True)
    _ = (root / "readme.txt").write_text("hello from the readme")
    _ = (root / "notes" / "todo.md").write_text("- write tests")
    return root


def _run(docs: Path, db: Path, *command: str) -> None:
    cli.main(["--path", str(docs), "--db", str(db), *command])


def _last_json(output: str) -> dict[str, object]:
    return json.loads(output[output.index("{") :])


def test_state_command_prints_initial_summary(
    docs: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _run(docs, tmp_path / "state.db", "state")

    summary = _last_json(capsys.readouterr().out)
    assert summary["root_id"] == "."
    assert summary["done"] is False
    assert summary["queue_remaining"] == 1
    assert "queue" not in summary


def test_sync_until_done_indexes_tree(
    docs: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db = tmp_path / "state.db"

    _run(docs, db, "sync", "--batch-files", "1", "--until-done")

    out = capsys.readouterr().out
    assert "Crawl complete: True" in out
    store = StateStore(db)
    try:
        indexed = store.list_files(".", status=FileStatus.INDEXED)
    finally:
        store.close()
    assert [record.file_id for record in indexed] == ["notes/todo.md", "readme.txt"]


def test_single_sync_runs_in_background_and_reports(
    docs: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    _run(docs, tmp_path / "state.db", "sync", "--batch-files", "5")

    out = capsys.readouterr().out
    assert "Sync started for ." in out
    assert "Batch done. Processed: 2" in out


def test_reset_command_restarts_crawl(
    docs: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    db = tmp_path / "state.db"
    _run(docs, db, "sync", "--until-done")
    _ = capsys.readouterr()

    _run(docs, db, "reset")

    summary = _last_json(capsys.readouterr().out)
    assert summary["done"] is False
    assert summary["indexed"] == 0


def test_drive_without_token_exits_with_error(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config, "CONFIG", config.Settings())
    monkeypatch.setattr(config, "DRIVE_ACCESS_TOKEN", None)
    monkeypatch.setattr(environment, "build_embedder", lambda settings: FakeEmbedder())

    with pytest.raises(SystemExit) as excinfo:
        cli.main(["--source", "drive", "--root", "abc", "--db", str(tmp_path / "s.db"), "state"])

    assert excinfo.value.code == 1
    assert "SourceError" in capsys.readouterr().out
