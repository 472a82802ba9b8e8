from __future__ import annotations

import threading
from dataclasses import dataclass, field

import pytest

from ingestion.errors import ConfigurationError
from ingestion.jobs import KeyedLock, SyncJobRunner
from types_models import BatchCounts, BatchResult, JobState, StateSummary


def _result(root_id: str) -> BatchResult:
    summary = StateSummary(
        root_id=root_id,
        done=True,
        scanned_folders=1,
        scanned_files=1,
        indexed=1,
        skipped=0,
        errors=0,
        queue_remaining=0,
    )
    return BatchResult(
        root_id=root_id,
        done=True,
        queue_remaining=0,
        counters=summary,
        batch=BatchCounts(processed=1, indexed=1),
    )


@dataclass
class BlockingEngine:
    """Stands in for `SyncEngine`; batches wait until `release` is set."""

    release: threading.Event = field(default_factory=threading.Event)
    started: threading.Event = field(default_factory=threading.Event)
    fail: bool = False
    calls: list[tuple[str, int]] = field(default_factory=list)

    def run_batch(self, root_id: str, max_files: int) -> BatchResult:
        self.calls.append((root_id, max_files))
        self.started.set()
        _ = self.release.wait(timeout=5)
        if self.fail:
            raise RuntimeError("source unreachable")
        return _result(root_id)


def test_keyed_lock_is_independent_per_key() -> None:
    locks = KeyedLock()

    assert locks.try_acquire("a")
    assert not locks.try_acquire("a")
    assert locks.try_acquire("b")
    assert locks.locked("a")

    locks.release("a")

    assert not locks.locked("a")
    assert locks.try_acquire("a")


def test_second_submit_for_same_root_is_rejected() -> None:
    engine = BlockingEngine()
    runner = SyncJobRunner(engine, max_workers=2)
    try:
        ticket, future = runner.submit("root", 5)
        assert engine.started.wait(timeout=5)

        rejected, rejected_future = runner.submit("root", 5)

        assert ticket.accepted is True
        assert ticket.message == "Sync started"
        assert rejected.accepted is False
        assert rejected.message == "Sync already running"
        assert rejected_future is None
        assert runner.is_running("root")
        assert runner.status("root").state == JobState.RUNNING

        engine.release.set()
        assert future is not None
        assert future.result(timeout=5).done is True
    finally:
        engine.release.set()
        runner.shutdown()

    assert engine.calls == [("root", 5)]
    assert not runner.is_running("root")
    status = runner.status("root")
    assert status.state == JobState.SUCCEEDED
    assert status.last_result is not None
    assert status.finished_at is not None


def test_other_roots_run_concurrently() -> None:
    engine = BlockingEngine()
    runner = SyncJobRunner(engine, max_workers=2)
    try:
        first, _ = runner.submit("root-a", 3)
        second, _ = runner.submit("root-b", 3)

        assert first.accepted is True
        assert second.accepted is True
    finally:
        engine.release.set()
        runner.shutdown()

    assert sorted(root for root, _ in engine.calls) == ["root-a", "root-b"]


def test_root_can_be_resubmitted_after_completion() -> None:
    engine = BlockingEngine()
    engine.release.set()
    runner = SyncJobRunner(engine, max_workers=1)
    try:
        _, future = runner.submit("root", 2)
        assert future is not None
        _ = future.result(timeout=5)

        ticket, again = runner.submit("root", 2)
        assert ticket.accepted is True
        assert again is not None
        _ = again.result(timeout=5)
    finally:
        runner.shutdown()

    assert len(engine.calls) == 2


def test_failed_batch_is_reported_and_releases_root() -> None:
    engine = BlockingEngine(fail=True)
    engine.release.set()
    runner = SyncJobRunner(engine, max_workers=1)
    try:
        _, future = runner.submit("root", 2)
        assert future is not None
        with pytest.raises(RuntimeError):
            _ = future.result(timeout=5)
    finally:
        runner.shutdown()

    status = runner.status("root")
    assert status.state == JobState.FAILED
    assert status.last_error == "RuntimeError: source unreachable"
    assert not runner.is_running("root")


def test_unknown_root_status_is_idle() -> None:
    runner = SyncJobRunner(BlockingEngine(), max_workers=1)
    try:
        assert runner.status("never").state == JobState.IDLE
    finally:
        runner.shutdown()


def test_submit_without_root_is_a_configuration_error() -> None:
    runner = SyncJobRunner(BlockingEngine(), max_workers=1)
    try:
        with pytest.raises(ConfigurationError):
            _ = runner.submit("")
    finally:
        runner.shutdown()
