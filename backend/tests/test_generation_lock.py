from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from learnpath.cache import GenerationProgressCache
from learnpath.db.models import GenerationLockModel
from learnpath.db.session import get_engine, session_scope
from learnpath.errors import GenerationBusyError
from learnpath.generation_lock import (
    DatabaseLockStore,
    GenerationCoordinator,
    InProcessLockStore,
    LockResult,
    is_missing_table_error,
)
from learnpath.telemetry import capture_events

TTL = timedelta(minutes=3)
T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class _UnsupportedStore:
    def acquire(self, user_id, subject, ttl):
        return LockResult(acquired=False, supported=False)

    def release(self, user_id, subject):
        raise AssertionError("release must not be called for a lock that was never acquired")


class _ExplodingStore:
    def acquire(self, user_id, subject, ttl):
        raise RuntimeError("lock service down")

    def release(self, user_id, subject):
        raise RuntimeError("lock service down")


def test_database_lock_is_exclusive_until_released() -> None:
    store = DatabaseLockStore()

    assert store.acquire("u1", "Math", TTL) == LockResult(acquired=True, supported=True)
    assert store.acquire("u1", "Math", TTL) == LockResult(acquired=False, supported=True, reason="busy")
    assert store.acquire("u1", "History", TTL).acquired
    assert store.acquire("u2", "Math", TTL).acquired

    store.release("u1", "Math")

    assert store.acquire("u1", "Math", TTL).acquired


def test_concurrent_acquire_has_exactly_one_winner() -> None:
    store = DatabaseLockStore()
    barrier = threading.Barrier(6)
    results: list[LockResult] = []
    results_lock = threading.Lock()

    def contend() -> None:
        barrier.wait()
        result = store.acquire("u1", "Math", TTL)
        with results_lock:
            results.append(result)

    threads = [threading.Thread(target=contend) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sum(1 for result in results if result.acquired) == 1


def test_stale_lock_is_taken_over() -> None:
    DatabaseLockStore(clock=lambda: T0).acquire("u1", "Math", TTL)

    fresh = DatabaseLockStore(clock=lambda: T0 + timedelta(minutes=2))
    assert fresh.acquire("u1", "Math", TTL).reason == "busy"

    late = DatabaseLockStore(clock=lambda: T0 + timedelta(minutes=4))
    with capture_events() as events:
        result = late.acquire("u1", "Math", TTL)

    assert result.acquired
    assert [event.name for event in events] == ["generation_lock_takeover"]
    with session_scope(commit=False) as session:
        created_at = session.execute(select(GenerationLockModel.created_at)).scalar_one()
    assert created_at.replace(tzinfo=timezone.utc) == T0 + timedelta(minutes=4)


def test_missing_lock_table_reports_unsupported() -> None:
    GenerationLockModel.__table__.drop(get_engine())
    store = DatabaseLockStore()

    result = store.acquire("u1", "Math", TTL)

    assert result == LockResult(acquired=False, supported=False)
    store.release("u1", "Math")


def test_missing_table_detection_uses_sqlstate_and_message() -> None:
    class _PgError(Exception):
        pgcode = "42P01"

    assert is_missing_table_error(OperationalError("INSERT", {}, _PgError("boom")))
    assert is_missing_table_error(OperationalError("INSERT", {}, Exception('relation "generation_locks" does not exist')))
    assert not is_missing_table_error(OperationalError("INSERT", {}, Exception("connection refused")))


def test_in_process_store_is_atomic() -> None:
    store = InProcessLockStore()

    assert store.acquire("u1", "Math").acquired
    assert store.acquire("u1", "Math").reason == "busy"
    assert store.is_held("u1", "Math")

    store.release("u1", "Math")

    assert not store.is_held("u1", "Math")
    assert store.acquire("u1", "Math").acquired


def test_run_releases_lock_after_success_and_failure() -> None:
    coordinator = GenerationCoordinator(DatabaseLockStore())

    assert coordinator.run("u1", "Math", lambda: "built") == "built"
    assert coordinator.acquire("u1", "Math").acquired
    coordinator.release("u1", "Math")

    def failing_build() -> None:
        raise ValueError("generator exploded")

    with pytest.raises(ValueError):
        coordinator.run("u1", "Math", failing_build)

    assert coordinator.acquire("u1", "Math").acquired


def test_run_reports_busy_when_durable_lock_is_held() -> None:
    store = DatabaseLockStore()
    store.acquire("u1", "Math", TTL)
    coordinator = GenerationCoordinator(store)
    calls: list[str] = []

    with capture_events() as events:
        with pytest.raises(GenerationBusyError) as excinfo:
            coordinator.run("u1", "Math", lambda: calls.append("built"))

    assert calls == []
    assert excinfo.value.retry_after == 3
    assert excinfo.value.phase == "Another session is preparing your learning path"
    assert excinfo.value.detail == "Waiting for the current generation to finish."
    assert [event.name for event in events] == ["generation_lock_busy"]


def test_degraded_mode_blocks_duplicate_generation() -> None:
    coordinator = GenerationCoordinator(_UnsupportedStore())
    started = threading.Event()
    finish = threading.Event()
    calls: list[str] = []

    def slow_build() -> str:
        calls.append("built")
        started.set()
        finish.wait(timeout=5)
        return "done"

    worker = threading.Thread(target=lambda: coordinator.run("u1", "Math", slow_build))
    worker.start()
    assert started.wait(timeout=5)

    assert coordinator.is_generating("u1", "Math")
    with pytest.raises(GenerationBusyError) as excinfo:
        coordinator.run("u1", "Math", slow_build)

    finish.set()
    worker.join(timeout=5)

    assert calls == ["built"]
    assert excinfo.value.phase == "Finalizing your learning path"
    assert excinfo.value.detail == "A previous request is still wrapping up."
    assert not coordinator.is_generating("u1", "Math")


def test_lock_store_exceptions_never_escape() -> None:
    coordinator = GenerationCoordinator(_ExplodingStore())

    assert coordinator.acquire("u1", "Math") == LockResult(acquired=False, supported=True, reason="error")
    coordinator.release("u1", "Math")
    assert coordinator.run("u1", "Math", lambda: 42) == 42


def test_progress_is_visible_during_build_and_cleared_after() -> None:
    coordinator = GenerationCoordinator(InProcessLockStore())
    seen: list[dict | None] = []

    def build() -> None:
        coordinator.report_progress("u1", "Math", "Drafting topics", "3 of 5")
        seen.append(coordinator.progress("u1", "Math"))

    coordinator.run("u1", "Math", build)

    assert seen[0]["phase"] == "Drafting topics"
    assert seen[0]["detail"] == "3 of 5"
    assert coordinator.progress("u1", "Math") is None


def test_insert_is_retried_when_holder_released_in_between() -> None:
    class _RacedStore(DatabaseLockStore):
        raced = False

        def _insert(self, user_id, subject, now):
            if not self.raced:
                self.raced = True
                raise IntegrityError("INSERT INTO generation_locks", {}, Exception("UNIQUE constraint failed"))
            super()._insert(user_id, subject, now)

    store = _RacedStore(clock=lambda: T0)

    assert store.acquire("u1", "Math", TTL) == LockResult(acquired=True, supported=True)
    assert DatabaseLockStore(clock=lambda: T0).acquire("u1", "Math", TTL).reason == "busy"


def test_in_process_lock_expires_after_ttl() -> None:
    now = [T0]
    store = InProcessLockStore(clock=lambda: now[0])
    coordinator = GenerationCoordinator(store)

    assert store.acquire("u1", "Math", TTL).acquired
    assert coordinator.is_generating("u1", "Math")

    now[0] = T0 + TTL + timedelta(seconds=1)

    assert not store.is_held("u1", "Math")
    assert not coordinator.is_generating("u1", "Math")
    assert store.acquire("u1", "Math", TTL).acquired


def test_progress_and_locks_share_case_sensitive_keys() -> None:
    progress = GenerationProgressCache()
    coordinator = GenerationCoordinator(InProcessLockStore(), progress=progress)

    coordinator.report_progress("u1", "Math", "Drafting topics")
    assert coordinator.acquire("u1", "Math").acquired

    assert coordinator.progress("u1", "math") is None
    assert coordinator.progress("u1", " Math ")["phase"] == "Drafting topics"
    assert coordinator.acquire("u1", "math").acquired
    assert coordinator.acquire("u1", " Math ").reason == "busy"
