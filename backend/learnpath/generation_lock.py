"""Mutual exclusion for curriculum generation per (user, subject).

Curriculum builds are slow and billed, so duplicate tabs, client retries and a
slow first load must not start a second build for the same learner and
subject. The durable lock is a row in ``generation_locks`` keyed on
``(user_id, subject)``; abandoned rows are reclaimed once they are older than
the TTL. When the lock table is missing, or the lock store errors, the
coordinator degrades to an in-process guard, which only protects a single
worker process.
"""

from __future__ import annotations

import logging
import re
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Literal, Optional, Protocol, Tuple, TypeVar

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from .cache import GenerationProgressCache, generation_key, generation_progress
from .config import Settings
from .db.models import GenerationLockModel
from .db.session import session_scope
from .errors import GenerationBusyError
from .telemetry import emit_event

logger = logging.getLogger(__name__)

T = TypeVar("T")
LockReason = Literal["busy", "error"]
Clock = Callable[[], datetime]
SessionScope = Callable[..., AbstractContextManager[Session]]

DEFAULT_LOCK_TTL = timedelta(minutes=3)
BUSY_RETRY_AFTER_SECONDS = 3

_MISSING_TABLE_PATTERN = re.compile(r"no such table|relation .* does not exist|undefinedtable", re.IGNORECASE)
_UNDEFINED_TABLE_SQLSTATE = "42P01"


@dataclass(frozen=True)
class LockResult:
    acquired: bool
    supported: bool
    reason: Optional[LockReason] = None


class LockStore(Protocol):
    def acquire(self, user_id: str, subject: str, ttl: timedelta) -> LockResult:  # pragma: no cover - protocol
        ...

    def release(self, user_id: str, subject: str) -> None:  # pragma: no cover - protocol
        ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def is_missing_table_error(exc: BaseException) -> bool:
    original = getattr(exc, "orig", None)
    for attribute in ("pgcode", "sqlstate"):
        if getattr(original, attribute, None) == _UNDEFINED_TABLE_SQLSTATE:
            return True
    return bool(_MISSING_TABLE_PATTERN.search(str(exc)))


class DatabaseLockStore:
    """Lock rows in ``generation_locks`` with TTL-based takeover of abandoned holders."""

    def __init__(self, *, scope: Optional[SessionScope] = None, clock: Optional[Clock] = None) -> None:
        self._scope = scope or session_scope
        self._clock = clock or _utcnow

    def acquire(self, user_id: str, subject: str, ttl: timedelta) -> LockResult:
        user_id, subject = generation_key(user_id, subject)
        now = self._clock()
        try:
            self._insert(user_id, subject, now)
            return LockResult(acquired=True, supported=True)
        except IntegrityError:
            pass
        except SQLAlchemyError as exc:
            return self._failure(exc, user_id, subject)

        try:
            return self._take_over_if_stale(user_id, subject, now, ttl)
        except SQLAlchemyError as exc:
            return self._failure(exc, user_id, subject)

    def release(self, user_id: str, subject: str) -> None:
        user_id, subject = generation_key(user_id, subject)
        try:
            with self._scope() as session:
                session.execute(
                    delete(GenerationLockModel).where(
                        GenerationLockModel.user_id == user_id,
                        GenerationLockModel.subject == subject,
                    )
                )
        except Exception as exc:  # noqa: BLE001
            logger.warning("Failed to release generation lock user=%s subject=%s: %s", user_id, subject, exc)

    def _insert(self, user_id: str, subject: str, now: datetime) -> None:
        with self._scope() as session:
            session.add(GenerationLockModel(user_id=user_id, subject=subject, created_at=now))

    def _take_over_if_stale(self, user_id: str, subject: str, now: datetime, ttl: timedelta) -> LockResult:
        with self._scope(commit=False) as session:
            created_at = session.execute(
                select(GenerationLockModel.created_at).where(
                    GenerationLockModel.user_id == user_id,
                    GenerationLockModel.subject == subject,
                )
            ).scalar_one_or_none()

        if created_at is None:
            # The holder released after our insert failed.
            try:
                self._insert(user_id, subject, now)
            except IntegrityError:
                return LockResult(acquired=False, supported=True, reason="busy")
            return LockResult(acquired=True, supported=True)

        if now - _aware(created_at) <= ttl:
            return LockResult(acquired=False, supported=True, reason="busy")

        with self._scope() as session:
            # Guarded on the stale timestamp so a fresh holder that won the race is left alone.
            session.execute(
                delete(GenerationLockModel).where(
                    GenerationLockModel.user_id == user_id,
                    GenerationLockModel.subject == subject,
                    GenerationLockModel.created_at == created_at,
                )
            )
        try:
            self._insert(user_id, subject, now)
        except IntegrityError:
            return LockResult(acquired=False, supported=True, reason="busy")

        age_seconds = (now - _aware(created_at)).total_seconds()
        logger.warning(
            "Took over stale generation lock user=%s subject=%s age=%.0fs",
            user_id,
            subject,
            age_seconds,
        )
        emit_event("generation_lock_takeover", user_id=user_id, subject=subject, age_seconds=age_seconds)
        return LockResult(acquired=True, supported=True)

    def _failure(self, exc: SQLAlchemyError, user_id: str, subject: str) -> LockResult:
        if is_missing_table_error(exc):
            logger.info("generation_locks table is unavailable; durable locking disabled")
            return LockResult(acquired=False, supported=False)
        logger.warning("Generation lock error user=%s subject=%s: %s", user_id, subject, exc)
        return LockResult(acquired=False, supported=True, reason="error")


class InProcessLockStore:
    """Single-process lock map; the guard used when durable locking is unavailable.

    Entries expire after the TTL they were acquired with, so a build that died
    without releasing stops reporting as in flight.
    """

    def __init__(self, *, clock: Optional[Clock] = None) -> None:
        self._clock = clock or _utcnow
        self._held: Dict[Tuple[str, str], Tuple[datetime, timedelta]] = {}
        self._lock = Lock()

    def acquire(self, user_id: str, subject: str, ttl: timedelta = DEFAULT_LOCK_TTL) -> LockResult:
        key = generation_key(user_id, subject)
        now = self._clock()
        with self._lock:
            if self._live(key, now):
                return LockResult(acquired=False, supported=True, reason="busy")
            self._held[key] = (now, ttl)
        return LockResult(acquired=True, supported=True)

    def release(self, user_id: str, subject: str) -> None:
        with self._lock:
            self._held.pop(generation_key(user_id, subject), None)

    def is_held(self, user_id: str, subject: str) -> bool:
        now = self._clock()
        with self._lock:
            return self._live(generation_key(user_id, subject), now)

    def _live(self, key: Tuple[str, str], now: datetime) -> bool:
        entry = self._held.get(key)
        if entry is None:
            return False
        held_since, ttl = entry
        return now - held_since <= ttl


class GenerationCoordinator:
    """Gates curriculum builds so at most one runs per (user, subject)."""

    def __init__(
        self,
        lock_store: LockStore,
        *,
        fallback: Optional[InProcessLockStore] = None,
        ttl: timedelta = DEFAULT_LOCK_TTL,
        progress: Optional[GenerationProgressCache] = None,
    ) -> None:
        self._store = lock_store
        self._fallback = fallback or InProcessLockStore()
        self._ttl = ttl
        self._progress = progress or generation_progress

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def acquire(self, user_id: str, subject: str, ttl: Optional[timedelta] = None) -> LockResult:
        try:
            result = self._store.acquire(user_id, subject, ttl or self._ttl)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Lock store raised during acquire user=%s subject=%s: %s", user_id, subject, exc)
            result = LockResult(acquired=False, supported=True, reason="error")
        logger.debug("acquire-lock user=%s subject=%s result=%s", user_id, subject, result)
        return result

    def release(self, user_id: str, subject: str) -> None:
        try:
            self._store.release(user_id, subject)
        except Exception as exc:  # noqa: BLE001
            logger.warning("Lock store raised during release user=%s subject=%s: %s", user_id, subject, exc)

    def is_generating(self, user_id: str, subject: str) -> bool:
        if self._fallback.is_held(user_id, subject):
            return True
        return isinstance(self._store, InProcessLockStore) and self._store.is_held(user_id, subject)

    def report_progress(self, user_id: str, subject: str, phase: str, detail: Optional[str] = None) -> None:
        self._progress.set(user_id, subject, phase, detail)

    def progress(self, user_id: str, subject: str) -> Optional[Dict[str, str]]:
        return self._progress.get(user_id, subject)

    def run(self, user_id: str, subject: str, build: Callable[[], T]) -> T:
        """Run ``build`` while holding the generation lock, or raise :class:`GenerationBusyError`.

        The lock (durable or in-process) is always released before the result or
        the build's exception leaves this method.
        """
        lock = self.acquire(user_id, subject)
        if lock.acquired:
            release = lambda: self.release(user_id, subject)  # noqa: E731
            emit_event("generation_lock_acquired", user_id=user_id, subject=subject, mode="durable")
        elif lock.supported and lock.reason == "busy":
            emit_event("generation_lock_busy", user_id=user_id, subject=subject, mode="durable")
            raise GenerationBusyError(
                "Another session is preparing your learning path",
                "Waiting for the current generation to finish.",
                retry_after=BUSY_RETRY_AFTER_SECONDS,
            )
        else:
            local = self._fallback.acquire(user_id, subject, self._ttl)
            if not local.acquired:
                emit_event("generation_lock_busy", user_id=user_id, subject=subject, mode="in_process")
                if lock.supported:
                    raise GenerationBusyError(
                        "Finishing an existing generation",
                        "Re-using the map from a parallel request.",
                        retry_after=BUSY_RETRY_AFTER_SECONDS,
                    )
                raise GenerationBusyError(
                    "Finalizing your learning path",
                    "A previous request is still wrapping up.",
                    retry_after=BUSY_RETRY_AFTER_SECONDS,
                )
            logger.info(
                "Durable generation lock unavailable (supported=%s reason=%s); using in-process guard for user=%s subject=%s",
                lock.supported,
                lock.reason,
                user_id,
                subject,
            )
            release = lambda: self._fallback.release(user_id, subject)  # noqa: E731
            emit_event("generation_lock_acquired", user_id=user_id, subject=subject, mode="in_process")

        try:
            self.report_progress(user_id, subject, "Preparing your learning path")
            return build()
        finally:
            self._progress.invalidate(user_id, subject)
            release()


def build_lock_store(settings: Settings) -> LockStore:
    if settings.lock_backend == "memory":
        return InProcessLockStore()
    return DatabaseLockStore()


def build_coordinator(settings: Settings) -> GenerationCoordinator:
    return GenerationCoordinator(
        build_lock_store(settings),
        ttl=timedelta(seconds=settings.lock_ttl_seconds),
    )


__all__ = [
    "DEFAULT_LOCK_TTL",
    "DatabaseLockStore",
    "GenerationCoordinator",
    "InProcessLockStore",
    "LockResult",
    "LockStore",
    "build_coordinator",
    "build_lock_store",
    "is_missing_table_error",
]
