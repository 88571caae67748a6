"""Pace and accuracy signals derived from recent quiz attempts.

Everything here is a pure function of the attempt history; values are
recomputed on each request rather than cached.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field

Pace = Literal["slow", "normal", "fast"]

DEFAULT_PACE_WINDOW_HOURS = 72.0
DEFAULT_ACCURACY_WINDOW = 50
DEFAULT_MASTERY = 50
NORMAL_PACE_THRESHOLD = 4
FAST_PACE_THRESHOLD = 12


class AttemptRecord(BaseModel):
    subject: Optional[str] = None
    correct_count: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    created_at: Optional[datetime] = None


class PerformanceSnapshot(BaseModel):
    accuracy_pct: Optional[int] = None
    pace: Pace = "slow"
    sample_size: int = 0
    recent_sample: int = 0


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _newest_first(attempts: Iterable[AttemptRecord]) -> List[AttemptRecord]:
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(
        attempts,
        key=lambda attempt: _aware(attempt.created_at) if attempt.created_at else epoch,
        reverse=True,
    )


def count_recent(
    attempts: Iterable[AttemptRecord],
    window_hours: float = DEFAULT_PACE_WINDOW_HOURS,
    *,
    now: Optional[datetime] = None,
) -> int:
    reference = _aware(now) if now else datetime.now(timezone.utc)
    cutoff = reference - timedelta(hours=window_hours)
    return sum(
        1
        for attempt in attempts
        if attempt.created_at is not None and cutoff < _aware(attempt.created_at) <= reference
    )


def pace_for_count(recent: int) -> Pace:
    if recent >= FAST_PACE_THRESHOLD:
        return "fast"
    if recent >= NORMAL_PACE_THRESHOLD:
        return "normal"
    return "slow"


def compute_pace(
    attempts: Iterable[AttemptRecord],
    window_hours: float = DEFAULT_PACE_WINDOW_HOURS,
    *,
    now: Optional[datetime] = None,
) -> Pace:
    """Classify pace by the number of attempts inside the trailing window."""
    return pace_for_count(count_recent(attempts, window_hours, now=now))


def compute_accuracy(
    attempts: Iterable[AttemptRecord],
    limit: int = DEFAULT_ACCURACY_WINDOW,
) -> Optional[int]:
    """Rounded percent correct over the newest ``limit`` attempts.

    Returns ``None`` when there is nothing to measure; callers must treat that
    as "unknown", never as 0%.
    """
    recent = _newest_first(attempts)[:limit]
    correct = sum(attempt.correct_count for attempt in recent)
    total = sum(attempt.total for attempt in recent)
    if total <= 0:
        return None
    return round(correct / total * 100)


def compute_mastery(attempts: Iterable[AttemptRecord], subject: str) -> int:
    """Subject-specific mastery estimate used to seed curriculum generation.

    Attempts recorded without a subject count towards every subject.
    """
    correct = 0
    total = 0
    for attempt in attempts:
        if attempt.subject and attempt.subject != subject:
            continue
        correct += attempt.correct_count
        total += attempt.total
    if total <= 0:
        return DEFAULT_MASTERY
    return round(correct / total * 100)


def performance_rollup(
    attempts: Sequence[AttemptRecord],
    *,
    window_hours: float = DEFAULT_PACE_WINDOW_HOURS,
    accuracy_window: int = DEFAULT_ACCURACY_WINDOW,
    now: Optional[datetime] = None,
) -> PerformanceSnapshot:
    recent = count_recent(attempts, window_hours, now=now)
    sampled = _newest_first(attempts)[:accuracy_window]
    return PerformanceSnapshot(
        accuracy_pct=compute_accuracy(sampled, accuracy_window),
        pace=pace_for_count(recent),
        sample_size=sum(attempt.total for attempt in sampled),
        recent_sample=recent,
    )


def generation_notes(pace: Pace, subject: str) -> str:
    return f"Learner pace: {pace}. Personalized for {subject}."


__all__ = [
    "AttemptRecord",
    "Pace",
    "PerformanceSnapshot",
    "compute_accuracy",
    "compute_mastery",
    "compute_pace",
    "count_recent",
    "generation_notes",
    "pace_for_count",
    "performance_rollup",
]
