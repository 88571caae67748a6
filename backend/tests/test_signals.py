from __future__ import annotations

from datetime import datetime, timedelta, timezone

from learnpath.signals import (
    AttemptRecord,
    compute_accuracy,
    compute_mastery,
    compute_pace,
    generation_notes,
    performance_rollup,
)

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def _attempts(count: int, *, hours_ago: float = 1.0, correct: int = 1, total: int = 1, subject: str | None = None):
    return [
        AttemptRecord(
            subject=subject,
            correct_count=correct,
            total=total,
            created_at=NOW - timedelta(hours=hours_ago, minutes=index),
        )
        for index in range(count)
    ]


def test_pace_thresholds() -> None:
    assert compute_pace(_attempts(3), now=NOW) == "slow"
    assert compute_pace(_attempts(4), now=NOW) == "normal"
    assert compute_pace(_attempts(11), now=NOW) == "normal"
    assert compute_pace(_attempts(12), now=NOW) == "fast"


def test_pace_ignores_attempts_outside_window() -> None:
    attempts = _attempts(2, hours_ago=1) + _attempts(10, hours_ago=80)
    assert compute_pace(attempts, now=NOW) == "slow"


def test_naive_timestamps_are_treated_as_utc() -> None:
    naive = [AttemptRecord(correct_count=1, total=1, created_at=(NOW - timedelta(hours=2)).replace(tzinfo=None))] * 4
    assert compute_pace(naive, now=NOW) == "normal"


def test_accuracy_is_none_without_data() -> None:
    assert compute_accuracy([]) is None
    assert compute_accuracy([AttemptRecord(correct_count=0, total=0, created_at=NOW)]) is None


def test_accuracy_uses_newest_attempts_only() -> None:
    recent = _attempts(2, hours_ago=1, correct=3, total=3)
    old = _attempts(5, hours_ago=200, correct=0, total=3)

    assert compute_accuracy(recent + old, limit=2) == 100
    assert compute_accuracy(recent + old, limit=50) == round(6 / 21 * 100)


def test_mastery_is_subject_specific_with_default() -> None:
    attempts = _attempts(1, correct=1, total=4, subject="Math") + _attempts(1, correct=4, total=4, subject="History")
    attempts += _attempts(1, correct=2, total=4)

    assert compute_mastery(attempts, "Math") == round(3 / 8 * 100)
    assert compute_mastery([], "Math") == 50


def test_rollup_and_notes() -> None:
    snapshot = performance_rollup(_attempts(5, correct=2, total=4), now=NOW)

    assert snapshot.accuracy_pct == 50
    assert snapshot.pace == "normal"
    assert snapshot.sample_size == 20
    assert snapshot.recent_sample == 5
    assert generation_notes("fast", "Math") == "Learner pace: fast. Personalized for Math."
