from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone

import pytest

from learnpath.attempts import AttemptEvent, AttemptProcessor, compute_streak_after_activity
from learnpath.curriculum_store import CurriculumStore, curriculum_store
from learnpath.db.session import session_scope
from learnpath.errors import CurriculumStorageError, InvalidAttemptError
from learnpath.learning_path import LearningPath
from learnpath.progression import AdvanceOutcome
from learnpath.repositories import learners
from learnpath.telemetry import capture_events

from conftest import sample_document, sample_path

NOW = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)


def _processor(now: datetime = NOW) -> AttemptProcessor:
    return AttemptProcessor(clock=lambda: now)


def _finish(topic: str | None = "Basics > Numbers", **overrides) -> AttemptEvent:
    payload = {
        "event": "lesson-finish",
        "lesson_id": "lesson-1",
        "subject": "Math",
        "topic": topic,
        "correct_count": 3,
        "total": 3,
    }
    payload.update(overrides)
    return AttemptEvent(**payload)


@pytest.fixture
def stored_path() -> None:
    curriculum_store.save("u1", "Math", sample_path(), next_topic="Basics > Numbers", course="Algebra 1")


@pytest.mark.parametrize(
    ("previous", "last", "today", "expected"),
    [
        (0, None, date(2026, 10, 18), 1),
        (4, date(2026, 10, 18), date(2026, 10, 18), 4),
        (4, date(2026, 10, 17), date(2026, 10, 18), 5),
        (4, date(2026, 10, 15), date(2026, 10, 18), 1),
        (0, date(2026, 10, 18), date(2026, 10, 18), 1),
    ],
)
def test_streak_rules(previous, last, today, expected) -> None:
    assert compute_streak_after_activity(previous, last, today) == expected


@pytest.mark.parametrize(
    "overrides",
    [{"lesson_id": ""}, {"lesson_id": None}, {"correct_count": None}, {"total": None}],
)
def test_lesson_finish_requires_id_and_counts(overrides) -> None:
    with pytest.raises(InvalidAttemptError):
        _processor().process("u1", _finish(**overrides))


def test_lesson_finish_awards_points_and_logs_attempt() -> None:
    response = _processor().process("u1", _finish(topic=None))

    assert response.ok
    assert response.add_pts == 30
    assert response.new_streak == 1
    assert response.profile.points == 30
    assert response.progression is None

    body = response.model_dump(by_alias=True)
    assert body["addPts"] == 30 and body["newStreak"] == 1

    with session_scope(commit=False) as session:
        attempts = learners.recent_attempts(session, "u1", limit=10)
    assert [(a.subject, a.correct_count, a.total) for a in attempts] == [("Math", 3, 3)]


def test_streak_grows_across_days() -> None:
    _processor(NOW).process("u1", _finish(topic=None))
    same_day = _processor(NOW + timedelta(hours=2)).process("u1", _finish(topic=None))
    next_day = _processor(NOW + timedelta(days=1)).process("u1", _finish(topic=None))

    assert same_day.new_streak == 1
    assert next_day.new_streak == 2
    assert next_day.profile.points == 90


def test_question_correct_awards_points_without_logging_attempt() -> None:
    response = _processor().process("u1", AttemptEvent(event="question-correct", subject="Math"))

    assert response.add_pts == 10

    with session_scope(commit=False) as session:
        assert learners.recent_attempts(session, "u1", limit=10) == []


def test_points_per_correct_override_and_skip() -> None:
    boosted = _processor().process("u1", _finish(topic=None, points_per_correct=25, correct_count=2))
    skipped = _processor().process("u2", _finish(topic=None, skip_points=True))
    ignored = _processor().process("u3", _finish(topic=None, points_per_correct=0, correct_count=1))

    assert boosted.add_pts == 50
    assert skipped.add_pts == 0 and skipped.new_streak is None
    assert ignored.add_pts == 10


def test_zero_correct_logs_attempt_without_points() -> None:
    response = _processor().process("u1", _finish(topic=None, correct_count=0))

    assert response.add_pts == 0
    assert response.profile is None


@pytest.mark.usefixtures("stored_path")
def test_finishing_planned_lessons_completes_subtopic() -> None:
    processor = _processor()

    first = processor.process("u1", _finish())
    second = processor.process("u1", _finish())
    with capture_events() as events:
        third = processor.process("u1", _finish())

    assert first.progression.outcome is AdvanceOutcome.CONTINUED
    assert second.progression.delivered_mini == 2
    assert third.progression.outcome is AdvanceOutcome.COMPLETED
    assert third.progression.next_label == "Basics > Variables"
    assert [event.name for event in events] == ["subtopic_completed"]

    state = curriculum_store.state("u1", "Math")
    assert state.next_topic == "Basics > Variables"
    assert state.course == "Algebra 1"
    path = curriculum_store.load("u1", "Math")
    assert path.topics[0].subtopics[0].completed is True


@pytest.mark.usefixtures("stored_path")
def test_repeat_attempt_on_completed_subtopic_changes_nothing() -> None:
    processor = _processor()
    processor.process("u1", _finish(topic="Basics > Variables"))
    before = curriculum_store.load("u1", "Math").to_document()

    repeat = processor.process("u1", _finish(topic="Basics > Variables"))

    assert repeat.progression.outcome is AdvanceOutcome.ALREADY_COMPLETED
    assert curriculum_store.load("u1", "Math").to_document() == before


def test_last_subtopic_exhausts_the_path() -> None:
    document = sample_document()
    document["topics"][0]["subtopics"][0]["completed"] = True
    document["topics"][0]["subtopics"][1]["completed"] = True
    document["progress"] = {"topicIdx": 1, "subtopicIdx": 0, "deliveredMini": 1}
    curriculum_store.save("u1", "Math", LearningPath.from_document(document), next_topic="Equations > Linear")

    with capture_events() as events:
        response = _processor().process("u1", _finish(topic="Equations > Linear"))

    assert response.progression.exhausted
    assert [event.name for event in events] == ["subtopic_completed", "learning_path_exhausted"]
    state = curriculum_store.state("u1", "Math")
    assert state.next_topic is None
    assert state.path["progress"]["exhausted"] is True


@pytest.mark.usefixtures("stored_path")
def test_unknown_label_and_missing_path_still_award_points() -> None:
    unknown = _processor().process("u1", _finish(topic="Basics > Fractions"))
    no_path = _processor().process("u1", _finish(subject="History"))

    assert unknown.add_pts == 30 and unknown.progression is None
    assert no_path.add_pts == 30 and no_path.progression is None
    assert curriculum_store.load("u1", "Math").progress.delivered_mini == 0


@pytest.mark.usefixtures("stored_path")
def test_storage_failure_while_advancing_is_logged_and_points_kept(monkeypatch, caplog) -> None:
    def unavailable(*_args, **_kwargs):
        raise CurriculumStorageError("Failed to save learning path for 'Math'")

    monkeypatch.setattr(curriculum_store, "update", unavailable)

    with caplog.at_level(logging.ERROR, logger="learnpath.attempts"):
        response = _processor().process("u1", _finish())

    assert response.add_pts == 30
    assert response.progression is None
    with session_scope(commit=False) as session:
        assert learners.get(session, "u1").points == 30
        assert len(learners.recent_attempts(session, "u1", limit=10)) == 1
    failures = [record for record in caplog.records if record.name == "learnpath.attempts"]
    assert [record.getMessage() for record in failures] == [
        "Failed to advance learning path user=u1 subject=Math label=Basics > Numbers"
    ]
    assert failures[0].exc_info[0] is CurriculumStorageError


@pytest.mark.usefixtures("stored_path")
def test_concurrent_attempts_both_count() -> None:
    class _InterleavedStore(CurriculumStore):
        """Lets a second attempt commit after this writer has read the row."""

        def update(self, user_id, subject, edit, **kwargs):
            interleaved = []

            def edit_after_rival(path, state):
                if not interleaved:
                    interleaved.append(True)
                    _processor().process("u1", _finish())
                return edit(path, state)

            return super().update(user_id, subject, edit_after_rival, **kwargs)

    response = AttemptProcessor(store=_InterleavedStore(), clock=lambda: NOW).process("u1", _finish())

    assert response.progression.outcome is AdvanceOutcome.CONTINUED
    assert response.progression.delivered_mini == 2
    assert curriculum_store.load("u1", "Math").progress.delivered_mini == 2
