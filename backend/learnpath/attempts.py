"""Quiz attempt ingestion: attempt log, points and streak, and curriculum advancement."""

from __future__ import annotations

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from .config import Settings, get_settings
from .curriculum_store import CurriculumStore, PathEdit, curriculum_store
from .db.session import session_scope
from .errors import CurriculumStorageError, InvalidAttemptError, UnknownLabelError
from .learning_path import LearningPath
from .progression import AdvanceOutcome, AdvanceResult, ProgressionEngine, progression_engine
from .repositories.learners import LearnerProfile, LearnerRepository, learners
from .repositories.subject_state import SubjectState
from .telemetry import emit_event

logger = logging.getLogger(__name__)

AttemptEventType = Literal["lesson-finish", "question-correct"]


class AttemptEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: AttemptEventType = "lesson-finish"
    lesson_id: Optional[str] = None
    subject: Optional[str] = None
    topic: Optional[str] = None
    correct_count: Optional[int] = None
    total: Optional[int] = None
    correct_increment: Optional[int] = None
    points_per_correct: Optional[int] = None
    skip_points: bool = False


class AttemptResponse(BaseModel):
    ok: bool = True
    add_pts: int = Field(0, serialization_alias="addPts")
    new_streak: Optional[int] = Field(None, serialization_alias="newStreak")
    profile: Optional[LearnerProfile] = None
    progression: Optional[AdvanceResult] = None


def compute_streak_after_activity(previous_streak: int, last_study_date: Optional[date], today: date) -> int:
    """Same day keeps the streak, the following day extends it, any other gap restarts at 1."""
    if last_study_date == today:
        return max(previous_streak, 1)
    if last_study_date is not None and last_study_date + timedelta(days=1) == today:
        return max(previous_streak, 0) + 1
    return 1


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AttemptProcessor:
    def __init__(
        self,
        *,
        store: Optional[CurriculumStore] = None,
        repository: Optional[LearnerRepository] = None,
        engine: Optional[ProgressionEngine] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._store = store or curriculum_store
        self._repo = repository or learners
        self._engine = engine or progression_engine
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow

    def process(self, user_id: str, event: AttemptEvent) -> AttemptResponse:
        subject = event.subject.strip() if event.subject and event.subject.strip() else None
        finishing = event.event == "lesson-finish"
        lesson_id = event.lesson_id.strip() if event.lesson_id else ""
        if finishing and (not lesson_id or event.correct_count is None or event.total is None):
            raise InvalidAttemptError("Invalid payload")

        if event.event == "question-correct":
            units = event.correct_increment if event.correct_increment is not None else 1
        else:
            units = event.correct_count or 0
        units = max(0, units)
        per_correct = event.points_per_correct if event.points_per_correct and event.points_per_correct > 0 else None
        per_correct = per_correct or self._settings.points_per_correct
        award = not (finishing and event.skip_points) and units > 0

        now = self._clock()
        add_pts = 0
        new_streak: Optional[int] = None
        profile: Optional[LearnerProfile] = None
        try:
            with session_scope() as session:
                if finishing:
                    self._repo.record_attempt(
                        session,
                        user_id,
                        subject=subject,
                        lesson_id=lesson_id,
                        correct_count=max(0, event.correct_count or 0),
                        total=max(0, event.total or 0),
                        created_at=now,
                    )
                if award:
                    current = self._repo.ensure(session, user_id)
                    today = now.date()
                    new_streak = compute_streak_after_activity(current.streak, current.last_study_date, today)
                    add_pts = units * per_correct
                    profile = self._repo.apply_activity(
                        session,
                        user_id,
                        add_points=add_pts,
                        streak=new_streak,
                        study_date=today,
                    )
        except SQLAlchemyError as exc:
            logger.error("Failed to record attempt user=%s subject=%s: %s", user_id, subject, exc)
            raise CurriculumStorageError("Failed to record attempt") from exc

        progression: Optional[AdvanceResult] = None
        if finishing and subject and event.topic:
            progression = self._advance(user_id, subject, event.topic)

        return AttemptResponse(
            ok=True,
            add_pts=add_pts,
            new_streak=new_streak,
            profile=profile,
            progression=progression,
        )

    def _advance(self, user_id: str, subject: str, label: str) -> Optional[AdvanceResult]:
        outcome: Dict[str, AdvanceResult] = {}

        def apply(path: LearningPath, _state: SubjectState) -> PathEdit:
            result = self._engine.advance_on_completion(path, label)
            outcome["result"] = result
            return PathEdit(
                next_topic=result.next_label,
                changed=result.outcome is not AdvanceOutcome.ALREADY_COMPLETED,
            )

        try:
            saved = self._store.update(user_id, subject, apply)
        except UnknownLabelError as exc:
            logger.info("Ignoring attempt for unknown subtopic user=%s subject=%s: %s", user_id, subject, exc)
            return None
        except Exception:  # noqa: BLE001
            logger.exception("Failed to advance learning path user=%s subject=%s label=%s", user_id, subject, label)
            return None
        if saved is None:
            logger.info("No learning path to advance user=%s subject=%s", user_id, subject)
            return None

        result = outcome["result"]
        if result.outcome in (AdvanceOutcome.COMPLETED, AdvanceOutcome.EXHAUSTED):
            emit_event(
                "subtopic_completed",
                user_id=user_id,
                subject=subject,
                label=result.label,
                next_label=result.next_label,
            )
        if result.exhausted:
            emit_event("learning_path_exhausted", user_id=user_id, subject=subject)
        return result


__all__ = [
    "AttemptEvent",
    "AttemptProcessor",
    "AttemptResponse",
    "compute_streak_after_activity",
]
