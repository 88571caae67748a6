"""Serve the next mini-lesson for a learner, generating the curriculum on first use.

Flow for a read: resolve the subject, make sure a learning path exists (the
build runs under :class:`GenerationCoordinator`), resolve the current unit,
pick a cached lesson or generate a fresh one with the learner's pace and
accuracy, then record the delivery. Reads never advance the cursor; that only
happens when an attempt finishes a lesson.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from .collaborators import CurriculumGenerator, LessonGenerator, LessonRequest
from .config import Settings, get_settings
from .curriculum_store import CurriculumStore, PathEdit, curriculum_store
from .db.session import session_scope
from .errors import (
    CurriculumStorageError,
    EmptyLearningPathError,
    InvalidCursorError,
    NoCourseMappingError,
    NoLearningPathError,
    NoSubjectError,
)
from .generation_lock import GenerationCoordinator
from .learning_path import LearningPath, LessonPreferences, ProgressCursor, push_recent
from .progression import ProgressionEngine, Target, progression_engine
from .repositories.learners import LearnerProfile, LearnerRepository, learners
from .repositories.subject_state import SubjectState
from .signals import (
    AttemptRecord,
    PerformanceSnapshot,
    compute_mastery,
    compute_pace,
    generation_notes,
    performance_rollup,
)
from .telemetry import emit_event

logger = logging.getLogger(__name__)

RECENT_AVOID_LIMIT = 20
FeedbackAction = Literal["like", "dislike", "save"]


class NextContent(BaseModel):
    topic: Optional[str] = None
    lesson: Optional[Dict[str, Any]] = None
    exhausted: bool = False


class SubjectProgress(BaseModel):
    subject: str
    percent: int = 0
    current: Optional[str] = None
    next_topic: Optional[str] = Field(None, serialization_alias="nextTopic")
    delivered_mini: int = Field(0, serialization_alias="deliveredMini")
    planned_mini: int = Field(0, serialization_alias="plannedMini")
    topic_count: int = Field(0, serialization_alias="topicCount")
    subtopic_count: int = Field(0, serialization_alias="subtopicCount")
    exhausted: bool = False


def find_course(level_map: Dict[str, str], subject: str) -> Optional[str]:
    """Exact key, then case-insensitive key, then the first mapping at all."""
    if not level_map:
        return None
    direct = level_map.get(subject)
    if direct:
        return direct
    lowered = subject.lower()
    for key, course in level_map.items():
        if key.lower() == lowered and course:
            return course
    return next((course for course in level_map.values() if course), None)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


class LessonCache:
    """Per-label lesson cache stored inside the progress cursor."""

    def __init__(self, size: int, max_age: timedelta) -> None:
        self.size = size
        self.max_age = max_age

    def prune(self, cursor: ProgressCursor, now: datetime) -> None:
        fresh: Dict[str, List[Dict[str, Any]]] = {}
        for label, entries in cursor.lesson_cache.items():
            kept = []
            for entry in entries:
                cached_at = _parse_timestamp(entry.get("cachedAt"))
                if cached_at is not None and now - cached_at <= self.max_age:
                    kept.append(entry)
            if kept:
                fresh[label] = kept
        cursor.lesson_cache = fresh

    def pick(self, cursor: ProgressCursor, label: str, avoid_ids: List[str], recent_titles: List[str]) -> Optional[Dict[str, Any]]:
        for entry in cursor.lesson_cache.get(label, []):
            lesson_id = entry.get("id")
            if isinstance(lesson_id, str) and lesson_id in avoid_ids:
                continue
            title = entry.get("title")
            if isinstance(title, str) and title.strip() and title.strip() in recent_titles:
                continue
            return entry
        return None

    def store(self, cursor: ProgressCursor, label: str, lesson: Dict[str, Any], now: datetime) -> None:
        if self.size <= 0:
            return
        stamped = {**lesson, "cachedAt": now.isoformat()}
        lesson_id = stamped.get("id")
        rest = [entry for entry in cursor.lesson_cache.get(label, []) if entry.get("id") != lesson_id]
        cursor.lesson_cache[label] = [stamped, *rest][: self.size]


class NextContentService:
    def __init__(
        self,
        *,
        coordinator: GenerationCoordinator,
        curriculum_generator: CurriculumGenerator,
        lesson_generator: LessonGenerator,
        store: Optional[CurriculumStore] = None,
        repository: Optional[LearnerRepository] = None,
        engine: Optional[ProgressionEngine] = None,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._coordinator = coordinator
        self._curriculum_generator = curriculum_generator
        self._lesson_generator = lesson_generator
        self._store = store or curriculum_store
        self._repo = repository or learners
        self._engine = engine or progression_engine
        self._settings = settings or get_settings()
        self._clock = clock or _utcnow
        self._cache = LessonCache(
            self._settings.lesson_cache_size,
            timedelta(hours=self._settings.lesson_cache_max_age_hours),
        )

    @property
    def coordinator(self) -> GenerationCoordinator:
        return self._coordinator

    # ------------------------------------------------------------------
    # Learner data
    # ------------------------------------------------------------------
    def _profile(self, user_id: str) -> Optional[LearnerProfile]:
        try:
            with session_scope(commit=False) as session:
                return self._repo.get(session, user_id)
        except SQLAlchemyError as exc:
            logger.error("Failed to load learner profile user=%s: %s", user_id, exc)
            raise CurriculumStorageError("Failed to load learner profile") from exc

    def _attempts(self, user_id: str) -> List[AttemptRecord]:
        try:
            with session_scope(commit=False) as session:
                return self._repo.recent_attempts(session, user_id, limit=self._settings.attempt_history_limit)
        except SQLAlchemyError as exc:
            logger.error("Failed to load attempts user=%s: %s", user_id, exc)
            raise CurriculumStorageError("Failed to load attempt history") from exc

    def resolve_subject(self, user_id: str, requested: Optional[str]) -> str:
        if requested and requested.strip():
            return requested.strip()
        existing = self._store.first_subject(user_id)
        if existing:
            return existing
        profile = self._profile(user_id)
        if profile is not None:
            for interest in profile.interests:
                if profile.level_map.get(interest):
                    return interest
        raise NoSubjectError("No subject")

    # ------------------------------------------------------------------
    # Curriculum generation
    # ------------------------------------------------------------------
    def ensure_path(
        self,
        user_id: str,
        subject: str,
        *,
        course: Optional[str],
        attempts: List[AttemptRecord],
    ) -> LearningPath:
        if not course:
            profile = self._profile(user_id)
            course = find_course(profile.level_map if profile else {}, subject)
        if not course:
            logger.warning("No course mapping user=%s subject=%s", user_id, subject)
            raise NoCourseMappingError(subject)

        mastery = compute_mastery(attempts, subject)
        pace = compute_pace(attempts, self._settings.pace_window_hours, now=self._clock())
        notes = generation_notes(pace, subject)
        resolved_course = course

        def build() -> LearningPath:
            existing = self._store.load(user_id, subject)
            if existing is not None and existing.has_topics:
                logger.info("Learning path appeared while waiting user=%s subject=%s", user_id, subject)
                return existing
            self._coordinator.report_progress(
                user_id,
                subject,
                "Generating your learning path",
                f"Mapping {resolved_course} at {mastery}% mastery.",
            )
            try:
                path = self._curriculum_generator(user_id, subject, resolved_course, mastery, notes)
            except Exception as exc:
                emit_event(
                    "learning_path_generation_failed",
                    user_id=user_id,
                    subject=subject,
                    error=type(exc).__name__,
                )
                raise
            if not path.has_topics:
                raise EmptyLearningPathError("No topics in level map")
            self._coordinator.report_progress(user_id, subject, "Saving your learning path")
            target = self._engine.resolve_target(path)
            self._store.save(
                user_id,
                subject,
                path,
                next_topic=target.label if target else None,
                course=resolved_course,
            )
            emit_event(
                "learning_path_generated",
                user_id=user_id,
                subject=subject,
                course=resolved_course,
                topic_count=len(path.topics),
                mastery=mastery,
            )
            return path

        return self._coordinator.run(user_id, subject, build)

    # ------------------------------------------------------------------
    # Next content
    # ------------------------------------------------------------------
    def next_content(self, user_id: str, requested_subject: Optional[str] = None) -> NextContent:
        subject = self.resolve_subject(user_id, requested_subject)
        state = self._store.state(user_id, subject)
        path = self._store.parse(state, user_id=user_id) if state else None
        course = state.course if state else None
        attempts = self._attempts(user_id)

        if path is None or not path.has_topics:
            path = self.ensure_path(user_id, subject, course=course, attempts=attempts)
            refreshed = self._store.state(user_id, subject)
            course = refreshed.course if refreshed else course

        target = self._engine.resolve_target(path)
        if target is None:
            return self._exhausted(user_id, subject, path)

        now = self._clock()
        snapshot = performance_rollup(
            attempts,
            window_hours=self._settings.pace_window_hours,
            accuracy_window=self._settings.accuracy_window,
            now=now,
        )
        cursor = path.progress
        recent_ids = cursor.delivered_ids_by_topic.get(target.label, [])[-RECENT_AVOID_LIMIT:]
        recent_titles = cursor.delivered_titles_by_topic.get(target.label, [])[-RECENT_AVOID_LIMIT:]
        disliked = cursor.preferences.disliked[-RECENT_AVOID_LIMIT:]
        avoid_ids = list(dict.fromkeys([*recent_ids, *disliked]))

        self._cache.prune(cursor, now)
        lesson = self._cache.pick(cursor, target.label, avoid_ids, recent_titles)
        cached = lesson is not None
        if lesson is None:
            request = LessonRequest(
                user_id=user_id,
                subject=subject,
                topic=target.label,
                pace=snapshot.pace,
                accuracy_pct=snapshot.accuracy_pct,
                difficulty_pref=self._difficulty(state),
                avoid_ids=avoid_ids,
                avoid_titles=recent_titles,
                map_summary=self._engine.map_summary(path, target, course),
                structured_context=self._structured_context(path, target, subject, course, snapshot, recent_ids, recent_titles, disliked),
            )
            lesson = self._lesson_generator(request)
        else:
            logger.debug("Lesson cache hit user=%s subject=%s label=%s", user_id, subject, target.label)

        self._record(user_id, subject, path, target, lesson, now)
        emit_event(
            "lesson_delivered",
            user_id=user_id,
            subject=subject,
            label=target.label,
            lesson_id=lesson.get("id"),
            cached=cached,
        )
        return NextContent(topic=target.label, lesson=lesson)

    def _record(
        self,
        user_id: str,
        subject: str,
        path: LearningPath,
        target: Target,
        lesson: Dict[str, Any],
        now: datetime,
    ) -> None:
        # Applied to the row as stored at write time, so attempts that advanced
        # the cursor during lesson generation survive.
        def apply(latest: LearningPath, _state: SubjectState) -> PathEdit:
            return PathEdit(next_topic=self._apply_delivery(latest, target, lesson, now))

        if self._store.update(user_id, subject, apply) is None:
            self._store.save(user_id, subject, path, next_topic=self._apply_delivery(path, target, lesson, now))

    def _apply_delivery(
        self,
        path: LearningPath,
        target: Target,
        lesson: Dict[str, Any],
        now: datetime,
    ) -> Optional[str]:
        current = self._engine.resolve_target(path) if path.has_topics else None
        if current is not None and current.label == target.label:
            self._engine.record_delivery(path, current, lesson)
        else:
            self._engine.record_history(path, target.label, lesson)
            current = self._engine.resolve_target(path) if path.has_topics else None
        self._cache.prune(path.progress, now)
        self._cache.store(path.progress, target.label, lesson, now)
        return current.label if current else None

    def _exhausted(self, user_id: str, subject: str, path: LearningPath) -> NextContent:
        if not path.progress.exhausted:
            flagged: List[bool] = []

            def apply(latest: LearningPath, _state: SubjectState) -> PathEdit:
                flagged.clear()
                if latest.progress.exhausted:
                    return PathEdit(next_topic=None, changed=False)
                latest.progress.exhausted = True
                flagged.append(True)
                return PathEdit(next_topic=None)

            self._store.update(user_id, subject, apply)
            if flagged:
                emit_event("learning_path_exhausted", user_id=user_id, subject=subject)
        logger.info("Learning path exhausted user=%s subject=%s", user_id, subject)
        return NextContent(topic=None, lesson=None, exhausted=True)

    @staticmethod
    def _difficulty(state: Any) -> Optional[str]:
        value = getattr(state, "difficulty", None)
        return value if value in ("intro", "easy", "medium", "hard") else None

    def _structured_context(
        self,
        path: LearningPath,
        target: Target,
        subject: str,
        course: Optional[str],
        snapshot: PerformanceSnapshot,
        recent_ids: List[str],
        recent_titles: List[str],
        disliked: List[str],
    ) -> Dict[str, Any]:
        topic = path.topics[target.topic_idx]
        return {
            "subject": subject,
            "course": course,
            "topic": {"name": topic.name, "index": target.topic_idx + 1, "total": len(path.topics)},
            "subtopic": {
                "name": target.subtopic_name,
                "index": target.subtopic_idx + 1,
                "total": len(topic.subtopics),
                "plannedMini": target.planned_mini,
                "deliveredMini": target.delivered_mini,
            },
            "completion": {"curriculumPercent": self._engine.completion_percent(path)},
            "performance": {
                "accuracyPct": snapshot.accuracy_pct,
                "pace": snapshot.pace,
                "sampleSize": snapshot.sample_size,
                "recentSample": snapshot.recent_sample,
            },
            "recentLessons": {
                "deliveredIds": recent_ids,
                "deliveredTitles": recent_titles,
                "disliked": disliked,
            },
        }

    # ------------------------------------------------------------------
    # Feedback and progress
    # ------------------------------------------------------------------
    def record_feedback(self, user_id: str, subject: str, lesson_id: str, action: FeedbackAction) -> LessonPreferences:
        subject = subject.strip()
        recorded: List[LessonPreferences] = []

        def apply(path: LearningPath, state: SubjectState) -> PathEdit:
            preferences = path.progress.preferences
            if action == "like":
                push_recent(preferences.liked, lesson_id)
                preferences.disliked = [entry for entry in preferences.disliked if entry != lesson_id.strip()]
            elif action == "dislike":
                push_recent(preferences.disliked, lesson_id)
                preferences.liked = [entry for entry in preferences.liked if entry != lesson_id.strip()]
            else:
                push_recent(preferences.saved, lesson_id)
            recorded[:] = [preferences]
            return PathEdit(next_topic=state.next_topic)

        if self._store.update(user_id, subject, apply) is None:
            raise NoLearningPathError(subject)
        logger.debug("Recorded %s feedback user=%s subject=%s lesson=%s", action, user_id, subject, lesson_id)
        return recorded[0]

    def progress_summary(self, user_id: str, subject: Optional[str] = None) -> List[SubjectProgress]:
        states = self._store.states(user_id)
        if subject and subject.strip():
            states = [state for state in states if state.subject == subject.strip()]

        summaries: List[SubjectProgress] = []
        for state in states:
            path = self._store.parse(state, user_id=user_id)
            summary = SubjectProgress(subject=state.subject, next_topic=state.next_topic)
            if path is None or not path.has_topics:
                summaries.append(summary)
                continue
            summary.percent = self._engine.completion_percent(path)
            summary.topic_count = len(path.topics)
            summary.subtopic_count = sum(len(topic.subtopics) for topic in path.topics)
            try:
                target = self._engine.resolve_target(path)
            except (EmptyLearningPathError, InvalidCursorError) as exc:
                logger.warning("Unreadable cursor user=%s subject=%s: %s", user_id, state.subject, exc)
                target = None
            if target is None:
                summary.exhausted = summary.percent == 100
            else:
                summary.current = target.label
                summary.planned_mini = target.planned_mini
                summary.delivered_mini = min(target.delivered_mini, target.planned_mini)
            summaries.append(summary)
        return summaries


__all__ = [
    "FeedbackAction",
    "LessonCache",
    "NextContent",
    "NextContentService",
    "SubjectProgress",
    "find_course",
]
