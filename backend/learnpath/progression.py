"""Cursor resolution and advancement over a learner's curriculum tree.

Reads never move a learner forward: :meth:`ProgressionEngine.resolve_target`
can be called any number of times (page refreshes, client retries) and keeps
returning the same unit. Subtopic completion changes only inside
:meth:`ProgressionEngine.advance_on_completion`, which is driven by
lesson-finish attempts.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel

from .errors import EmptyLearningPathError, InvalidCursorError, UnknownLabelError
from .learning_path import LearningPath, remember, subtopic_label


Position = Tuple[int, int]


class SubtopicState(str, Enum):
    NOT_STARTED = "not-started"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"


class AdvanceOutcome(str, Enum):
    CONTINUED = "continued"
    COMPLETED = "completed"
    EXHAUSTED = "exhausted"
    ALREADY_COMPLETED = "already_completed"


class Target(BaseModel):
    topic_idx: int
    subtopic_idx: int
    topic_name: str
    subtopic_name: str
    label: str
    delivered_mini: int
    planned_mini: int


class AdvanceResult(BaseModel):
    outcome: AdvanceOutcome
    label: str
    delivered_mini: int
    planned_mini: int
    next_label: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.outcome is AdvanceOutcome.EXHAUSTED


class ProgressionEngine:
    """Stateless rules for moving through topics → subtopics → mini-lessons."""

    def clamp_cursor(self, path: LearningPath) -> Position:
        if not path.topics:
            raise EmptyLearningPathError("No topics in level map")
        cursor = path.progress
        topic_idx = min(max(cursor.topic_idx, 0), len(path.topics) - 1)
        subtopics = path.topics[topic_idx].subtopics
        subtopic_idx = min(max(cursor.subtopic_idx, 0), max(len(subtopics) - 1, 0))
        if not subtopics:
            raise InvalidCursorError(topic_idx, subtopic_idx)
        return topic_idx, subtopic_idx

    def find_next_incomplete(self, path: LearningPath, topic_idx: int, subtopic_idx: int) -> Optional[Position]:
        """Wraparound search: after the current position to the end, then from the start up to it."""
        order = list(path.positions())
        try:
            current = order.index((topic_idx, subtopic_idx))
        except ValueError:
            current = -1
        candidates = order[current + 1:] + (order[:current] if current >= 0 else [])
        for position in candidates:
            subtopic = path.subtopic_at(*position)
            if subtopic is not None and not subtopic.completed:
                return position
        return None

    def resolve_target(self, path: LearningPath) -> Optional[Target]:
        """Return the unit to serve next, or ``None`` once every subtopic is complete."""
        topic_idx, subtopic_idx = self.clamp_cursor(path)
        delivered = path.progress.delivered_mini
        current = path.subtopic_at(topic_idx, subtopic_idx)
        assert current is not None
        if current.completed:
            found = self.find_next_incomplete(path, topic_idx, subtopic_idx)
            if found is None:
                return None
            topic_idx, subtopic_idx = found
            delivered = 0
        return self._target(path, topic_idx, subtopic_idx, delivered)

    def state_of(self, path: LearningPath, topic_idx: int, subtopic_idx: int) -> SubtopicState:
        subtopic = path.subtopic_at(topic_idx, subtopic_idx)
        if subtopic is None:
            raise InvalidCursorError(topic_idx, subtopic_idx)
        if subtopic.completed:
            return SubtopicState.COMPLETED
        cursor = path.progress
        label = subtopic_label(path.topics[topic_idx].name, subtopic.name)
        at_cursor = (cursor.topic_idx, cursor.subtopic_idx) == (topic_idx, subtopic_idx)
        if (at_cursor and cursor.delivered_mini > 0) or cursor.delivered_by_topic.get(label, 0) > 0:
            return SubtopicState.IN_PROGRESS
        return SubtopicState.NOT_STARTED

    def advance_on_completion(self, path: LearningPath, label: str) -> AdvanceResult:
        """Count one finished mini-lesson for ``label`` and move on once the subtopic is exhausted.

        This is the only place a subtopic becomes completed. The path is mutated
        in place; the caller persists it.
        """
        position = path.locate(label)
        if position is None:
            raise UnknownLabelError(label)
        topic_idx, subtopic_idx = position
        subtopic = path.subtopic_at(topic_idx, subtopic_idx)
        assert subtopic is not None
        canonical = subtopic_label(path.topics[topic_idx].name, subtopic.name)
        cursor = path.progress

        if subtopic.completed:
            upcoming = self.resolve_target(path)
            return AdvanceResult(
                outcome=AdvanceOutcome.ALREADY_COMPLETED,
                label=canonical,
                delivered_mini=cursor.delivered_mini,
                planned_mini=subtopic.mini_lessons,
                next_label=upcoming.label if upcoming else None,
            )

        cursor.delivered_mini += 1
        if cursor.delivered_mini < subtopic.mini_lessons:
            return AdvanceResult(
                outcome=AdvanceOutcome.CONTINUED,
                label=canonical,
                delivered_mini=cursor.delivered_mini,
                planned_mini=subtopic.mini_lessons,
                next_label=canonical,
            )

        subtopic.completed = True
        cursor.delivered_mini = 0
        found = self.find_next_incomplete(path, topic_idx, subtopic_idx)
        if found is None:
            cursor.topic_idx, cursor.subtopic_idx = topic_idx, subtopic_idx
            cursor.exhausted = True
            return AdvanceResult(
                outcome=AdvanceOutcome.EXHAUSTED,
                label=canonical,
                delivered_mini=0,
                planned_mini=subtopic.mini_lessons,
            )

        cursor.topic_idx, cursor.subtopic_idx = found
        cursor.exhausted = False
        return AdvanceResult(
            outcome=AdvanceOutcome.COMPLETED,
            label=canonical,
            delivered_mini=0,
            planned_mini=subtopic.mini_lessons,
            next_label=path.label_at(*found),
        )

    def record_delivery(self, path: LearningPath, target: Target, lesson: Dict[str, Any]) -> None:
        """Book-keep a served lesson without touching completion state."""
        cursor = path.progress
        cursor.topic_idx, cursor.subtopic_idx = target.topic_idx, target.subtopic_idx
        cursor.exhausted = False
        self.record_history(path, target.label, lesson)

    def record_history(self, path: LearningPath, label: str, lesson: Dict[str, Any]) -> None:
        """Delivery counters and id/title ring buffers for ``label``; the cursor is left alone."""
        cursor = path.progress
        cursor.delivered_by_topic[label] = cursor.delivered_by_topic.get(label, 0) + 1

        lesson_id = lesson.get("id")
        if isinstance(lesson_id, str) and lesson_id.strip():
            remember(cursor.delivered_ids_by_topic.setdefault(label, []), lesson_id.strip())
        title = lesson.get("title")
        if isinstance(title, str) and title.strip():
            remember(cursor.delivered_titles_by_topic.setdefault(label, []), title.strip())

    def completion_percent(self, path: LearningPath) -> int:
        positions: List[Position] = list(path.positions())
        if not positions:
            return 0
        done = sum(1 for position in positions if path.subtopic_at(*position).completed)  # type: ignore[union-attr]
        return round(done / len(positions) * 100)

    def map_summary(self, path: LearningPath, target: Target, course: Optional[str]) -> str:
        topic = path.topics[target.topic_idx]
        return (
            f"Course:{course or ''}; Topic#{target.topic_idx + 1}/{len(path.topics)}; "
            f"Sub#{target.subtopic_idx + 1}/{len(topic.subtopics)}; "
            f"Completed:{self.completion_percent(path)}%; "
            f"Mini:{target.delivered_mini}/{target.planned_mini}"
        )

    def _target(self, path: LearningPath, topic_idx: int, subtopic_idx: int, delivered: int) -> Target:
        topic = path.topics[topic_idx]
        subtopic = topic.subtopics[subtopic_idx]
        return Target(
            topic_idx=topic_idx,
            subtopic_idx=subtopic_idx,
            topic_name=topic.name,
            subtopic_name=subtopic.name,
            label=subtopic_label(topic.name, subtopic.name),
            delivered_mini=delivered,
            planned_mini=subtopic.mini_lessons,
        )


progression_engine = ProgressionEngine()

__all__ = [
    "AdvanceOutcome",
    "AdvanceResult",
    "ProgressionEngine",
    "SubtopicState",
    "Target",
    "progression_engine",
]
