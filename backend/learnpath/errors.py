"""Domain exceptions raised by the learning path services and mapped to HTTP in the routes."""

from __future__ import annotations

from typing import Optional


class LearningPathError(Exception):
    """Base class for learning path failures."""


class CurriculumStorageError(LearningPathError):
    """Retryable I/O failure while reading or writing curriculum state."""


class NoSubjectError(LearningPathError):
    pass


class NoCourseMappingError(LearningPathError):
    def __init__(self, subject: str) -> None:
        super().__init__(f"Not ready: no course mapping for subject '{subject}'")
        self.subject = subject


class EmptyLearningPathError(LearningPathError):
    pass


class NoLearningPathError(LearningPathError):
    """No stored learning path exists for the subject."""

    def __init__(self, subject: str) -> None:
        super().__init__("No learning path")
        self.subject = subject


class InvalidCursorError(LearningPathError):
    def __init__(self, topic_idx: int, subtopic_idx: int) -> None:
        super().__init__(f"Invalid level map indices ({topic_idx}, {subtopic_idx})")
        self.topic_idx = topic_idx
        self.subtopic_idx = subtopic_idx


class UnknownLabelError(LearningPathError):
    def __init__(self, label: str) -> None:
        super().__init__(f"No subtopic matches label '{label}'")
        self.label = label


class GenerationBusyError(LearningPathError):
    """Another request holds the generation lock; the caller should retry shortly."""

    def __init__(
        self,
        phase: str,
        detail: Optional[str] = None,
        *,
        retry_after: int = 3,
    ) -> None:
        super().__init__(phase)
        self.phase = phase
        self.detail = detail
        self.retry_after = retry_after


class UsageLimitExceededError(LearningPathError):
    """Raised by generation collaborators when the learner is over quota."""

    def __init__(self, message: str = "Usage limit exceeded") -> None:
        super().__init__(message)


class TransientLessonFormatError(LearningPathError):
    """The lesson generator returned malformed output; retrying usually succeeds."""

    def __init__(self, message: str = "Invalid lesson format from AI") -> None:
        super().__init__(message)


class InvalidAttemptError(LearningPathError):
    pass


__all__ = [
    "CurriculumStorageError",
    "EmptyLearningPathError",
    "GenerationBusyError",
    "InvalidAttemptError",
    "InvalidCursorError",
    "LearningPathError",
    "NoCourseMappingError",
    "NoLearningPathError",
    "NoSubjectError",
    "TransientLessonFormatError",
    "UnknownLabelError",
    "UsageLimitExceededError",
]
