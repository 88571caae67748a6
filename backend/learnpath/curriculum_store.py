"""Load and save learning paths keyed by (user, subject)."""

from __future__ import annotations

import logging
from typing import Callable, List, NamedTuple, Optional

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from .db.session import session_scope
from .errors import CurriculumStorageError
from .learning_path import LearningPath
from .repositories.subject_state import SubjectState, SubjectStateRepository, subject_states

logger = logging.getLogger(__name__)

UPDATE_ATTEMPTS = 5


class PathEdit(NamedTuple):
    """What an :meth:`CurriculumStore.update` callback wants written back."""

    next_topic: Optional[str]
    changed: bool = True


PathEditor = Callable[[LearningPath, SubjectState], PathEdit]


class CurriculumStore:
    """Persistence facade over ``user_subject_state``; holds no progression rules."""

    def __init__(self, repository: Optional[SubjectStateRepository] = None) -> None:
        self._repo = repository or subject_states

    def state(self, user_id: str, subject: str) -> Optional[SubjectState]:
        try:
            with session_scope(commit=False) as session:
                return self._repo.get(session, user_id, subject)
        except SQLAlchemyError as exc:
            logger.error("Failed to read subject state user=%s subject=%s: %s", user_id, subject, exc)
            raise CurriculumStorageError(f"Failed to read learning path for '{subject}'") from exc

    def load(self, user_id: str, subject: str) -> Optional[LearningPath]:
        state = self.state(user_id, subject)
        if state is None or state.path is None:
            return None
        return self.parse(state, user_id=user_id)

    @staticmethod
    def parse(state: SubjectState, *, user_id: str) -> Optional[LearningPath]:
        """Decode the stored document; older documents without cursor indices resume at ``next_topic``."""
        if state.path is None:
            return None
        try:
            return LearningPath.from_document(state.path, fallback_label=state.next_topic)
        except (ValidationError, ValueError) as exc:
            logger.warning(
                "Ignoring unreadable learning path user=%s subject=%s: %s",
                user_id,
                state.subject,
                exc,
            )
            return None

    def save(
        self,
        user_id: str,
        subject: str,
        path: LearningPath,
        *,
        next_topic: Optional[str],
        course: Optional[str] = None,
    ) -> SubjectState:
        document = path.to_document()
        try:
            with session_scope() as session:
                return self._repo.save_path(
                    session,
                    user_id,
                    subject,
                    document,
                    next_topic=next_topic,
                    course=course,
                )
        except SQLAlchemyError as exc:
            logger.error("Failed to save learning path user=%s subject=%s: %s", user_id, subject, exc)
            raise CurriculumStorageError(f"Failed to save learning path for '{subject}'") from exc

    def update(
        self,
        user_id: str,
        subject: str,
        edit: PathEditor,
        *,
        attempts: int = UPDATE_ATTEMPTS,
    ) -> Optional[SubjectState]:
        """Read-modify-write the stored path as one compare-and-set.

        ``edit`` mutates a freshly loaded path and may run more than once when a
        concurrent writer bumps the row version first, so it must not have side
        effects beyond the path it is given. Returns ``None`` when no readable
        path is stored.
        """
        for attempt in range(1, attempts + 1):
            try:
                with session_scope() as session:
                    state = self._repo.get(session, user_id, subject, for_update=True)
                    path = self.parse(state, user_id=user_id) if state is not None else None
                    if state is None or path is None:
                        return None
                    change = edit(path, state)
                    if not change.changed:
                        return state
                    saved = self._repo.compare_and_save(
                        session,
                        user_id,
                        subject,
                        path.to_document(),
                        expected_version=state.version,
                        next_topic=change.next_topic,
                    )
                    if saved is not None:
                        return saved
            except SQLAlchemyError as exc:
                logger.error("Failed to update learning path user=%s subject=%s: %s", user_id, subject, exc)
                raise CurriculumStorageError(f"Failed to save learning path for '{subject}'") from exc
            logger.info(
                "Learning path changed concurrently user=%s subject=%s attempt=%s/%s",
                user_id,
                subject,
                attempt,
                attempts,
            )
        raise CurriculumStorageError(f"Learning path for '{subject}' kept changing during update")

    def first_subject(self, user_id: str) -> Optional[str]:
        try:
            with session_scope(commit=False) as session:
                return self._repo.first_subject(session, user_id)
        except SQLAlchemyError as exc:
            logger.error("Failed to list subjects user=%s: %s", user_id, exc)
            raise CurriculumStorageError("Failed to list learning paths") from exc

    def states(self, user_id: str) -> List[SubjectState]:
        try:
            with session_scope(commit=False) as session:
                return self._repo.list_for_user(session, user_id)
        except SQLAlchemyError as exc:
            logger.error("Failed to list subjects user=%s: %s", user_id, exc)
            raise CurriculumStorageError("Failed to list learning paths") from exc


curriculum_store = CurriculumStore()

__all__ = ["CurriculumStore", "PathEdit", "curriculum_store"]
