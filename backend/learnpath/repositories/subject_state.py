"""Database-backed per-subject learning path state."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..db.models import PersistenceAuditEventModel, UserSubjectStateModel


class SubjectState(BaseModel):
    user_id: str
    subject: str
    course: Optional[str] = None
    difficulty: Optional[str] = None
    next_topic: Optional[str] = None
    path: Optional[Dict[str, Any]] = None
    version: int = 0
    updated_at: Optional[datetime] = None


def _normalize_user(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


class SubjectStateRepository:
    def get(
        self,
        session: Session,
        user_id: str,
        subject: str,
        *,
        for_update: bool = False,
    ) -> SubjectState | None:
        model = self._find(session, user_id, subject, for_update=for_update)
        return self._to_domain(model) if model else None

    def list_for_user(self, session: Session, user_id: str) -> List[SubjectState]:
        stmt = (
            select(UserSubjectStateModel)
            .where(UserSubjectStateModel.user_id == _normalize_user(user_id))
            .order_by(UserSubjectStateModel.created_at.asc(), UserSubjectStateModel.subject.asc())
        )
        return [self._to_domain(model) for model in session.execute(stmt).scalars().all()]

    def first_subject(self, session: Session, user_id: str) -> str | None:
        stmt = (
            select(UserSubjectStateModel.subject)
            .where(UserSubjectStateModel.user_id == _normalize_user(user_id))
            .order_by(UserSubjectStateModel.created_at.asc(), UserSubjectStateModel.subject.asc())
            .limit(1)
        )
        return session.execute(stmt).scalar_one_or_none()

    def save_path(
        self,
        session: Session,
        user_id: str,
        subject: str,
        document: Dict[str, Any],
        *,
        next_topic: Optional[str],
        course: Optional[str] = None,
    ) -> SubjectState:
        model = self._require_model(session, user_id, subject)
        model.path = document
        model.next_topic = next_topic
        model.version = (model.version or 0) + 1
        if course:
            model.course = course
        session.flush()
        self._record_audit(
            session,
            model.user_id,
            "learning_path_saved",
            {"subject": subject, "next_topic": next_topic, "topic_count": len(document.get("topics") or [])},
        )
        return self._to_domain(model)

    def compare_and_save(
        self,
        session: Session,
        user_id: str,
        subject: str,
        document: Dict[str, Any],
        *,
        expected_version: int,
        next_topic: Optional[str],
    ) -> SubjectState | None:
        """Write ``document`` only if the row is still at ``expected_version``.

        Returns the saved state, or ``None`` when another writer got there first.
        """
        stmt = (
            update(UserSubjectStateModel)
            .where(
                UserSubjectStateModel.user_id == _normalize_user(user_id),
                UserSubjectStateModel.subject == subject,
                UserSubjectStateModel.version == expected_version,
            )
            .values(path=document, next_topic=next_topic, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        if session.execute(stmt).rowcount != 1:
            return None
        model = self._find(session, user_id, subject)
        if model is None:
            return None
        session.refresh(model)
        self._record_audit(
            session,
            model.user_id,
            "learning_path_saved",
            {"subject": subject, "next_topic": next_topic, "version": model.version},
        )
        return self._to_domain(model)

    def _find(
        self,
        session: Session,
        user_id: str,
        subject: str,
        *,
        for_update: bool = False,
    ) -> UserSubjectStateModel | None:
        stmt = select(UserSubjectStateModel).where(
            UserSubjectStateModel.user_id == _normalize_user(user_id),
            UserSubjectStateModel.subject == subject,
        )
        if for_update:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def _require_model(self, session: Session, user_id: str, subject: str) -> UserSubjectStateModel:
        model = self._find(session, user_id, subject)
        if model is None:
            model = UserSubjectStateModel(user_id=_normalize_user(user_id), subject=subject, version=0)
            session.add(model)
            session.flush()
        return model

    @staticmethod
    def _to_domain(model: UserSubjectStateModel) -> SubjectState:
        return SubjectState(
            user_id=model.user_id,
            subject=model.subject,
            course=model.course,
            difficulty=model.difficulty,
            next_topic=model.next_topic,
            path=dict(model.path) if isinstance(model.path, dict) else None,
            version=model.version or 0,
            updated_at=model.updated_at,
        )

    def _record_audit(self, session: Session, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        session.add(
            PersistenceAuditEventModel(
                user_id=user_id,
                event_type=event_type,
                payload=payload,
                actor="system",
            )
        )


subject_states = SubjectStateRepository()

__all__ = ["SubjectState", "SubjectStateRepository", "subject_states"]
