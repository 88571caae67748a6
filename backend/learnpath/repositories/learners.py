"""Database-backed learner profile (points, streak, interests, course mapping) and attempt history."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db.models import AttemptModel, LearnerProfileModel, PersistenceAuditEventModel
from ..signals import AttemptRecord


class LearnerProfile(BaseModel):
    user_id: str
    points: int = 0
    streak: int = 0
    last_study_date: Optional[date] = None
    interests: List[str] = Field(default_factory=list)
    level_map: Dict[str, str] = Field(default_factory=dict)


def _normalize_user(user_id: str) -> str:
    normalized = user_id.strip()
    if not normalized:
        raise ValueError("User id cannot be empty.")
    return normalized


class LearnerRepository:
    """Profiles keyed by user id plus the append-only attempt log."""

    def get(self, session: Session, user_id: str) -> LearnerProfile | None:
        model = self._find(session, user_id)
        return self._to_domain(model) if model else None

    def ensure(self, session: Session, user_id: str) -> LearnerProfile:
        return self._to_domain(self._require_model(session, user_id))

    def apply_activity(
        self,
        session: Session,
        user_id: str,
        *,
        add_points: int,
        streak: int,
        study_date: date,
    ) -> LearnerProfile:
        model = self._require_model(session, user_id)
        model.points = (model.points or 0) + max(0, add_points)
        model.streak = streak
        model.last_study_date = study_date
        session.flush()
        self._record_audit(
            session,
            model.user_id,
            "activity_recorded",
            {"add_points": add_points, "streak": streak, "study_date": study_date.isoformat()},
        )
        return self._to_domain(model)

    def set_interests(self, session: Session, user_id: str, interests: Iterable[str]) -> LearnerProfile:
        model = self._require_model(session, user_id)
        cleaned: List[str] = []
        for interest in interests:
            if isinstance(interest, str) and interest.strip() and interest.strip() not in cleaned:
                cleaned.append(interest.strip())
        model.interests = cleaned
        session.flush()
        self._record_audit(session, model.user_id, "interests_set", {"count": len(cleaned)})
        return self._to_domain(model)

    def set_level_map(self, session: Session, user_id: str, level_map: Dict[str, str]) -> LearnerProfile:
        model = self._require_model(session, user_id)
        model.level_map = {
            str(subject).strip(): str(course).strip()
            for subject, course in level_map.items()
            if str(subject).strip() and str(course).strip()
        }
        session.flush()
        self._record_audit(session, model.user_id, "level_map_set", {"subjects": sorted(model.level_map)})
        return self._to_domain(model)

    def record_attempt(
        self,
        session: Session,
        user_id: str,
        *,
        subject: Optional[str],
        lesson_id: Optional[str],
        correct_count: int,
        total: int,
        created_at: Optional[datetime] = None,
    ) -> AttemptRecord:
        model = AttemptModel(
            user_id=_normalize_user(user_id),
            subject=subject,
            lesson_id=lesson_id,
            correct_count=correct_count,
            total=total,
        )
        if created_at is not None:
            model.created_at = created_at
        session.add(model)
        session.flush()
        return self._attempt_to_domain(model)

    def recent_attempts(
        self,
        session: Session,
        user_id: str,
        *,
        limit: int,
        subject: Optional[str] = None,
    ) -> List[AttemptRecord]:
        stmt = select(AttemptModel).where(AttemptModel.user_id == _normalize_user(user_id))
        if subject is not None:
            stmt = stmt.where((AttemptModel.subject == subject) | (AttemptModel.subject.is_(None)))
        stmt = stmt.order_by(AttemptModel.created_at.desc()).limit(limit)
        return [self._attempt_to_domain(model) for model in session.execute(stmt).scalars().all()]

    def _find(self, session: Session, user_id: str) -> LearnerProfileModel | None:
        stmt = select(LearnerProfileModel).where(LearnerProfileModel.user_id == _normalize_user(user_id))
        return session.execute(stmt).scalar_one_or_none()

    def _require_model(self, session: Session, user_id: str) -> LearnerProfileModel:
        model = self._find(session, user_id)
        if model is None:
            model = LearnerProfileModel(user_id=_normalize_user(user_id), points=0, streak=0, interests=[], level_map={})
            session.add(model)
            session.flush()
        return model

    @staticmethod
    def _to_domain(model: LearnerProfileModel) -> LearnerProfile:
        return LearnerProfile(
            user_id=model.user_id,
            points=model.points or 0,
            streak=model.streak or 0,
            last_study_date=model.last_study_date,
            interests=list(model.interests or []),
            level_map=dict(model.level_map or {}),
        )

    @staticmethod
    def _attempt_to_domain(model: AttemptModel) -> AttemptRecord:
        return AttemptRecord(
            subject=model.subject,
            correct_count=model.correct_count,
            total=model.total,
            created_at=model.created_at,
        )

    def _record_audit(self, session: Session, user_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        event = PersistenceAuditEventModel(
            user_id=user_id,
            event_type=event_type,
            payload=payload,
            actor="system",
        )
        session.add(event)


learners = LearnerRepository()

__all__ = ["LearnerProfile", "LearnerRepository", "learners"]
