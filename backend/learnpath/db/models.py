"""ORM models backing learning paths, generation locks and attempts."""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Date,
    DateTime,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from .base import Base, TimestampMixin, utcnow

JSONType = JSON


class UserSubjectStateModel(TimestampMixin, Base):
    __tablename__ = "user_subject_state"
    __table_args__ = (
        UniqueConstraint("user_id", "subject", name="uq_user_subject_state"),
        Index("ix_user_subject_state_user", "user_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(160), nullable=False)
    course: Mapped[str | None] = mapped_column(String(255), nullable=True)
    difficulty: Mapped[str | None] = mapped_column(String(32), nullable=True)
    next_topic: Mapped[str | None] = mapped_column(Text, nullable=True)
    path: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    version: Mapped[int] = mapped_column(Integer, default=0, server_default="0", nullable=False)


class GenerationLockModel(Base):
    __tablename__ = "generation_locks"
    __table_args__ = (PrimaryKeyConstraint("user_id", "subject", name="pk_generation_locks"),)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str] = mapped_column(String(160), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class AttemptModel(Base):
    __tablename__ = "attempts"
    __table_args__ = (Index("ix_attempts_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    subject: Mapped[str | None] = mapped_column(String(160), nullable=True)
    lesson_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    correct_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


class LearnerProfileModel(TimestampMixin, Base):
    __tablename__ = "learner_profiles"
    __table_args__ = (Index("ix_learner_profiles_user_id", "user_id", unique=True),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    points: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    streak: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_study_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    interests: Mapped[list[str]] = mapped_column(JSONType, default=list, nullable=False)
    level_map: Mapped[dict[str, str]] = mapped_column(JSONType, default=dict, nullable=False)


class PersistenceAuditEventModel(Base):
    __tablename__ = "persistence_audit_events"
    __table_args__ = (Index("ix_persistence_audit_events_user", "user_id"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, default=dict, nullable=False)
    actor: Mapped[str | None] = mapped_column(String(128))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)


__all__ = [
    "AttemptModel",
    "GenerationLockModel",
    "LearnerProfileModel",
    "PersistenceAuditEventModel",
    "UserSubjectStateModel",
]
