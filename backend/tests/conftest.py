from __future__ import annotations

import copy
from typing import Any, Dict, List

import pytest

from learnpath.cache import generation_progress
from learnpath.config import get_settings
from learnpath.db.session import create_schema, dispose_engine
from learnpath.learning_path import LearningPath
from learnpath.telemetry import clear_listeners

SAMPLE_DOCUMENT: Dict[str, Any] = {
    "course": "Algebra 1",
    "topics": [
        {
            "name": "Basics",
            "subtopics": [
                {"name": "Numbers", "mini_lessons": 3},
                {"name": "Variables", "mini_lessons": 1},
            ],
        },
        {
            "name": "Equations",
            "subtopics": [
                {"name": "Linear", "mini_lessons": 2},
            ],
        },
    ],
}


def sample_document() -> Dict[str, Any]:
    return copy.deepcopy(SAMPLE_DOCUMENT)


def sample_path() -> LearningPath:
    return LearningPath.from_document(sample_document())


class FakeCurriculumGenerator:
    def __init__(self, document: Dict[str, Any] | None = None, error: Exception | None = None) -> None:
        self.document = document or sample_document()
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, user_id: str, subject: str, course: str, mastery: int, notes: str) -> LearningPath:
        self.calls.append({"user_id": user_id, "subject": subject, "course": course, "mastery": mastery, "notes": notes})
        if self.error is not None:
            raise self.error
        return LearningPath.from_document(copy.deepcopy(self.document))


class FakeLessonGenerator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.requests: List[Any] = []

    def __call__(self, request: Any) -> Dict[str, Any]:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        number = len(self.requests)
        return {
            "id": f"lesson-{number}",
            "title": f"Lesson {number}",
            "topic": request.topic,
            "content": "A short explanation.",
            "questions": [{"prompt": "1 + 1?", "choices": ["1", "2", "3", "4"], "correctIndex": 1}],
        }


@pytest.fixture(autouse=True)
def database(tmp_path, monkeypatch):
    monkeypatch.setenv("LEARNPATH_DATABASE_URL", f"sqlite:///{tmp_path / 'learnpath.sqlite'}")
    monkeypatch.setenv("LEARNPATH_LOCK_BACKEND", "database")
    get_settings.cache_clear()
    dispose_engine()
    create_schema()
    generation_progress.clear()
    yield
    clear_listeners()
    generation_progress.clear()
    dispose_engine()
    get_settings.cache_clear()
