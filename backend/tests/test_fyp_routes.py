from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from openai import OpenAIError

from learnpath.curriculum_store import curriculum_store
from learnpath.db.session import session_scope
from learnpath.errors import TransientLessonFormatError, UsageLimitExceededError
from learnpath.fyp_routes import get_coordinator, get_curriculum_generator, get_lesson_generator
from learnpath.generation_lock import DEFAULT_LOCK_TTL, DatabaseLockStore, GenerationCoordinator
from learnpath.main import app
from learnpath.repositories import learners

from conftest import FakeCurriculumGenerator, FakeLessonGenerator, sample_path

HEADERS = {"X-User-Id": "u1"}


@pytest.fixture
def api():
    fakes = SimpleNamespace(
        curriculum=FakeCurriculumGenerator(),
        lessons=FakeLessonGenerator(),
        coordinator=GenerationCoordinator(DatabaseLockStore()),
    )
    app.dependency_overrides[get_curriculum_generator] = lambda: fakes.curriculum
    app.dependency_overrides[get_lesson_generator] = lambda: fakes.lessons
    app.dependency_overrides[get_coordinator] = lambda: fakes.coordinator
    fakes.client = TestClient(app)
    yield fakes
    app.dependency_overrides.clear()


def _profile(level_map=None) -> None:
    with session_scope() as session:
        learners.set_interests(session, "u1", ["Math"])
        learners.set_level_map(session, "u1", {"Math": "Algebra 1"} if level_map is None else level_map)


def test_requests_without_user_are_rejected(api) -> None:
    assert api.client.get("/api/fyp").status_code == 401
    assert api.client.post("/api/attempt", json={}).status_code == 401
    assert api.client.get("/api/fyp/progress", headers={"X-User-Id": ""}).status_code == 401


def test_fyp_generates_and_serves_lesson(api) -> None:
    _profile()

    response = api.client.get("/api/fyp", headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["topic"] == "Basics > Numbers"
    assert body["lesson"]["id"] == "lesson-1"
    assert body["exhausted"] is False
    assert len(api.curriculum.calls) == 1


def test_fyp_reports_generation_in_progress(api) -> None:
    _profile()
    DatabaseLockStore().acquire("u1", "Math", DEFAULT_LOCK_TTL)

    response = api.client.get("/api/fyp", params={"subject": "Math"}, headers=HEADERS)

    assert response.status_code == 202
    assert response.headers["Retry-After"] == "3"
    assert response.json() == {
        "status": "generating",
        "progress": {
            "phase": "Another session is preparing your learning path",
            "detail": "Waiting for the current generation to finish.",
        },
    }
    assert api.curriculum.calls == []


def test_fyp_retries_after_lesson_format_error(api) -> None:
    curriculum_store.save("u1", "Math", sample_path(), next_topic=None, course="Algebra 1")
    api.lessons = FakeLessonGenerator(error=TransientLessonFormatError())

    response = api.client.get("/api/fyp", params={"subject": "Math"}, headers=HEADERS)

    assert response.status_code == 202
    assert response.headers["Retry-After"] == "2"
    assert response.json()["progress"]["phase"] == "Generating lesson content"


def test_fyp_error_mapping(api) -> None:
    assert api.client.get("/api/fyp", headers=HEADERS).json()["detail"] == "No subject"

    _profile(level_map={})
    response = api.client.get("/api/fyp", params={"subject": "Math"}, headers=HEADERS)
    assert response.status_code == 409
    assert "no course mapping" in response.json()["detail"]


def test_fyp_usage_limit_is_forbidden(api) -> None:
    _profile()
    api.curriculum = FakeCurriculumGenerator(error=UsageLimitExceededError())

    response = api.client.get("/api/fyp", headers=HEADERS)

    assert response.status_code == 403


def test_fyp_upstream_failure_is_server_error(api) -> None:
    curriculum_store.save("u1", "Math", sample_path(), next_topic=None, course="Algebra 1")
    api.lessons = FakeLessonGenerator(error=OpenAIError("upstream timeout"))

    response = api.client.get("/api/fyp", params={"subject": "Math"}, headers=HEADERS)

    assert response.status_code == 500
    assert response.json()["detail"] == "Lesson generation failed: upstream timeout"

    _profile()
    api.curriculum = FakeCurriculumGenerator(error=OpenAIError("model overloaded"))
    build = api.client.get("/api/fyp", params={"subject": "History"}, headers=HEADERS)

    assert build.status_code == 500
    assert "model overloaded" in build.json()["detail"]


def test_attempt_endpoint_awards_points_and_advances(api) -> None:
    curriculum_store.save("u1", "Math", sample_path(), next_topic=None, course="Algebra 1")

    response = api.client.post(
        "/api/attempt",
        headers=HEADERS,
        json={
            "event": "lesson-finish",
            "lesson_id": "lesson-1",
            "subject": "Math",
            "topic": "Basics > Numbers",
            "correct_count": 2,
            "total": 3,
        },
    )

    assert response.status_code == 200
    body = response.json()
    assert body["ok"] is True
    assert body["addPts"] == 20
    assert body["newStreak"] == 1
    assert body["progression"]["outcome"] == "continued"
    assert curriculum_store.load("u1", "Math").progress.delivered_mini == 1


def test_attempt_endpoint_validation(api) -> None:
    missing = api.client.post("/api/attempt", headers=HEADERS, json={"event": "lesson-finish"})
    unknown = api.client.post("/api/attempt", headers=HEADERS, json={"event": "lesson-skip"})

    assert missing.status_code == 400
    assert missing.json()["detail"] == "Invalid payload"
    assert unknown.status_code == 422


def test_feedback_endpoint(api) -> None:
    payload = {"subject": "Math", "lesson_id": "lesson-1", "action": "like"}

    missing = api.client.post("/api/fyp/feedback", headers=HEADERS, json=payload)
    curriculum_store.save("u1", "Math", sample_path(), next_topic=None, course="Algebra 1")
    stored = api.client.post("/api/fyp/feedback", headers=HEADERS, json=payload)
    invalid = api.client.post("/api/fyp/feedback", headers=HEADERS, json={**payload, "action": "love"})

    assert missing.status_code == 400
    assert stored.status_code == 200
    assert stored.json() == {"ok": True, "preferences": {"liked": ["lesson-1"], "disliked": [], "saved": []}}
    assert invalid.status_code == 422


def test_progress_endpoint(api) -> None:
    _profile()
    api.client.get("/api/fyp", headers=HEADERS)

    response = api.client.get("/api/fyp/progress", headers=HEADERS)

    assert response.status_code == 200
    subjects = response.json()["subjects"]
    assert [entry["subject"] for entry in subjects] == ["Math"]
    assert subjects[0]["current"] == "Basics > Numbers"
    assert subjects[0]["nextTopic"] == "Basics > Numbers"
    assert subjects[0]["plannedMini"] == 3
