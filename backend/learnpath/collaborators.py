"""Pluggable collaborators: caller identity, curriculum generation and lesson generation.

The defaults talk to the OpenAI chat completions API in JSON mode. Tests and
alternative deployments swap them through the route dependencies.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Callable, Dict, List, Literal, Optional, Protocol
from uuid import uuid4

from fastapi import Request
from openai import APIStatusError, OpenAI, OpenAIError
from pydantic import BaseModel, Field

from .config import Settings, get_settings
from .errors import TransientLessonFormatError, UsageLimitExceededError
from .learning_path import LearningPath
from .signals import Pace

logger = logging.getLogger(__name__)

Difficulty = Literal["intro", "easy", "medium", "hard"]
USER_ID_HEADER = "X-User-Id"
AVOID_LIMIT = 20

QuotaCheck = Callable[[str], bool]


class AuthResolver(Protocol):
    def __call__(self, request: Request) -> Optional[str]:  # pragma: no cover - protocol
        ...


class CurriculumGenerator(Protocol):
    def __call__(
        self,
        user_id: str,
        subject: str,
        course: str,
        mastery: int,
        notes: str,
    ) -> LearningPath:  # pragma: no cover - protocol
        ...


class LessonRequest(BaseModel):
    user_id: str
    subject: str
    topic: str
    pace: Pace = "normal"
    accuracy_pct: Optional[int] = None
    difficulty_pref: Optional[Difficulty] = None
    avoid_ids: List[str] = Field(default_factory=list)
    avoid_titles: List[str] = Field(default_factory=list)
    map_summary: Optional[str] = None
    structured_context: Dict[str, Any] = Field(default_factory=dict)


class LessonGenerator(Protocol):
    def __call__(self, request: LessonRequest) -> Dict[str, Any]:  # pragma: no cover - protocol
        ...


class HeaderAuthResolver:
    """Trusts the user id forwarded by the upstream gateway."""

    def __init__(self, header: str = USER_ID_HEADER) -> None:
        self._header = header

    def __call__(self, request: Request) -> Optional[str]:
        value = request.headers.get(self._header)
        if value is None:
            return None
        value = value.strip()
        return value or None


def target_difficulty(accuracy_pct: Optional[int], preferred: Optional[str] = None) -> Difficulty:
    if preferred in ("intro", "easy", "medium", "hard"):
        return preferred  # type: ignore[return-value]
    if accuracy_pct is None:
        return "easy"
    if accuracy_pct < 50:
        return "intro"
    if accuracy_pct < 65:
        return "easy"
    if accuracy_pct < 80:
        return "medium"
    return "hard"


def _slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug[:48] or "lesson"


def _is_quota_error(exc: OpenAIError) -> bool:
    if not isinstance(exc, APIStatusError):
        return False
    code = getattr(exc, "code", None)
    return code == "insufficient_quota" or exc.status_code == 402


class _OpenAIJSONClient:
    def __init__(self, settings: Optional[Settings] = None, client: Optional[OpenAI] = None) -> None:
        self._settings = settings or get_settings()
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(api_key=self._settings.openai_api_key)
        return self._client

    def complete_json(self, system: str, prompt: str, *, temperature: float) -> Any:
        try:
            completion = self.client.chat.completions.create(
                model=self._settings.openai_model,
                temperature=temperature,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                response_format={"type": "json_object"},
            )
        except OpenAIError as exc:
            if _is_quota_error(exc):
                raise UsageLimitExceededError() from exc
            raise
        content = completion.choices[0].message.content or "{}"
        return json.loads(content)


CURRICULUM_SYSTEM_PROMPT = """
You are a curriculum planner. Given a course name and the learner's mastery, return JSON with:
{
  "topics": [
    {
      "name": string,
      "subtopics": [ { "name": string, "mini_lessons": number } ]
    }
  ]
}
Order topics from foundational to advanced. Each subtopic needs 1-4 mini lessons.
Return strictly JSON.
""".strip()


LESSON_SYSTEM_PROMPT = """
You are a learning mentor. Create a tailored micro-lesson (90-140 words) plus exactly three
multiple-choice questions with short coaching explanations. Return only JSON matching:
{
  "id": string,
  "subject": string,
  "topic": string,
  "title": string,
  "content": string,
  "difficulty": "intro"|"easy"|"medium"|"hard",
  "questions": [
    { "prompt": string, "choices": string[], "correctIndex": number, "explanation": string }
  ]
}
Output nothing besides the JSON object.
""".strip()


class OpenAICurriculumGenerator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[OpenAI] = None,
        *,
        quota: Optional[QuotaCheck] = None,
    ) -> None:
        self._json = _OpenAIJSONClient(settings, client)
        self._quota = quota

    def __call__(self, user_id: str, subject: str, course: str, mastery: int, notes: str) -> LearningPath:
        if self._quota is not None and not self._quota(user_id):
            raise UsageLimitExceededError()
        prompt = f"Course: {course}\nMastery: {mastery}%"
        if notes:
            prompt += f"\nNotes: {notes}"
        logger.info("Generating learning path user=%s subject=%s course=%s", user_id, subject, course)
        try:
            payload = self._json.complete_json(CURRICULUM_SYSTEM_PROMPT, prompt, temperature=0.7)
        except json.JSONDecodeError as exc:
            raise TransientLessonFormatError("Invalid learning path format from AI") from exc
        if not isinstance(payload, dict):
            raise TransientLessonFormatError("Invalid learning path format from AI")
        path = LearningPath.from_document({"topics": payload.get("topics")})
        if not any(topic.subtopics for topic in path.topics):
            raise TransientLessonFormatError("Invalid learning path format from AI")
        return path


class OpenAILessonGenerator:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[OpenAI] = None,
        *,
        quota: Optional[QuotaCheck] = None,
    ) -> None:
        self._json = _OpenAIJSONClient(settings, client)
        self._quota = quota

    def __call__(self, request: LessonRequest) -> Dict[str, Any]:
        if self._quota is not None and not self._quota(request.user_id):
            raise UsageLimitExceededError()
        try:
            payload = self._json.complete_json(LESSON_SYSTEM_PROMPT, self.build_prompt(request), temperature=0.4)
        except json.JSONDecodeError as exc:
            raise TransientLessonFormatError() from exc
        return self._validate(payload, request)

    @staticmethod
    def build_prompt(request: LessonRequest) -> str:
        difficulty = target_difficulty(request.accuracy_pct, request.difficulty_pref)
        accuracy = (
            f"- Recent accuracy: {request.accuracy_pct}%"
            if request.accuracy_pct is not None
            else "- Recent accuracy: not enough data"
        )
        sections = [
            f"Subject: {request.subject}",
            f"Topic: {request.topic}",
            f"Target Difficulty: {difficulty}",
            f"Learner Profile:\n- Pace: {request.pace}\n{accuracy}",
        ]
        guardrails = []
        if request.avoid_ids:
            guardrails.append("Avoid lesson IDs: " + ", ".join(request.avoid_ids[-AVOID_LIMIT:]))
        if request.avoid_titles:
            guardrails.append("Avoid lesson titles: " + ", ".join(request.avoid_titles[-AVOID_LIMIT:]))
        if guardrails:
            sections.append("Guardrails:\n- " + "\n- ".join(guardrails))
        if request.map_summary:
            sections.append(f"Map summary:\n{request.map_summary}")
        if request.structured_context:
            sections.append("Structured context:\n" + json.dumps(request.structured_context, indent=2))
        sections.append("Return the lesson JSON exactly as specified.")
        return "\n\n".join(sections)

    @staticmethod
    def _validate(payload: Any, request: LessonRequest) -> Dict[str, Any]:
        if not isinstance(payload, dict):
            raise TransientLessonFormatError()
        content = payload.get("content")
        questions = payload.get("questions")
        if not isinstance(content, str) or not content.strip() or not isinstance(questions, list) or not questions:
            raise TransientLessonFormatError()
        lesson = dict(payload)
        title = lesson.get("title") if isinstance(lesson.get("title"), str) else ""
        if not isinstance(lesson.get("id"), str) or not lesson["id"].strip():
            lesson["id"] = f"{_slugify(title or request.topic)}-{uuid4().hex[:8]}"
        lesson.setdefault("subject", request.subject)
        lesson.setdefault("topic", request.topic)
        return lesson


__all__ = [
    "AuthResolver",
    "CurriculumGenerator",
    "HeaderAuthResolver",
    "LessonGenerator",
    "LessonRequest",
    "OpenAICurriculumGenerator",
    "OpenAILessonGenerator",
    "USER_ID_HEADER",
    "target_difficulty",
]
