"""REST endpoints for the personalized lesson feed and quiz attempts."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from openai import OpenAIError
from pydantic import BaseModel, Field

from .attempts import AttemptEvent, AttemptProcessor
from .collaborators import (
    AuthResolver,
    CurriculumGenerator,
    HeaderAuthResolver,
    LessonGenerator,
    OpenAICurriculumGenerator,
    OpenAILessonGenerator,
)
from .config import get_settings
from .content_delivery import FeedbackAction, NextContentService
from .errors import (
    CurriculumStorageError,
    EmptyLearningPathError,
    GenerationBusyError,
    InvalidAttemptError,
    InvalidCursorError,
    LearningPathError,
    NoCourseMappingError,
    NoLearningPathError,
    NoSubjectError,
    TransientLessonFormatError,
    UsageLimitExceededError,
)
from .generation_lock import GenerationCoordinator, build_coordinator

router = APIRouter(prefix="/api", tags=["learning-path"])
logger = logging.getLogger(__name__)

FORMAT_RETRY_AFTER_SECONDS = 2

_auth_resolver: Optional[AuthResolver] = None
_coordinator: Optional[GenerationCoordinator] = None
_curriculum_generator: Optional[CurriculumGenerator] = None
_lesson_generator: Optional[LessonGenerator] = None


class FeedbackRequest(BaseModel):
    subject: str = Field(..., min_length=1)
    lesson_id: str = Field(..., min_length=1)
    action: FeedbackAction


def get_auth_resolver() -> AuthResolver:
    global _auth_resolver
    if _auth_resolver is None:
        _auth_resolver = HeaderAuthResolver()
    return _auth_resolver


def get_coordinator() -> GenerationCoordinator:
    global _coordinator
    if _coordinator is None:
        _coordinator = build_coordinator(get_settings())
    return _coordinator


def get_curriculum_generator() -> CurriculumGenerator:
    global _curriculum_generator
    if _curriculum_generator is None:
        _curriculum_generator = OpenAICurriculumGenerator()
    return _curriculum_generator


def get_lesson_generator() -> LessonGenerator:
    global _lesson_generator
    if _lesson_generator is None:
        _lesson_generator = OpenAILessonGenerator()
    return _lesson_generator


def get_next_content_service(
    coordinator: GenerationCoordinator = Depends(get_coordinator),
    curriculum_generator: CurriculumGenerator = Depends(get_curriculum_generator),
    lesson_generator: LessonGenerator = Depends(get_lesson_generator),
) -> NextContentService:
    return NextContentService(
        coordinator=coordinator,
        curriculum_generator=curriculum_generator,
        lesson_generator=lesson_generator,
    )


def get_attempt_processor() -> AttemptProcessor:
    return AttemptProcessor()


def require_user(request: Request, resolver: AuthResolver = Depends(get_auth_resolver)) -> str:
    user_id = resolver(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return user_id


def _generating(progress: Optional[Dict[str, Any]], retry_after: int, phase: str, detail: Optional[str]) -> JSONResponse:
    payload = progress or {"phase": phase, **({"detail": detail} if detail else {})}
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"status": "generating", "progress": payload},
        headers={"Retry-After": str(retry_after)},
    )


@router.get("/fyp")
def get_next_lesson(
    subject: Optional[str] = Query(default=None),
    user_id: str = Depends(require_user),
    service: NextContentService = Depends(get_next_content_service),
) -> Any:
    try:
        resolved = service.resolve_subject(user_id, subject)
        content = service.next_content(user_id, resolved)
    except GenerationBusyError as exc:
        logger.debug("Generation busy user=%s subject=%s phase=%s", user_id, subject, exc.phase)
        return _generating(
            service.coordinator.progress(user_id, resolved),
            exc.retry_after,
            exc.phase,
            exc.detail,
        )
    except TransientLessonFormatError as exc:
        logger.warning("Transient lesson format error user=%s subject=%s: %s", user_id, subject, exc)
        return _generating(None, FORMAT_RETRY_AFTER_SECONDS, "Generating lesson content", "Retrying after formatting hiccup.")
    except NoSubjectError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except NoCourseMappingError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except (EmptyLearningPathError, InvalidCursorError) as exc:
        logger.warning("Unusable learning path user=%s subject=%s: %s", user_id, subject, exc)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except UsageLimitExceededError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    except CurriculumStorageError as exc:
        logger.error("Learning path storage failure user=%s subject=%s: %s", user_id, subject, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    except OpenAIError as exc:
        logger.error("OpenAI error while generating content user=%s subject=%s: %s", user_id, subject, exc)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Lesson generation failed: {exc}",
        ) from exc
    except LearningPathError as exc:
        logger.exception("Learning path failure user=%s subject=%s", user_id, subject)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc

    return content.model_dump(mode="json")


@router.post("/attempt")
def post_attempt(
    event: AttemptEvent,
    user_id: str = Depends(require_user),
    processor: AttemptProcessor = Depends(get_attempt_processor),
) -> Dict[str, Any]:
    try:
        result = processor.process(user_id, event)
    except InvalidAttemptError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CurriculumStorageError as exc:
        logger.error("Attempt storage failure user=%s: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return result.model_dump(mode="json", by_alias=True)


@router.post("/fyp/feedback")
def post_feedback(
    payload: FeedbackRequest,
    user_id: str = Depends(require_user),
    service: NextContentService = Depends(get_next_content_service),
) -> Dict[str, Any]:
    try:
        preferences = service.record_feedback(user_id, payload.subject, payload.lesson_id, payload.action)
    except NoLearningPathError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except CurriculumStorageError as exc:
        logger.error("Feedback storage failure user=%s subject=%s: %s", user_id, payload.subject, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"ok": True, "preferences": preferences.model_dump(mode="json")}


@router.get("/fyp/progress")
def get_progress(
    subject: Optional[str] = Query(default=None),
    user_id: str = Depends(require_user),
    service: NextContentService = Depends(get_next_content_service),
) -> Dict[str, Any]:
    try:
        summaries = service.progress_summary(user_id, subject)
    except CurriculumStorageError as exc:
        logger.error("Progress storage failure user=%s: %s", user_id, exc)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)) from exc
    return {"subjects": [summary.model_dump(mode="json", by_alias=True) for summary in summaries]}


def reset_dependencies() -> None:
    """Drop lazily built collaborators so the next request rebuilds them from settings."""
    global _auth_resolver, _coordinator, _curriculum_generator, _lesson_generator
    _auth_resolver = None
    _coordinator = None
    _curriculum_generator = None
    _lesson_generator = None


__all__ = [
    "get_attempt_processor",
    "get_auth_resolver",
    "get_coordinator",
    "get_curriculum_generator",
    "get_lesson_generator",
    "get_next_content_service",
    "reset_dependencies",
    "router",
]
