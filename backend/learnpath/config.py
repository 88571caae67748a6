import os
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: Optional[str] = Field(None, alias="LEARNPATH_DATABASE_URL")
    database_pool_size: int = Field(10, alias="LEARNPATH_DATABASE_POOL_SIZE")
    database_max_overflow: int = Field(10, alias="LEARNPATH_DATABASE_MAX_OVERFLOW")
    database_echo: bool = Field(False, alias="LEARNPATH_DATABASE_ECHO")
    lock_backend: Literal["database", "memory"] = Field("database", alias="LEARNPATH_LOCK_BACKEND")
    lock_ttl_seconds: float = Field(180.0, gt=0, alias="LEARNPATH_LOCK_TTL_SECONDS")
    points_per_correct: int = Field(10, ge=1, alias="LEARNPATH_POINTS_PER_CORRECT")
    pace_window_hours: float = Field(72.0, gt=0, alias="LEARNPATH_PACE_WINDOW_HOURS")
    accuracy_window: int = Field(50, ge=1, alias="LEARNPATH_ACCURACY_WINDOW")
    attempt_history_limit: int = Field(120, ge=1, alias="LEARNPATH_ATTEMPT_HISTORY_LIMIT")
    lesson_cache_size: int = Field(5, ge=0, alias="LEARNPATH_LESSON_CACHE_SIZE")
    lesson_cache_max_age_hours: float = Field(168.0, gt=0, alias="LEARNPATH_LESSON_CACHE_MAX_AGE_HOURS")
    openai_api_key: Optional[str] = Field(None, alias="OPENAI_API_KEY")
    openai_model: str = Field("gpt-5-nano", alias="LEARNPATH_OPENAI_MODEL")

    class Config:
        env_file = os.getenv("ENV_FILE", ".env")
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache
def get_settings() -> Settings:
    try:
        settings = Settings()  # type: ignore[arg-type]
        if settings.openai_api_key and not os.getenv("OPENAI_API_KEY"):
            os.environ["OPENAI_API_KEY"] = settings.openai_api_key
        return settings
    except ValidationError as exc:
        raise RuntimeError(f"Invalid backend configuration: {exc}") from exc
