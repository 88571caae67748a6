"""Learning path document model: topic/subtopic tree plus the progress cursor.

The document is persisted verbatim as JSON in ``user_subject_state.path`` and is
shared with other consumers, so field names on the wire keep their historical
camelCase spelling (``topicIdx``, ``deliveredMini`` ...). Loading goes through
:meth:`LearningPath.from_document`, which applies the defaulting rules for
documents written by older schema versions.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, computed_field, field_validator, model_validator

HISTORY_CAP = 50
PREFERENCE_CAP = 200
LABEL_SEPARATOR = " > "


def subtopic_label(topic_name: str, subtopic_name: str) -> str:
    """Return the canonical ``"Topic > Subtopic"`` key used by every history map."""
    return f"{topic_name.strip()}{LABEL_SEPARATOR}{subtopic_name.strip()}"


def split_label(label: str) -> Optional[Tuple[str, str]]:
    if not isinstance(label, str) or ">" not in label:
        return None
    topic_name, subtopic_name = label.split(">", 1)
    return topic_name.strip(), subtopic_name.strip()


def remember(history: List[str], value: Optional[str], *, cap: int = HISTORY_CAP) -> List[str]:
    """Append ``value`` if absent and trim the oldest entries beyond ``cap``."""
    if value and value not in history:
        history.append(value)
    while len(history) > cap:
        history.pop(0)
    return history


def push_recent(history: List[str], value: str, *, cap: int = PREFERENCE_CAP) -> List[str]:
    """Move ``value`` to the most recent end, keeping at most ``cap`` entries."""
    trimmed = value.strip()
    if not trimmed:
        return history
    history[:] = [entry for entry in history if entry != trimmed]
    history.append(trimmed)
    del history[: max(0, len(history) - cap)]
    return history


def _coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else default
    if isinstance(value, str):
        try:
            return int(float(value.strip()))
        except ValueError:
            return default
    return default


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    result: List[str] = []
    for entry in value:
        if isinstance(entry, str):
            trimmed = entry.strip()
            if trimmed and trimmed not in result:
                result.append(trimmed)
    return result


class Subtopic(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    mini_lessons: int = 1
    completed: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("mini_lessons", mode="before")
    @classmethod
    def _at_least_one(cls, value: Any) -> int:
        return max(1, _coerce_int(value, default=1))

    @field_validator("completed", mode="before")
    @classmethod
    def _strict_true(cls, value: Any) -> bool:
        # Anything other than a literal ``true`` counts as incomplete.
        return value is True


class Topic(BaseModel):
    model_config = ConfigDict(extra="allow")

    name: str = ""
    subtopics: List[Subtopic] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _drop_stored_completion(cls, data: Any) -> Any:
        if isinstance(data, dict) and "completed" in data:
            data = {key: value for key, value in data.items() if key != "completed"}
        return data

    @field_validator("name", mode="before")
    @classmethod
    def _strip_name(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("subtopics", mode="before")
    @classmethod
    def _only_mappings(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, (dict, Subtopic))]

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> bool:
        return all(subtopic.completed for subtopic in self.subtopics)


class LessonPreferences(BaseModel):
    model_config = ConfigDict(extra="allow")

    liked: List[str] = Field(default_factory=list)
    disliked: List[str] = Field(default_factory=list)
    saved: List[str] = Field(default_factory=list)

    @field_validator("liked", "disliked", "saved", mode="before")
    @classmethod
    def _normalise(cls, value: Any) -> List[str]:
        return _string_list(value)


class ProgressCursor(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    topic_idx: int = Field(0, alias="topicIdx")
    subtopic_idx: int = Field(0, alias="subtopicIdx")
    delivered_mini: int = Field(0, alias="deliveredMini")
    delivered_by_topic: Dict[str, int] = Field(default_factory=dict, alias="deliveredByTopic")
    delivered_ids_by_topic: Dict[str, List[str]] = Field(default_factory=dict, alias="deliveredIdsByTopic")
    delivered_titles_by_topic: Dict[str, List[str]] = Field(default_factory=dict, alias="deliveredTitlesByTopic")
    preferences: LessonPreferences = Field(default_factory=LessonPreferences)
    lesson_cache: Dict[str, List[Dict[str, Any]]] = Field(default_factory=dict, alias="lessonCache")
    exhausted: bool = False

    @model_validator(mode="before")
    @classmethod
    def _migrate(cls, data: Any) -> Any:
        if isinstance(data, BaseModel):
            return data
        if not isinstance(data, dict):
            return {}
        migrated = {key: value for key, value in data.items() if value is not None}
        legacy_ids = migrated.pop("deliveredIdsByKey", None)
        if isinstance(legacy_ids, dict):
            merged = dict(legacy_ids)
            current = migrated.get("deliveredIdsByTopic")
            if isinstance(current, dict):
                merged.update(current)
            migrated["deliveredIdsByTopic"] = merged
        return migrated

    @field_validator("topic_idx", "subtopic_idx", mode="before")
    @classmethod
    def _index(cls, value: Any) -> int:
        return _coerce_int(value)

    @field_validator("delivered_mini", mode="before")
    @classmethod
    def _non_negative(cls, value: Any) -> int:
        return max(0, _coerce_int(value))

    @field_validator("delivered_by_topic", mode="before")
    @classmethod
    def _counts(cls, value: Any) -> Dict[str, int]:
        if not isinstance(value, dict):
            return {}
        return {str(key): max(0, _coerce_int(count)) for key, count in value.items()}

    @field_validator("delivered_ids_by_topic", "delivered_titles_by_topic", mode="before")
    @classmethod
    def _histories(cls, value: Any) -> Dict[str, List[str]]:
        if not isinstance(value, dict):
            return {}
        return {str(key): _string_list(entries) for key, entries in value.items()}

    @field_validator("lesson_cache", mode="before")
    @classmethod
    def _cache(cls, value: Any) -> Dict[str, List[Dict[str, Any]]]:
        if not isinstance(value, dict):
            return {}
        return {
            str(key): [entry for entry in entries if isinstance(entry, dict)]
            for key, entries in value.items()
            if isinstance(entries, list)
        }

    @field_validator("exhausted", mode="before")
    @classmethod
    def _flag(cls, value: Any) -> bool:
        return value is True

    @property
    def positioned(self) -> bool:
        """Whether both cursor indices came from the document rather than defaults."""
        return {"topic_idx", "subtopic_idx"} <= self.model_fields_set


class LearningPath(BaseModel):
    """One learner's curriculum tree and cursor for a single subject."""

    model_config = ConfigDict(extra="allow")

    topics: List[Topic] = Field(default_factory=list)
    progress: ProgressCursor = Field(default_factory=ProgressCursor)

    @field_validator("topics", mode="before")
    @classmethod
    def _topic_list(cls, value: Any) -> List[Any]:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, (dict, Topic))]

    @field_validator("progress", mode="before")
    @classmethod
    def _progress(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, ProgressCursor)) else {}

    @classmethod
    def from_document(cls, document: Any, *, fallback_label: Optional[str] = None) -> "LearningPath":
        """Validate a stored document.

        Documents written before the cursor carried ``topicIdx``/``subtopicIdx``
        are positioned on ``fallback_label`` when it names a subtopic.
        """
        if not isinstance(document, dict):
            raise ValueError("Learning path document must be a JSON object.")
        path = cls.model_validate(document)
        if fallback_label and not path.progress.positioned:
            position = path.locate(fallback_label)
            if position is not None:
                path.progress.topic_idx, path.progress.subtopic_idx = position
        return path

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)

    def subtopic_at(self, topic_idx: int, subtopic_idx: int) -> Optional[Subtopic]:
        if not 0 <= topic_idx < len(self.topics):
            return None
        subtopics = self.topics[topic_idx].subtopics
        if not 0 <= subtopic_idx < len(subtopics):
            return None
        return subtopics[subtopic_idx]

    def label_at(self, topic_idx: int, subtopic_idx: int) -> Optional[str]:
        subtopic = self.subtopic_at(topic_idx, subtopic_idx)
        if subtopic is None:
            return None
        return subtopic_label(self.topics[topic_idx].name, subtopic.name)

    def positions(self) -> Iterator[Tuple[int, int]]:
        """Yield every (topic, subtopic) index pair in document order."""
        for topic_idx, topic in enumerate(self.topics):
            for subtopic_idx in range(len(topic.subtopics)):
                yield topic_idx, subtopic_idx

    def locate(self, label: str) -> Optional[Tuple[int, int]]:
        parts = split_label(label)
        if parts is None:
            return None
        topic_name, subtopic_name = parts
        for topic_idx, topic in enumerate(self.topics):
            if topic.name != topic_name:
                continue
            for subtopic_idx, subtopic in enumerate(topic.subtopics):
                if subtopic.name == subtopic_name:
                    return topic_idx, subtopic_idx
        return None

    @property
    def has_topics(self) -> bool:
        return bool(self.topics)


__all__ = [
    "HISTORY_CAP",
    "LABEL_SEPARATOR",
    "LearningPath",
    "LessonPreferences",
    "PREFERENCE_CAP",
    "ProgressCursor",
    "Subtopic",
    "Topic",
    "push_recent",
    "remember",
    "split_label",
    "subtopic_label",
]
