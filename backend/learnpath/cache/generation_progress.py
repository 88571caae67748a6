"""Process-local record of what an in-flight curriculum build is doing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Tuple


def generation_key(user_id: str, subject: str) -> Tuple[str, str]:
    """Key shared by generation locks and progress entries; subjects stay case-sensitive."""
    return user_id.strip(), subject.strip()


def _key(user_id: str, subject: str) -> Tuple[str, str]:
    key = generation_key(user_id, subject)
    if not all(key):
        raise ValueError("User id and subject are required to track generation progress.")
    return key


@dataclass
class _ProgressEntry:
    phase: str
    detail: Optional[str]
    updated_at: datetime


class GenerationProgressCache:
    """Latest phase/detail reported by a curriculum build, keyed by (user, subject)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, str], _ProgressEntry] = {}
        self._lock = Lock()

    def get(self, user_id: str, subject: str) -> Optional[Dict[str, str]]:
        with self._lock:
            entry = self._entries.get(_key(user_id, subject))
        if entry is None:
            return None
        payload = {"phase": entry.phase, "updatedAt": entry.updated_at.isoformat()}
        if entry.detail:
            payload["detail"] = entry.detail
        return payload

    def set(self, user_id: str, subject: str, phase: str, detail: Optional[str] = None) -> None:
        entry = _ProgressEntry(phase=phase, detail=detail, updated_at=datetime.now(timezone.utc))
        with self._lock:
            self._entries[_key(user_id, subject)] = entry

    def invalidate(self, user_id: str, subject: str) -> None:
        with self._lock:
            self._entries.pop(_key(user_id, subject), None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


generation_progress = GenerationProgressCache()

__all__ = ["GenerationProgressCache", "generation_key", "generation_progress"]
