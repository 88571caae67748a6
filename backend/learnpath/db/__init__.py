"""Database utilities for the learning path backend."""

from . import models  # noqa: F401  registers tables on Base.metadata
from .session import (
    create_schema,
    dispose_engine,
    get_engine,
    get_session_factory,
    session_scope,
)

__all__ = [
    "create_schema",
    "dispose_engine",
    "get_engine",
    "get_session_factory",
    "session_scope",
]
