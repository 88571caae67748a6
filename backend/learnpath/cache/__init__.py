"""In-memory caches shared across backend services."""

from .generation_progress import GenerationProgressCache, generation_key, generation_progress

__all__ = ["GenerationProgressCache", "generation_key", "generation_progress"]
