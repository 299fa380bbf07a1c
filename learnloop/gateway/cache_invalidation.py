"""
Cache invalidation interface.

The invalidation service itself lives outside this package. Callers invoke it
explicitly after every state-changing write; failures are logged and never
propagated to the caller.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Protocol

from loguru import logger


class CacheInvalidator(Protocol):
    def invalidate(self, entity_type: str, entity_ids: list[int]) -> None: ...

    def bulk_invalidate(self, tags: list[str]) -> None: ...


class NullCacheInvalidator:
    """Default invalidator when no cache layer is wired in."""

    def invalidate(self, entity_type: str, entity_ids: list[int]) -> None:
        logger.debug(f"Cache invalidate {entity_type}: {entity_ids}")

    def bulk_invalidate(self, tags: list[str]) -> None:
        logger.debug(f"Cache bulk invalidate: {tags}")


class SafeInvalidator:
    """Fire-and-forget wrapper that swallows and logs collaborator failures."""

    def __init__(self, inner: CacheInvalidator | None = None):
        self.inner = inner or NullCacheInvalidator()

    def invalidate(self, entity_type: str, entity_ids: Iterable[int]) -> bool:
        ids = list(entity_ids)
        try:
            self.inner.invalidate(entity_type, ids)
            return True
        except Exception as e:  # Intentionally broad - invalidation must never fail a write
            logger.error(f"Cache invalidation failed for {entity_type} {ids}: {e}")
            return False

    def bulk_invalidate(self, tags: Iterable[str]) -> bool:
        tag_list = list(tags)
        try:
            self.inner.bulk_invalidate(tag_list)
            return True
        except Exception as e:  # Intentionally broad - invalidation must never fail a write
            logger.error(f"Bulk cache invalidation failed for {tag_list}: {e}")
            return False
