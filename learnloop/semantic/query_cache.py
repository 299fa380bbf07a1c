"""Process-wide cache of similarity query results."""

from __future__ import annotations

import threading
from collections.abc import Hashable
from typing import Any

from loguru import logger


class QueryCache:
    """Dict-backed cache keyed by (input_id, filters, limit)."""

    def __init__(self) -> None:
        self._entries: dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Any | None:
        with self._lock:
            return self._entries.get(key)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = value

    def clear(self, input_id: int | None = None) -> int:
        """Drop every entry, or only the entries for one query input. Returns the count dropped."""
        with self._lock:
            if input_id is None:
                dropped = len(self._entries)
                self._entries.clear()
            else:
                keys = [k for k in self._entries if isinstance(k, tuple) and k and k[0] == input_id]
                for key in keys:
                    del self._entries[key]
                dropped = len(keys)
        if dropped:
            logger.debug(f"Dropped {dropped} cached similarity queries")
        return dropped

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


retrieval_cache = QueryCache()
