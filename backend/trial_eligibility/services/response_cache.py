"""
In-memory cache for semantic verdicts: LRU eviction plus a TTL, with
hit/miss statistics.

Two identical in-flight requests may both miss and both call the external
service; the last write wins. Calls are idempotent so that is harmless.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from ..core.config import settings
from ..matching.knowledge import normalize_term

logger = logging.getLogger(__name__)


def generate_cache_key(patient_term: str, criterion_term: str, context: str = "medical term") -> str:
    """Key over the full normalized content of all three inputs."""
    return json.dumps(
        [normalize_term(patient_term), normalize_term(criterion_term), normalize_term(context)],
        ensure_ascii=False,
    )


class AIResponseCache:
    def __init__(
        self,
        max_size: Optional[int] = None,
        ttl_minutes: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_size = max_size if max_size is not None else settings.CACHE_MAX_SIZE
        self.ttl_seconds = (ttl_minutes if ttl_minutes is not None else settings.CACHE_TTL_MINUTES) * 60
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            stored_at, value = entry
            if self._clock() - stored_at > self.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None
            self._entries.move_to_end(key)
            self.hits += 1
        logger.debug("Cache hit: %s", key)
        return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def clean_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("Removed %d expired cache entries", len(expired))
        return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        total = self.hits + self.misses
        return {
            "size": len(self._entries),
            "max_size": self.max_size,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 3) if total else 0.0,
        }
