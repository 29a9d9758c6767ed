"""
Bounded query-embedding cache keyed by normalized content hash.
"""

from collections import OrderedDict
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional

from .logging_config import get_logger
from .text_utils import content_hash

logger = get_logger(__name__)


@dataclass
class _CacheEntry:
    vector: List[float]
    access_count: int = 0


class QueryEmbeddingCache:
    """Least-recently-used cache of query vectors.

    Entries can be evicted at any time without affecting correctness; a miss
    only costs one extra provider call.
    """

    def __init__(self, max_entries: int = 1024):
        if max_entries <= 0:
            raise ValueError('max_entries must be positive')
        self.max_entries = max_entries
        self._entries: 'OrderedDict[str, _CacheEntry]' = OrderedDict()
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def get(self, text: str) -> Optional[List[float]]:
        key = content_hash(text)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            entry.access_count += 1
            self._entries.move_to_end(key)
            self.hits += 1
            return list(entry.vector)

    def put(self, text: str, vector: List[float]) -> None:
        key = content_hash(text)
        with self._lock:
            existing = self._entries.get(key)
            self._entries[key] = _CacheEntry(vector=list(vector), access_count=existing.access_count if existing else 0)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def get_or_compute(self, text: str, compute: Callable[[str], List[float]]) -> List[float]:
        cached = self.get(text)
        if cached is not None:
            return cached
        # Computed outside the lock; a concurrent miss for the same text just embeds twice
        vector = compute(text)
        self.put(text, vector)
        return vector

    def access_count(self, text: str) -> int:
        with self._lock:
            entry = self._entries.get(content_hash(text))
            return entry.access_count if entry else 0

    def evict(self, count: int) -> int:
        """Drop up to ``count`` least-recently-used entries, e.g. under memory pressure."""
        removed = 0
        with self._lock:
            while self._entries and removed < count:
                self._entries.popitem(last=False)
                removed += 1
        if removed:
            logger.debug(f'Evicted {removed} query embeddings from cache')
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {'size': len(self._entries), 'max_entries': self.max_entries, 'hits': self.hits, 'misses': self.misses}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
