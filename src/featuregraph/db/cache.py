"""In-memory cache of hydrated entities.

The cache maps entity ids to immutable ``Entity`` values. Because entries are
never mutated, any number of readers can share one cached entity while a
materialization pass stores an updated copy:

    cache = EntityCache(max_entries=DEFAULT_CACHE_SIZE)
    entity = cache.get(42)          # None on miss
    cache.put(entity)
    cache.evict(42)                 # after the store writes a new version
    cache.invalidate()              # after a rollback
"""
from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, Optional

from ..models.records import Entity

DEFAULT_CACHE_SIZE = 50_000


class EntityCache:
    """LRU cache of stored entities keyed by id.

    Attributes:
        max_entries: Optional size bound. If None the cache grows without
                     limit until invalidated.
    """

    def __init__(self, max_entries: Optional[int] = None):
        self._max_entries = max_entries
        self._entries: "OrderedDict[int, Entity]" = OrderedDict()
        self._hits: int = 0
        self._misses: int = 0

    def get(self, entity_id: int) -> Optional[Entity]:
        entity = self._entries.get(entity_id)
        if entity is None:
            self._misses += 1
            return None
        self._hits += 1
        self._entries.move_to_end(entity_id)
        return entity

    def put(self, entity: Entity) -> None:
        if entity.id is None:
            raise ValueError("Cannot cache an entity without an id")
        self._entries[entity.id] = entity
        self._entries.move_to_end(entity.id)
        if self._max_entries is not None:
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    def evict(self, entity_id: int) -> None:
        self._entries.pop(entity_id, None)

    def invalidate(self) -> None:
        """Drop every cached entity.

        Call this after a rollback so no uncommitted state can be served.
        """
        self._entries.clear()

    def __contains__(self, entity_id: object) -> bool:
        return entity_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with hit_count, miss_count, hit_rate and entity_count
        """
        total = self._hits + self._misses
        hit_rate = self._hits / total if total > 0 else 0.0
        return {
            "hit_count": self._hits,
            "miss_count": self._misses,
            "hit_rate": hit_rate,
            "entity_count": len(self._entries),
            "max_entries": self._max_entries,
        }
