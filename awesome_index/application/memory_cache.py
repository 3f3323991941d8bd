import asyncio
from datetime import datetime
from typing import Callable, Dict, Optional

from awesome_index.domain.models import AggregateView, CacheEntry, EntityId, utcnow


class MemoryCache:
    """
    Fully assembled aggregate views keyed by document id.

    Entries are never evicted; the caller decides whether an entry is still
    fresh and overwrites it after a rebuild. The lock is only held for
    dictionary access.
    """

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self._entries: Dict[EntityId, CacheEntry[AggregateView]] = {}
        self._lock = asyncio.Lock()

    async def get(self, entity_id: EntityId) -> Optional[CacheEntry[AggregateView]]:
        async with self._lock:
            return self._entries.get(entity_id)

    async def put(self, entity_id: EntityId, view: AggregateView) -> CacheEntry[AggregateView]:
        entry = CacheEntry(value=view, inserted_at=self.clock())
        async with self._lock:
            self._entries[entity_id] = entry
        return entry
