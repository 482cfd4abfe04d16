from typing import Awaitable, Callable, Dict, Optional
import asyncio

import structlog

logger = structlog.get_logger(__name__)

IdentityLoader = Callable[[str], Awaitable[float]]


class IdentityCriticalityCache:
    """Read-mostly cache of identity weights keyed by snapshot id

    Reads never take the lock. A miss calls the loader under the lock and
    re-checks first, so concurrent misses usually load once; a duplicate load
    only overwrites the same value.
    """

    def __init__(self, loader: IdentityLoader):
        self._loader = loader
        self._weights: Dict[str, float] = {}
        self._lock = asyncio.Lock()
        self.hits = 0
        self.misses = 0

    def peek(self, snapshot_id: str) -> Optional[float]:
        return self._weights.get(snapshot_id)

    async def get(self, snapshot_id: Optional[str]) -> float:
        """Identity weight in [0, 1]; 0.0 for turns without a snapshot"""

        if not snapshot_id:
            return 0.0

        cached = self._weights.get(snapshot_id)
        if cached is not None:
            self.hits += 1
            return cached

        async with self._lock:
            cached = self._weights.get(snapshot_id)
            if cached is not None:
                self.hits += 1
                return cached

            self.misses += 1
            weight = max(0.0, min(1.0, await self._loader(snapshot_id)))
            self._weights[snapshot_id] = weight
            logger.debug("Identity weight cached", snapshot_id=snapshot_id, weight=weight)
            return weight

    def put(self, snapshot_id: str, weight: float):
        self._weights[snapshot_id] = max(0.0, min(1.0, weight))

    def invalidate(self, snapshot_id: str) -> bool:
        return self._weights.pop(snapshot_id, None) is not None

    def clear(self):
        self._weights.clear()

    def get_stats(self) -> Dict[str, int]:
        """Get cache statistics"""
        return {
            "entries": len(self._weights),
            "hits": self.hits,
            "misses": self.misses
        }
