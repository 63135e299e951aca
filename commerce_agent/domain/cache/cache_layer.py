from typing import Dict, Any, List, Optional, Set, Callable, Awaitable
from collections import OrderedDict
from datetime import datetime
from pydantic import BaseModel, Field
import asyncio
import structlog
import time

from commerce_agent.domain.cache.memory_backend import DistributedCacheBackend

logger = structlog.get_logger(__name__)


class CacheEntry(BaseModel):
    """L1 cache entry"""
    key: str
    value: Any
    inserted_at: float
    ttl: float
    tags: List[str] = Field(default_factory=list)

    def is_expired(self, now: float) -> bool:
        return now - self.inserted_at >= self.ttl


class TieredCache:
    """L1 in-process LRU in front of an optional shared L2

    Every L2 round-trip runs under its own timeout. A slow or failing L2 read
    is a miss and a slow or failing write is skipped; both count as l2_errors.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        default_ttl_seconds: float = 300,
        backend: Optional[DistributedCacheBackend] = None,
        clock: Callable[[], float] = time.monotonic,
        l2_timeout_ms: int = 50,
    ):
        self.max_entries = max_entries
        self.default_ttl_seconds = default_ttl_seconds
        self.backend = backend
        self.l2_timeout_ms = l2_timeout_ms
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tags: Dict[str, Set[str]] = {}
        self.stats: Dict[str, int] = {"l1_hits": 0, "l2_hits": 0, "misses": 0, "l2_errors": 0, "evictions": 0}

    async def get(self, key: str) -> Optional[Any]:
        """Look up L1, then L2; L2 hits are promoted"""

        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None:
            if entry.is_expired(now):
                self._drop(key)
            else:
                self._entries.move_to_end(key)
                self.stats["l1_hits"] += 1
                return entry.value

        if self.backend is not None:
            try:
                remote = await self._remote(self.backend.get(key))
            except Exception as e:
                self.stats["l2_errors"] += 1
                logger.warning("L2 cache read failed", key=key, error=str(e) or type(e).__name__)
                remote = None

            if remote is not None:
                remaining = (remote["expires_at"] - datetime.utcnow()).total_seconds()
                if remaining > 0:
                    self._store(key, remote["value"], remaining, remote.get("tags") or [])
                    self.stats["l2_hits"] += 1
                    return remote["value"]

        self.stats["misses"] += 1
        return None

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None, tags: Optional[List[str]] = None) -> None:
        """Write through both tiers"""

        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        tags = list(tags or [])
        self._store(key, value, ttl, tags)

        if self.backend is not None:
            try:
                await self._remote(self.backend.set(key, value, ttl, tags))
            except Exception as e:
                self.stats["l2_errors"] += 1
                logger.warning("L2 cache write failed", key=key, error=str(e) or type(e).__name__)

    async def invalidate(self, key: str) -> None:
        self._drop(key)
        if self.backend is not None:
            try:
                await self._remote(self.backend.delete(key))
            except Exception as e:
                self.stats["l2_errors"] += 1
                logger.warning("L2 cache delete failed", key=key, error=str(e) or type(e).__name__)

    async def invalidate_tag(self, tag: str) -> int:
        """Remove every entry carrying the tag; returns the L1 count removed"""

        keys = list(self._tags.get(tag, ()))
        for key in keys:
            self._drop(key)

        if self.backend is not None:
            try:
                await self._remote(self.backend.delete_tag(tag))
            except Exception as e:
                self.stats["l2_errors"] += 1
                logger.warning("L2 tag invalidation failed", tag=tag, error=str(e) or type(e).__name__)

        logger.debug("Cache tag invalidated", tag=tag, removed=len(keys))
        return len(keys)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and not entry.is_expired(self._clock())

    async def _remote(self, call: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(call, timeout=self.l2_timeout_ms / 1000)

    def _store(self, key: str, value: Any, ttl: float, tags: List[str]) -> None:
        if key in self._entries:
            self._drop(key)

        self._entries[key] = CacheEntry(key=key, value=value, inserted_at=self._clock(), ttl=ttl, tags=tags)
        for tag in tags:
            self._tags.setdefault(tag, set()).add(key)

        while len(self._entries) > self.max_entries:
            oldest = next(iter(self._entries))
            self._drop(oldest)
            self.stats["evictions"] += 1

    def _drop(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is None:
            return
        for tag in entry.tags:
            keys = self._tags.get(tag)
            if keys is not None:
                keys.discard(key)
                if not keys:
                    del self._tags[tag]
