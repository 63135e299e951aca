from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional
import asyncio
from datetime import datetime, timedelta


class DistributedCacheBackend(ABC):
    """Shared L2 cache contract"""

    @abstractmethod
    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        """Return {"value", "expires_at", "tags"} or None"""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float, tags: Optional[List[str]] = None) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def delete_tag(self, tag: str) -> int:
        ...


class InMemoryDistributedCache(DistributedCacheBackend):
    """In-memory L2 with TTL support, for development and tests"""

    def __init__(self):
        self.cache: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def set(self, key: str, value: Any, ttl: float, tags: Optional[List[str]] = None) -> None:
        async with self._lock:
            self.cache[key] = {
                "value": value,
                "expires_at": datetime.utcnow() + timedelta(seconds=ttl),
                "tags": list(tags or []),
            }

    async def get(self, key: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            entry = self.cache.get(key)
            if entry is None:
                return None

            if datetime.utcnow() > entry["expires_at"]:
                del self.cache[key]
                return None

            return dict(entry)

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self.cache.pop(key, None) is not None

    async def delete_tag(self, tag: str) -> int:
        async with self._lock:
            tagged = [key for key, entry in self.cache.items() if tag in entry["tags"]]
            for key in tagged:
                del self.cache[key]
            return len(tagged)

    async def clear_expired(self) -> int:
        """Clear expired entries and return count"""

        async with self._lock:
            now = datetime.utcnow()
            expired_keys = [key for key, entry in self.cache.items() if now > entry["expires_at"]]
            for key in expired_keys:
                del self.cache[key]
            return len(expired_keys)

