import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import diskcache

from src.domain.cache_keys import ISSUE, ISSUES, LABELS, CacheKey
from src.infrastructure.settings import DEFAULT_CACHE_POLICIES, CachePolicy

logger = logging.getLogger(__name__)

FALLBACK_POLICY = CachePolicy(memory_ttl=15 * 60, durable_ttl=15 * 60)
REPOSITORY_NAMESPACES = (ISSUES, ISSUE, LABELS)


class _Miss:
    """Sentinel returned on a cache miss, so a cached None stays distinguishable."""

    def __repr__(self) -> str:
        return "MISS"

    def __bool__(self) -> bool:
        return False


MISS: Any = _Miss()


class MemoryTier:
    """Process-local TTL store. Cleared whenever the process restarts."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._store: Dict[str, Tuple[float, Any]] = {}
        self._clock = clock

    def get(self, key: str) -> Any:
        entry = self._store.get(key)
        if entry is None:
            return MISS
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._store[key]
            return MISS
        return value

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._store[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> bool:
        return self._store.pop(key, None) is not None

    def keys(self):
        return list(self._store.keys())

    def clear(self) -> None:
        self._store.clear()

    def __len__(self) -> int:
        return len(self._store)


class DurableTier:
    """
    On-disk TTL store backed by diskcache. Survives restarts.

    Eviction is disabled: entries only leave on expiry or explicit invalidation.
    """

    def __init__(self, directory: str):
        self._cache = diskcache.Cache(directory, eviction_policy="none")

    def get(self, key: str) -> Tuple[Any, Optional[float]]:
        """Returns (value, seconds until expiry) or (MISS, None)."""
        value, expire_time = self._cache.get(key, default=MISS, expire_time=True)
        if value is MISS:
            return MISS, None
        remaining = None if expire_time is None else expire_time - time.time()
        return value, remaining

    def set(self, key: str, value: Any, ttl: float) -> None:
        self._cache.set(key, value, expire=ttl)

    def delete(self, key: str) -> bool:
        return bool(self._cache.delete(key))

    def keys(self):
        return list(self._cache.iterkeys())

    def clear(self) -> None:
        self._cache.clear()

    def close(self) -> None:
        self._cache.close()

    def __len__(self) -> int:
        return len(self._cache)


class CacheTierManager:
    """
    Two-tier read-through cache: process memory first, then the durable tier.

    A value found only in the durable tier is promoted back into memory. TTLs come
    from the per-namespace CachePolicy unless the caller passes one explicitly.
    """

    def __init__(
        self,
        memory: Optional[MemoryTier] = None,
        durable: Optional[DurableTier] = None,
        policies: Optional[Dict[str, CachePolicy]] = None,
    ):
        self.memory = memory or MemoryTier()
        self.durable = durable
        self.policies = dict(policies or DEFAULT_CACHE_POLICIES)

    def _policy(self, key: CacheKey) -> CachePolicy:
        return self.policies.get(key.namespace, FALLBACK_POLICY)

    def get(self, key: CacheKey) -> Any:
        rendered = key.render()

        value = self.memory.get(rendered)
        if value is not MISS:
            logger.debug(f"Cache hit (memory): {rendered}")
            return value

        if self.durable is not None:
            value, remaining = self.durable.get(rendered)
            if value is not MISS:
                memory_ttl = self._policy(key).memory_ttl
                if remaining is not None:
                    memory_ttl = min(memory_ttl, max(remaining, 0.0))
                if memory_ttl > 0:
                    self.memory.set(rendered, value, memory_ttl)
                logger.debug(f"Cache hit (durable, promoted): {rendered}")
                return value

        logger.debug(f"Cache miss: {rendered}")
        return MISS

    def set(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> None:
        rendered = key.render()
        policy = self._policy(key)

        self.memory.set(rendered, value, policy.memory_ttl if ttl is None else ttl)
        if self.durable is not None:
            self.durable.set(rendered, value, policy.durable_ttl if ttl is None else ttl)
        logger.debug(f"Cache set: {rendered}")

    def invalidate(self, key: CacheKey) -> None:
        rendered = key.render()
        self.memory.delete(rendered)
        if self.durable is not None:
            self.durable.delete(rendered)

    def invalidate_prefix(self, prefix: CacheKey) -> int:
        """Removes every key that extends the given prefix from both tiers. Returns the number removed."""
        removed = 0
        for rendered in self.memory.keys():
            if prefix.is_prefix_of(rendered) and self.memory.delete(rendered):
                removed += 1
        if self.durable is not None:
            for rendered in self.durable.keys():
                if prefix.is_prefix_of(rendered) and self.durable.delete(rendered):
                    removed += 1

        if removed:
            logger.info(f"Invalidated {removed} cache entries under '{prefix.render()}'.")
        return removed

    def invalidate_repository(self, owner: str, repo: str, namespaces: Iterable[str] = REPOSITORY_NAMESPACES) -> int:
        """Drops every cached page, issue and label list of one repository."""
        return sum(self.invalidate_prefix(CacheKey.prefix(namespace, owner, repo)) for namespace in namespaces)

    def clear(self) -> None:
        self.memory.clear()
        if self.durable is not None:
            self.durable.clear()

    def stats(self) -> Dict[str, int]:
        return {
            "memory": len(self.memory),
            "durable": len(self.durable) if self.durable is not None else 0,
        }
