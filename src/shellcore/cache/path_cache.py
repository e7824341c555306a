"""Bounded in-memory TTL cache for path lookups (stat results, which())."""

from __future__ import annotations

import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from shellcore.core.constants import DEFAULT_CACHE_MAX_SIZE, DEFAULT_CACHE_TTL_SECONDS


@dataclass(frozen=True)
class CacheConfig:
    """Sizing for a PathCache.

    Attributes:
        max_size: Maximum number of live entries; the least recently used
            entry is evicted when a new key would exceed it
        ttl_seconds: Lifetime of an entry, measured from when it was set
    """

    max_size: int = DEFAULT_CACHE_MAX_SIZE
    ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS

    def __post_init__(self) -> None:
        if self.max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {self.max_size}")
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")


class PathCache:
    """LRU cache with per-entry expiry.

    Keys are strings (usually a normalized path, optionally prefixed with a
    namespace such as "stat:" or "which:"). A single instance is shared by
    reference between a Shell, its filesystem primitives and its file
    pipelines.
    """

    def __init__(self, config: CacheConfig | None = None) -> None:
        self.config = config or CacheConfig()
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._hits = 0
        self._misses = 0

    def _expired(self, stored_at: float) -> bool:
        return time.monotonic() - stored_at >= self.config.ttl_seconds

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None if missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        value, stored_at = entry
        if self._expired(stored_at):
            del self._entries[key]
            self._misses += 1
            return None

        self._entries.move_to_end(key)
        self._hits += 1
        return value

    def set(self, key: str, value: Any) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif len(self._entries) >= self.config.max_size:
            self._entries.popitem(last=False)
        self._entries[key] = (value, time.monotonic())

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._expired(entry[1]):
            del self._entries[key]
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def invalidate_path(self, path: str | Path) -> int:
        """Drop every entry whose key refers to path or anything beneath it.

        Returns:
            Number of entries removed
        """
        target = str(path)
        prefix = target.rstrip("/") + "/"
        stale = [
            key
            for key in self._entries
            if key.split(":", 1)[-1] == target
            or key.split(":", 1)[-1].startswith(prefix)
        ]
        for key in stale:
            del self._entries[key]
        return len(stale)

    def clear(self) -> None:
        self._entries.clear()

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> dict[str, int | float]:
        """Get cache statistics."""

        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0

        return {
            "size": len(self._entries),
            "max_size": self.config.max_size,
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 2),
        }
