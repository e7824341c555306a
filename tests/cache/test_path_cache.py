"""Tests for the bounded TTL path cache."""

from unittest.mock import patch

import pytest

from shellcore.cache.path_cache import CacheConfig, PathCache


class TestCacheConfig:
    """Test cache sizing validation."""

    def test_defaults(self) -> None:
        config = CacheConfig()

        assert config.max_size == 1000
        assert config.ttl_seconds == 60.0

    @pytest.mark.parametrize(("max_size", "ttl"), [(0, 1.0), (10, 0), (10, -5)])
    def test_rejects_invalid_values(self, max_size: int, ttl: float) -> None:
        with pytest.raises(ValueError):
            CacheConfig(max_size=max_size, ttl_seconds=ttl)


class TestPathCache:
    """Test LRU eviction, expiry and invalidation."""

    def test_get_set(self) -> None:
        cache = PathCache()

        cache.set("stat:/a", 1)

        assert cache.get("stat:/a") == 1
        assert cache.has("stat:/a") is True
        assert cache.get("stat:/b") is None

    def test_evicts_least_recently_used(self) -> None:
        cache = PathCache(CacheConfig(max_size=2))
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")

        cache.set("c", 3)

        assert cache.has("a") is True
        assert cache.has("b") is False
        assert cache.has("c") is True
        assert len(cache) == 2

    def test_overwrite_does_not_evict(self) -> None:
        cache = PathCache(CacheConfig(max_size=2))
        cache.set("a", 1)
        cache.set("b", 2)

        cache.set("a", 10)

        assert cache.size() == 2
        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_entries_expire(self) -> None:
        """Test that an entry read after its TTL is a miss."""
        cache = PathCache(CacheConfig(ttl_seconds=5))

        with patch("shellcore.cache.path_cache.time.monotonic", return_value=100.0):
            cache.set("k", "v")
        with patch("shellcore.cache.path_cache.time.monotonic", return_value=104.0):
            assert cache.get("k") == "v"
        with patch("shellcore.cache.path_cache.time.monotonic", return_value=105.0):
            assert cache.get("k") is None
            assert cache.has("k") is False

        assert len(cache) == 0

    def test_invalidate_path_removes_descendants(self) -> None:
        cache = PathCache()
        cache.set("stat:/data", 1)
        cache.set("lstat:/data/file", 2)
        cache.set("stat:/data/sub/deep", 3)
        cache.set("stat:/database", 4)
        cache.set("which:git", 5)

        removed = cache.invalidate_path("/data")

        assert removed == 3
        assert cache.has("stat:/database") is True
        assert cache.has("which:git") is True

    def test_delete_and_clear(self) -> None:
        cache = PathCache()
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.delete("a") is False
        cache.clear()
        assert cache.size() == 0

    def test_stats(self) -> None:
        cache = PathCache(CacheConfig(max_size=10))
        cache.set("a", 1)
        cache.get("a")
        cache.get("a")
        cache.get("missing")

        stats = cache.get_stats()

        assert stats == {
            "size": 1,
            "max_size": 10,
            "hits": 2,
            "misses": 1,
            "hit_rate": 66.67,
        }
