"""Unit tests — Namespaced cache (TTL, LRU, tags)."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from taphost.bridge.cache import NamespacedCache


@pytest.mark.unit
class TestNamespacedCache:
    def test_entries_are_namespaced_by_plugin(self) -> None:
        cache = NamespacedCache()
        cache.set("blog", "render", "k", b"blog")
        cache.set("forum", "render", "k", b"forum")
        assert cache.get("blog", "render", "k") == b"blog"
        assert cache.get("forum", "render", "k") == b"forum"
        assert cache.get("blog", "other", "k") is None

    def test_ttl_expiry(self) -> None:
        cache = NamespacedCache(default_ttl=10)
        with patch("taphost.bridge.cache.time.monotonic", return_value=100.0):
            cache.set("p", "b", "k", b"v")
        with patch("taphost.bridge.cache.time.monotonic", return_value=109.0):
            assert cache.get("p", "b", "k") == b"v"
        with patch("taphost.bridge.cache.time.monotonic", return_value=110.0):
            assert cache.get("p", "b", "k") is None
        assert len(cache) == 0

    def test_zero_ttl_never_expires(self) -> None:
        cache = NamespacedCache(default_ttl=1)
        with patch("taphost.bridge.cache.time.monotonic", return_value=0.0):
            cache.set("p", "b", "k", b"v", ttl=0)
        with patch("taphost.bridge.cache.time.monotonic", return_value=1e9):
            assert cache.get("p", "b", "k") == b"v"

    def test_lru_eviction(self) -> None:
        cache = NamespacedCache(max_entries=2)
        cache.set("p", "b", "one", b"1")
        cache.set("p", "b", "two", b"2")
        cache.get("p", "b", "one")
        cache.set("p", "b", "three", b"3")
        assert cache.get("p", "b", "two") is None
        assert cache.get("p", "b", "one") == b"1"
        assert cache.get("p", "b", "three") == b"3"

    def test_invalidate_tag_only_touches_own_entries(self) -> None:
        cache = NamespacedCache()
        cache.set("blog", "b", "a", b"1", tags=["node:1"])
        cache.set("blog", "b", "c", b"2", tags=["node:1", "list"])
        cache.set("forum", "b", "a", b"3", tags=["node:1"])
        assert cache.invalidate_tag("blog", "node:1") == 2
        assert cache.get("blog", "b", "a") is None
        assert cache.get("forum", "b", "a") == b"3"
        assert cache.invalidate_tag("blog", "list") == 0

    def test_overwrite_replaces_tags(self) -> None:
        cache = NamespacedCache()
        cache.set("p", "b", "k", b"1", tags=["old"])
        cache.set("p", "b", "k", b"2", tags=["new"])
        assert cache.invalidate_tag("p", "old") == 0
        assert cache.get("p", "b", "k") == b"2"
        assert cache.invalidate_tag("p", "new") == 1

    def test_clear(self) -> None:
        cache = NamespacedCache()
        cache.set("p", "b", "k", b"1", tags=["t"])
        cache.clear()
        assert len(cache) == 0
        assert cache.invalidate_tag("p", "t") == 0
