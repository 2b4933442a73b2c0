"""Capability bridge — Namespaced cache.

In-process cache shared by every plugin.  Keys and tags are always prefixed
with the calling plugin's name by the bridge, so a plugin can neither read
nor invalidate another plugin's entries::

    "{plugin}:{bin}:{key}"    entry key
    "{plugin}:{tag}"          tag

Bounded by ``max_entries`` (least recently used entry evicted first) and by a
per-entry TTL.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field


@dataclass
class _Entry:
    value: bytes
    expires_at: float | None
    tags: frozenset[str] = field(default_factory=frozenset)


class NamespacedCache:
    """Thread-safe TTL + LRU cache with tag invalidation."""

    def __init__(self, max_entries: int = 10_000, default_ttl: int = 300) -> None:
        self._entries: OrderedDict[str, _Entry] = OrderedDict()
        self._tags: dict[str, set[str]] = {}
        self._max = max_entries
        self._default_ttl = default_ttl
        self._lock = threading.Lock()

    @staticmethod
    def entry_key(plugin: str, bin: str, key: str) -> str:
        return f"{plugin}:{bin}:{key}"

    @staticmethod
    def tag_key(plugin: str, tag: str) -> str:
        return f"{plugin}:{tag}"

    def get(self, plugin: str, bin: str, key: str) -> bytes | None:
        full = self.entry_key(plugin, bin, key)
        with self._lock:
            entry = self._entries.get(full)
            if entry is None:
                return None
            if entry.expires_at is not None and time.monotonic() >= entry.expires_at:
                self._drop(full)
                return None
            self._entries.move_to_end(full)
            return entry.value

    def set(
        self,
        plugin: str,
        bin: str,
        key: str,
        value: bytes,
        ttl: int | None = None,
        tags: list[str] | None = None,
    ) -> None:
        """Store *value*.  ``ttl=None`` uses the default; ``0`` never expires."""
        full = self.entry_key(plugin, bin, key)
        ttl = self._default_ttl if ttl is None else ttl
        expires_at = time.monotonic() + ttl if ttl > 0 else None
        entry_tags = frozenset(self.tag_key(plugin, t) for t in tags or [])
        with self._lock:
            if full in self._entries:
                self._drop(full)
            self._entries[full] = _Entry(value=value, expires_at=expires_at, tags=entry_tags)
            for tag in entry_tags:
                self._tags.setdefault(tag, set()).add(full)
            while len(self._entries) > self._max:
                oldest = next(iter(self._entries))
                self._drop(oldest)

    def invalidate_tag(self, plugin: str, tag: str) -> int:
        """Drop every entry of *plugin* carrying *tag*; returns the count."""
        with self._lock:
            keys = self._tags.pop(self.tag_key(plugin, tag), set())
            for full in keys:
                self._drop(full)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._tags.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def _drop(self, full: str) -> None:
        entry = self._entries.pop(full, None)
        if entry is None:
            return
        for tag in entry.tags:
            members = self._tags.get(tag)
            if members is not None:
                members.discard(full)
                if not members:
                    del self._tags[tag]
