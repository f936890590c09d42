"""A small least-recently-used cache keyed by strings."""

from __future__ import annotations

import logging
from collections import OrderedDict
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class LRUCache(Generic[V]):
    """Keeps at most ``max_size`` entries, evicting the least recently used."""

    def __init__(self, max_size: int) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: OrderedDict[str, V] = OrderedDict()

    def get(self, key: str) -> V | None:
        """Return the value for ``key`` and mark it as recently used, or None."""
        if key not in self._entries:
            return None
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: str, value: V) -> None:
        """Store ``value`` under ``key``, evicting the oldest entry when full."""
        if key in self._entries:
            self._entries[key] = value
            self._entries.move_to_end(key)
            return
        if len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted! key=%s", evicted)
        self._entries[key] = value

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)