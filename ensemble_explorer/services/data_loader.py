from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional

import numpy as np

from ..constants import CHUNK_CACHE_MAX_ITEMS

logger = logging.getLogger("ensemble_explorer.loader")


class ChunkCache:
    """LRU cache of decoded array slices with singleflight loading.

    Keys name the store, snapshot, array and selection. Store reads run in
    worker threads (``asyncio.to_thread``), so two panels asking for the same
    slice at once can race; the first caller becomes the owner and decodes,
    the others wait on its event and re-check the cache.
    """

    def __init__(self, max_items: Optional[int] = None, wait_timeout: float = 30.0):
        self.max_items = int(max_items if max_items is not None else CHUNK_CACHE_MAX_ITEMS)
        self.wait_timeout = wait_timeout
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self._lock = threading.Lock()
        self._inflight: Dict[str, threading.Event] = {}
        self._stats: Dict[str, int] = {
            "hits": 0,
            "misses": 0,
            "waits": 0,
            "fallbacks": 0,
            "evictions": 0,
        }

    def __len__(self) -> int:
        return len(self._cache)

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def _lookup(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
                return self._cache[key]
        return None

    def _store(self, key: str, value: np.ndarray) -> None:
        if self.max_items <= 0:
            return
        with self._lock:
            while len(self._cache) >= self.max_items:
                evicted_key, _ = self._cache.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"LRU eviction: {evicted_key}")
            self._cache[key] = value
            self._cache.move_to_end(key)

    def get_or_load(self, key: str, loader: Callable[[], np.ndarray]) -> np.ndarray:
        cached = self._lookup(key)
        if cached is not None:
            self._stats["hits"] += 1
            return cached

        # Singleflight: one decode per key, concurrent callers wait
        owner = False
        with self._lock:
            evt = self._inflight.get(key)
            if evt is None:
                evt = threading.Event()
                self._inflight[key] = evt
                owner = True

        if owner:
            self._stats["misses"] += 1
            try:
                logger.debug(f"Owner load: {key}")
                value = loader()
                self._store(key, value)
                return value
            finally:
                with self._lock:
                    self._inflight.pop(key, None)
                evt.set()

        self._stats["waits"] += 1
        logger.debug(f"Singleflight wait: {key}")
        evt.wait(timeout=self.wait_timeout)

        cached = self._lookup(key)
        if cached is not None:
            return cached

        # Owner failed or timed out: load ourselves so the error surfaces here too
        self._stats["fallbacks"] += 1
        logger.warning(f"Singleflight fallback: {key}")
        value = loader()
        self._store(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {"items": len(self._cache), "max_items": self.max_items, **self._stats}
