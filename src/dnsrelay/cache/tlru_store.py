from __future__ import annotations

import math
import threading
import time
from typing import Callable, Dict, NamedTuple, Optional, Tuple

from cachetools import TLRUCache

from .base import CacheStore, cache_aliases, logger
from .entry import CacheEntry, encode_entry, entry_cost
from .ttl_store import COST_MODES


class _Item(NamedTuple):
    value: bytes
    inserted_at: float
    ttl: int


@cache_aliases("tlru", "cachetools")
class TLRUCacheStore(CacheStore):
    """CacheStore backed by cachetools.TLRUCache.

    Brief:
      Per-item expiry comes from a time-to-use function; capacity is
      cachetools' maxsize with getsizeof reporting each item's cost, and
      least-recently-used items are evicted first. cachetools is not
      thread-safe, so every access goes through one lock.

    Inputs:
      - max_cost: Positive maxsize for the underlying TLRUCache.
      - cost: "entries" or "bytes".
      - default_retention: Seconds applied when set() is called with ttl=0
        (0 = never expire).
      - timer: Clock shared with TLRUCache (default time.monotonic).

    Outputs:
      - TLRUCacheStore instance.
    """

    def __init__(
        self,
        *,
        max_cost: int = 10000,
        cost: str = "entries",
        default_retention: int = 300,
        timer: Callable[[], float] = time.monotonic,
        **_ignored: object,
    ) -> None:
        if int(max_cost) <= 0:
            raise ValueError(f"max_cost must be positive, got {max_cost!r}")
        cost_mode = str(cost or "entries").strip().lower()
        if cost_mode not in COST_MODES:
            raise ValueError(f"cost must be one of {COST_MODES}, got {cost!r}")
        if int(default_retention) < 0:
            raise ValueError("default_retention must be >= 0")

        self.max_cost = int(max_cost)
        self.cost_mode = cost_mode
        self.default_retention = int(default_retention)
        self._timer = timer
        self._lock = threading.Lock()
        self._cache: TLRUCache = TLRUCache(
            maxsize=self.max_cost,
            ttu=self._ttu,
            timer=timer,
            getsizeof=self._sizeof,
        )
        self.cache_hits = 0
        self.cache_misses = 0
        self.rejected = 0

    @staticmethod
    def _ttu(_key: str, item: _Item, now: float) -> float:
        if item.ttl <= 0:
            return math.inf
        return now + item.ttl

    def _sizeof(self, item: _Item) -> int:
        return entry_cost(item.value, self.cost_mode)

    def get(self, name: str) -> Tuple[Optional[CacheEntry], bool]:
        with self._lock:
            item = self._cache.get(name)
            if item is None:
                self.cache_misses += 1
                return None, False
            entry = self._restore(name, item.value, item.inserted_at, item.ttl)
            if entry is None:
                self._cache.pop(name, None)
                self.cache_misses += 1
                return None, False
            self.cache_hits += 1
            return entry, True

    def set(self, name: str, entry: CacheEntry, ttl: int) -> None:
        ttl_int = int(ttl)
        if ttl_int == 0:
            ttl_int = self.default_retention
        item = _Item(encode_entry(entry), self._timer(), ttl_int)
        with self._lock:
            self._cache.pop(name, None)
            if ttl_int < 0:
                return
            try:
                self._cache[name] = item
            except ValueError:
                # cachetools refuses values larger than maxsize.
                self.rejected += 1
                logger.debug("Not caching %r: value exceeds max_cost", name)

    def purge(self) -> int:
        with self._lock:
            before = len(self._cache)
            self._cache.expire()
            return before - len(self._cache)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._cache),
                "cost": int(self._cache.currsize),
                "max_cost": int(self._cache.maxsize),
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "rejected": self.rejected,
            }
