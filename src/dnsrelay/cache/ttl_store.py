from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, Dict, List, NamedTuple, Optional, Tuple

from .base import CacheStore, cache_aliases
from .entry import CacheEntry, encode_entry, entry_cost

""" Name-keyed cache where each entry has its own TTL.

Brief:
  Thread-safe in-memory store with per-entry expiry and a hard bound on the
  total cost of stored values. Cost is either one unit per entry or the
  serialized size of the entry in bytes.

Notes:
  - Expired entries are removed lazily in get() and opportunistically on
    every set(), before any capacity eviction runs.
  - When the bound is exceeded the eviction_policy picks victims until the
    total cost fits again.
"""

_logger = logging.getLogger(__name__)

EVICTION_POLICIES = ("lru", "lfu", "fifo", "random", "almost_expired")
COST_MODES = ("entries", "bytes")


class _Slot(NamedTuple):
    expiry: Optional[float]
    inserted_at: float
    ttl: int
    value: bytes
    cost: int


@cache_aliases("memory", "ttl", "in_memory_ttl")
class TTLCacheStore(CacheStore):
    """Thread-safe in-memory cache with per-entry TTL and cost-bounded eviction.

    Brief:
        Default CacheStore. Lookups never return an entry whose TTL has
        elapsed, whatever the eviction policy, and total cost never exceeds
        max_cost after a set() returns.

    Inputs:
        - max_cost: Positive bound on the summed cost of stored entries.
        - cost: "entries" (each entry costs 1) or "bytes" (serialized size).
        - eviction_policy: One of "lru", "lfu", "fifo", "random",
          "almost_expired".
        - default_retention: Seconds applied when set() is called with
          ttl=0. A value of 0 means such entries never expire.
        - timer: Clock returning float seconds (default time.monotonic).

    Outputs:
        TTLCacheStore instance

    Example use:
        >>> from dnsrelay.cache.entry import CacheEntry
        >>> store = TTLCacheStore(max_cost=100)
        >>> store.set("example.test.", CacheEntry(), 60)
        >>> store.get("example.test.")[1]
        True
    """

    def __init__(
        self,
        *,
        max_cost: int = 10000,
        cost: str = "entries",
        eviction_policy: str = "lru",
        default_retention: int = 300,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        if int(max_cost) <= 0:
            raise ValueError(f"max_cost must be positive, got {max_cost!r}")
        cost_mode = str(cost or "entries").strip().lower()
        if cost_mode not in COST_MODES:
            raise ValueError(f"cost must be one of {COST_MODES}, got {cost!r}")
        policy = str(eviction_policy or "lru").strip().lower()
        if policy not in EVICTION_POLICIES:
            raise ValueError(
                f"eviction_policy must be one of {EVICTION_POLICIES}, got {eviction_policy!r}"
            )
        if int(default_retention) < 0:
            raise ValueError("default_retention must be >= 0")

        self.max_cost: int = int(max_cost)
        self.cost_mode: str = cost_mode
        self.eviction_policy: str = policy
        self.default_retention: int = int(default_retention)
        self._timer = timer

        self._store: Dict[str, _Slot] = {}
        self._total_cost: int = 0
        self._lock = threading.RLock()

        # Best-effort counters for stats snapshots.
        self.calls_total: int = 0
        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.evictions_ttl: int = 0
        self.evictions_capacity: int = 0
        self.rejected: int = 0

        # Metadata used by eviction policies.
        self._op_counter: int = 0
        self._last_access: Dict[str, int] = {}
        self._hit_counts: Dict[str, int] = {}
        self._insert_index: Dict[str, int] = {}

    def _bump_op_counter_locked(self) -> int:
        self._op_counter += 1
        return self._op_counter

    def _record_insert_locked(self, name: str) -> None:
        idx = self._bump_op_counter_locked()
        self._insert_index[name] = idx
        self._last_access[name] = idx
        self._hit_counts[name] = 0

    def _record_access_locked(self, name: str) -> None:
        idx = self._bump_op_counter_locked()
        self._last_access[name] = idx
        self._hit_counts[name] = self._hit_counts.get(name, 0) + 1

    def _drop_locked(self, name: str) -> Optional[_Slot]:
        slot = self._store.pop(name, None)
        if slot is not None:
            self._total_cost -= slot.cost
        self._last_access.pop(name, None)
        self._hit_counts.pop(name, None)
        self._insert_index.pop(name, None)
        return slot

    def get(self, name: str) -> Tuple[Optional[CacheEntry], bool]:
        """
        Retrieves an entry from the cache.

        Inputs:
            name: Question name.

        Outputs:
            (entry, True) on a live hit, (None, False) on a miss, on expiry,
            or when the stored value is corrupt.
        """
        now = self._timer()
        with self._lock:
            self.calls_total += 1

            slot = self._store.get(name)
            if slot is None:
                self.cache_misses += 1
                return None, False

            if slot.expiry is not None and now >= slot.expiry:
                self._drop_locked(name)
                self.evictions_ttl += 1
                self.cache_misses += 1
                _logger.debug("TTL eviction (get): key=%r", name)
                return None, False

            entry = self._restore(name, slot.value, slot.inserted_at, slot.ttl)
            if entry is None:
                self._drop_locked(name)
                self.cache_misses += 1
                return None, False

            self.cache_hits += 1
            self._record_access_locked(name)
            return entry, True

    def set(self, name: str, entry: CacheEntry, ttl: int) -> None:
        """
        Adds an entry to the cache, evicting others if the cost bound is hit.

        Inputs:
            name: Question name.
            entry: CacheEntry to store.
            ttl: Seconds to live; 0 selects default_retention, negative
                values store nothing.
        Outputs:
            None

        Notes:
            An entry whose own cost exceeds max_cost is not stored, and any
            older value under the same name is dropped so a stale answer is
            never served in its place.
        """
        ttl_int = int(ttl)
        if ttl_int == 0:
            ttl_int = self.default_retention
        elif ttl_int < 0:
            with self._lock:
                self._drop_locked(name)
            return

        value = encode_entry(entry)
        cost = entry_cost(value, self.cost_mode)
        now = self._timer()
        expiry = None if ttl_int == 0 else now + ttl_int

        with self._lock:
            self._drop_locked(name)
            if cost > self.max_cost:
                self.rejected += 1
                _logger.debug(
                    "Not caching %r: cost %d exceeds max_cost %d",
                    name,
                    cost,
                    self.max_cost,
                )
                return

            self._store[name] = _Slot(expiry, now, ttl_int, value, cost)
            self._total_cost += cost
            self._record_insert_locked(name)

            self._purge_expired_locked(now)
            if self._total_cost > self.max_cost:
                self._evict_locked(protect=name)

    def purge(self) -> int:
        """Remove all expired entries.

        Inputs:
            None
        Outputs:
            Number of entries removed.
        """
        with self._lock:
            return self._purge_expired_locked(self._timer())

    def _purge_expired_locked(self, now: float) -> int:
        removed = 0
        for k, slot in list(self._store.items()):
            if slot.expiry is not None and slot.expiry <= now:
                self._drop_locked(k)
                self.evictions_ttl += 1
                removed += 1
                _logger.debug("TTL eviction (purge): key=%r", k)
        return removed

    def _evict_locked(self, protect: Optional[str] = None) -> int:
        """Brief: Evict entries by policy until total cost fits max_cost.

        Inputs:
          - protect: Key to spare unless it is the only entry left.

        Outputs:
          - int: Number of entries evicted.
        """

        policy = self.eviction_policy
        candidates: List[str] = [k for k in self._store if k != protect]

        if policy == "random":
            random.shuffle(candidates)
        else:
            if policy == "lru":
                scores = self._last_access
            elif policy == "lfu":
                scores = self._hit_counts
            elif policy == "fifo":
                scores = self._insert_index
            else:  # almost_expired
                scores = {
                    k: (s.expiry if s.expiry is not None else float("inf"))
                    for k, s in self._store.items()
                }
            # Ties are broken by insertion order so results are deterministic.
            candidates.sort(
                key=lambda k: (scores.get(k, 0), self._insert_index.get(k, 0))
            )

        if protect is not None and protect in self._store:
            candidates.append(protect)

        removed = 0
        for k in candidates:
            if self._total_cost <= self.max_cost:
                break
            self._drop_locked(k)
            self.evictions_capacity += 1
            removed += 1
            _logger.debug("Capacity eviction: policy=%s key=%r", policy, k)
        return removed

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "entries": len(self._store),
                "cost": int(self._total_cost),
                "max_cost": int(self.max_cost),
                "calls_total": self.calls_total,
                "cache_hits": self.cache_hits,
                "cache_misses": self.cache_misses,
                "evictions_ttl": self.evictions_ttl,
                "evictions_capacity": self.evictions_capacity,
                "rejected": self.rejected,
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    @property
    def total_cost(self) -> int:
        with self._lock:
            return self._total_cost
