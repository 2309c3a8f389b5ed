"""Cache stores.

Brief: Defines the CacheStore interface, the cached value model, and the
bundled store implementations.

Inputs:
  - None

Outputs:
  - None
"""

from __future__ import annotations

from .base import CacheStore, cache_aliases
from .entry import CacheDecodeError, CacheEntry, ResolvedAnswer
from .registry import load_cache_store
from .ttl_store import TTLCacheStore

__all__ = [
    "CacheDecodeError",
    "CacheEntry",
    "CacheStore",
    "ResolvedAnswer",
    "TTLCacheStore",
    "cache_aliases",
    "load_cache_store",
]
