from __future__ import annotations

from typing import Optional, Tuple

from .base import CacheStore, cache_aliases
from .entry import CacheEntry


@cache_aliases("none", "off", "disabled", "null")
class NullCacheStore(CacheStore):
    """Null cache store that never stores anything.

    Brief:
      Disables caching while keeping the resolution pipeline unchanged;
      every lookup is a miss and every query is forwarded.

    Example:
      cache:
        backend: none
    """

    def __init__(self, **_config: object) -> None:
        pass

    def get(self, name: str) -> Tuple[Optional[CacheEntry], bool]:
        return None, False

    def set(self, name: str, entry: CacheEntry, ttl: int) -> None:
        return None

    def purge(self) -> int:
        return 0
