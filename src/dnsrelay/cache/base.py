from __future__ import annotations

import dataclasses
import logging
from typing import Dict, Optional, Tuple

from .entry import CacheDecodeError, CacheEntry, decode_entry

logger = logging.getLogger("dnsrelay.cache")


def cache_aliases(*aliases: str):
    """Brief: Decorator to set aliases on a cache store class for discovery.

    Inputs:
      - *aliases: Variable number of alias strings.

    Outputs:
      - Callable that applies the aliases to a CacheStore subclass and returns it.

    Example:
      >>> from dnsrelay.cache.base import CacheStore, cache_aliases
      >>> @cache_aliases('none', 'null')
      ... class NullStore(CacheStore):
      ...     pass
      >>> NullStore.aliases
      ('none', 'null')
    """

    def _wrap(cls: type) -> type:
        cls.aliases = tuple(aliases)
        return cls

    return _wrap


class CacheStore:
    """Base class for name-keyed DNS answer caches.

    Brief:
      CacheStore is the contract the resolution engine relies on. Keys are
      question names exactly as the codec presents them; values are
      CacheEntry objects, held internally in their serialized form.
      Implementations synchronize internally and are safe to call from
      concurrent resolution flows.

    Inputs:
      - None.

    Outputs:
      - CacheStore instance.
    """

    aliases: tuple[str, ...] = ()

    def get(self, name: str) -> Tuple[Optional[CacheEntry], bool]:
        """Brief: Lookup a cached entry.

        Inputs:
          - name: Question name.

        Outputs:
          - (entry, True) when present and unexpired; (None, False) otherwise,
            including when the stored value cannot be decoded.
        """

        raise NotImplementedError("CacheStore.get() must be implemented by a subclass")

    def set(self, name: str, entry: CacheEntry, ttl: int) -> None:
        """Brief: Insert or overwrite the entry for name.

        Inputs:
          - name: Question name.
          - entry: CacheEntry to store.
          - ttl: Seconds until expiry; 0 selects the store's default retention.

        Outputs:
          - None.
        """

        raise NotImplementedError("CacheStore.set() must be implemented by a subclass")

    def purge(self) -> int:
        """Brief: Purge expired entries.

        Inputs:
          - None.

        Outputs:
          - int: Number of entries removed (best-effort).
        """

        raise NotImplementedError("CacheStore.purge() must be implemented by a subclass")

    def stats(self) -> Dict[str, int]:
        return {}

    @staticmethod
    def _restore(
        name: str, raw: bytes, inserted_at: float, ttl: int
    ) -> Optional[CacheEntry]:
        """Brief: Decode a stored value, attaching store metadata.

        Inputs:
          - name: Key, for logging.
          - raw: Serialized value.
          - inserted_at: Store clock reading at insertion.
          - ttl: Effective retention in seconds.

        Outputs:
          - CacheEntry, or None when the value is corrupt.
        """

        try:
            entry = decode_entry(raw)
        except CacheDecodeError as exc:
            logger.warning("Dropping undecodable cache value for %s: %s", name, exc)
            return None
        return dataclasses.replace(entry, inserted_at=inserted_at, ttl=ttl)
