from __future__ import annotations

import difflib
import functools
import importlib
import inspect
import pkgutil
import re
from typing import Any, Dict, Iterable, Mapping, Optional, Type

from .base import CacheStore

_CAMEL_1 = re.compile(r"(.)([A-Z][a-z]+)")
_CAMEL_2 = re.compile(r"([a-z0-9])([A-Z])")


def _camel_to_snake(name: str) -> str:
    s1 = _CAMEL_1.sub(r"\1_\2", name)
    s2 = _CAMEL_2.sub(r"\1_\2", s1)
    return s2.lower()


def _default_alias_for(cls: Type[CacheStore]) -> str:
    name = cls.__name__
    for suffix in ("CacheStore", "Store"):
        if name.endswith(suffix):
            name = name[: -len(suffix)]
            break
    return _camel_to_snake(name)


def _normalize(alias: str) -> str:
    return alias.strip().lower().replace("-", "_")


def _iter_store_modules(package_name: str = "dnsrelay.cache") -> Iterable[str]:
    pkg = importlib.import_module(package_name)
    for modinfo in pkgutil.walk_packages(pkg.__path__, pkg.__name__ + "."):
        yield modinfo.name


@functools.lru_cache(maxsize=4)
def discover_cache_stores(
    package_name: str = "dnsrelay.cache",
) -> Dict[str, Type[CacheStore]]:
    """Brief: Discover CacheStore subclasses and register them by alias.

    Inputs:
      - package_name: Package path to scan.

    Outputs:
      - Dict[str, Type[CacheStore]] mapping normalized aliases to classes.
    """

    registry: Dict[str, Type[CacheStore]] = {}

    for modname in _iter_store_modules(package_name):
        module = importlib.import_module(modname)

        for _, obj in inspect.getmembers(module, inspect.isclass):
            if not issubclass(obj, CacheStore) or obj is CacheStore:
                continue

            claimed = set(_normalize(a) for a in (getattr(obj, "aliases", ()) or ()))
            claimed.add(_normalize(_default_alias_for(obj)))

            for alias in claimed:
                if alias in registry and registry[alias] is not obj:
                    other = registry[alias]
                    raise ValueError(
                        f"Duplicate cache store alias '{alias}' claimed by {obj.__module__}.{obj.__name__} "
                        f"and {other.__module__}.{other.__name__}"
                    )
                registry[alias] = obj

    return registry


def get_cache_store_class(identifier: str) -> Type[CacheStore]:
    """Brief: Resolve identifier to a cache store class.

    Inputs:
      - identifier: Dotted import path or alias.

    Outputs:
      - CacheStore subclass.

    Raises:
      - KeyError: unknown alias (message lists close matches).
      - TypeError: dotted path that is not a CacheStore subclass.
    """

    ident = str(identifier).strip()
    if "." in ident:
        modname, _, classname = ident.rpartition(".")
        if not modname or not classname:
            raise ValueError(f"Invalid cache store path '{identifier}'")
        module = importlib.import_module(modname)
        cls = getattr(module, classname)
        if not (inspect.isclass(cls) and issubclass(cls, CacheStore)):
            raise TypeError(f"{identifier} is not a CacheStore subclass")
        return cls

    reg = discover_cache_stores()
    key = _normalize(ident)
    try:
        return reg[key]
    except KeyError:
        suggestions = difflib.get_close_matches(key, list(reg.keys()), n=3)
        raise KeyError(
            f"Unknown cache backend '{identifier}'. "
            f"Known aliases: {', '.join(sorted(reg.keys()))}. "
            f"Suggestions: {suggestions}"
        )


def load_cache_store(
    backend: Optional[str] = None, options: Optional[Mapping[str, Any]] = None
) -> CacheStore:
    """Brief: Build the configured cache store.

    Inputs:
      - backend: Alias or dotted import path; None selects "memory".
      - options: Keyword arguments for the store constructor.

    Outputs:
      - CacheStore instance.

    Example:
      >>> store = load_cache_store("memory", {"max_cost": 100})
      >>> type(store).__name__
      'TTLCacheStore'
    """

    cls = get_cache_store_class(backend or "memory")
    return cls(**dict(options or {}))
