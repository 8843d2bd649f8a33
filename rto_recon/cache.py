"""In-process TTL caches.

Writers never update an entry; they invalidate it so the next reader reloads
from the store. A key being loaded carries a generation counter that
``invalidate`` bumps, and a load overtaken by an invalidation is returned to
its caller but never written back into the map. Counters only live while the
load runs.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Generic, Hashable, Optional, Protocol, TypeVar

from sqlalchemy.exc import SQLAlchemyError

from rto_recon.domain import ManifestSnapshot
from rto_recon.errors import ManifestNotFound, StoreUnavailable
from rto_recon.locks import KeyedLocks

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    stored_at: float

    def is_fresh(self, now: float, ttl: float) -> bool:
        return now - self.stored_at < ttl


class Cache(Protocol):
    def get(self, key: Hashable) -> Optional[Any]: ...

    def set(self, key: Hashable, value: Any) -> None: ...

    def invalidate(self, key: Hashable) -> None: ...

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int: ...

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T: ...


class TTLCache:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, CacheEntry] = {}
        # keys with a load in flight -> invalidations seen since it started
        self._generations: dict[Hashable, int] = {}
        self._guard = threading.Lock()
        self._loading = KeyedLocks()

    def _lookup(self, key: Hashable) -> Any:
        entry = self._entries.get(key)
        if entry is None:
            return _MISSING
        if not entry.is_fresh(self._clock(), self.ttl):
            del self._entries[key]
            return _MISSING
        return entry.value

    def get(self, key: Hashable) -> Optional[Any]:
        with self._guard:
            value = self._lookup(key)
        return None if value is _MISSING else value

    def set(self, key: Hashable, value: Any) -> None:
        with self._guard:
            self._entries[key] = CacheEntry(value, self._clock())

    def invalidate(self, key: Hashable) -> None:
        with self._guard:
            self._entries.pop(key, None)
            if key in self._generations:
                self._generations[key] += 1

    def invalidate_where(self, predicate: Callable[[Hashable], bool]) -> int:
        with self._guard:
            keys = [key for key in self._entries if predicate(key)]
            for key in keys:
                del self._entries[key]
            for key in list(self._generations):
                if predicate(key):
                    self._generations[key] += 1
            return len(keys)

    def clear(self) -> None:
        with self._guard:
            self._entries.clear()
            for key in self._generations:
                self._generations[key] += 1

    def get_or_load(self, key: Hashable, loader: Callable[[], T]) -> T:
        with self._guard:
            value = self._lookup(key)
        if value is not _MISSING:
            return value
        with self._loading.hold(key):
            with self._guard:
                value = self._lookup(key)
                if value is not _MISSING:
                    return value
                self._generations[key] = 0
            try:
                value = loader()
            except BaseException:
                with self._guard:
                    self._generations.pop(key, None)
                raise
            with self._guard:
                if self._generations.pop(key, 0) == 0:
                    self._entries[key] = CacheEntry(value, self._clock())
            return value

    def pending_loads(self) -> int:
        with self._guard:
            return len(self._generations)

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class ManifestCache:
    """Read-through cache of manifest snapshots keyed by calendar date."""

    def __init__(self, cache: Cache, load: Callable[[date], Optional[ManifestSnapshot]]) -> None:
        self._cache = cache
        self._load = load

    def get(self, day: date) -> ManifestSnapshot:
        def loader() -> ManifestSnapshot:
            try:
                snapshot = self._load(day)
            except SQLAlchemyError as exc:
                logger.error("Manifest refill failed for %s: %s", day, exc)
                raise StoreUnavailable(f"could not load manifest for {day}") from exc
            # absence is not cached, an upload may land at any time
            if snapshot is None:
                raise ManifestNotFound(day)
            return snapshot

        return self._cache.get_or_load(("manifest", day), loader)

    def invalidate(self, day: date) -> None:
        self._cache.invalidate(("manifest", day))

    def clear(self) -> None:
        self._cache.invalidate_where(lambda key: key[0] == "manifest")


def date_keys(day: date) -> Callable[[Hashable], bool]:
    def predicate(key: Hashable) -> bool:
        return isinstance(key, tuple) and len(key) > 1 and key[1] == day

    return predicate
