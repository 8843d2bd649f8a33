"""Per-key mutual exclusion."""

from __future__ import annotations

import contextlib
import threading
from typing import Hashable, Iterator


class KeyedLocks:
    """Hands out one lock per key so unrelated keys never wait on each other.

    Entries are reference counted and dropped once no thread holds or waits on
    them, so the map only grows with the number of keys in use at once.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextlib.contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    @contextlib.contextmanager
    def hold_many(self, keys) -> Iterator[None]:
        # fixed acquisition order, no deadlock between overlapping key sets
        with contextlib.ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
