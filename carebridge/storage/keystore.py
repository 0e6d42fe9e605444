from __future__ import annotations

import contextlib
import threading
from typing import Callable, Dict, Generic, Iterator, List, Optional, Protocol, TypeVar

from carebridge.logging import get_logger

logger = get_logger(__name__)

V = TypeVar("V")


class KeyStore(Protocol[V]):
    """Map-like store every guard keeps its records in.

    Implementations must make each single call atomic. Read-modify-write
    sequences are serialized by the caller through :class:`KeyedLocks`.
    """

    def get(self, key: str) -> Optional[V]: ...

    def set(self, key: str, value: V) -> None: ...

    def delete(self, key: str) -> bool: ...

    def keys(self) -> List[str]: ...

    def clear(self) -> None: ...

    def __len__(self) -> int: ...

    def __contains__(self, key: object) -> bool: ...


class MemoryKeyStore(Generic[V]):
    """Process-local :class:`KeyStore` backed by a dict."""

    def __init__(self, name: str = "store") -> None:
        self.name = name
        self._data: Dict[str, V] = {}
        self._lock = threading.RLock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: str, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self) -> List[str]:
        # Snapshot so sweeps can delete while iterating
        with self._lock:
            return list(self._data.keys())

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())


class KeyedLocks:
    """Per-key mutual exclusion.

    Lock entries are reference counted and dropped once no thread holds or
    waits on them, so the table stays proportional to in-flight keys.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # key -> [lock, holders]
        self._locks: Dict[str, list] = {}

    @contextlib.contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._locks[key] = entry
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def evict_where(
    store: KeyStore[V],
    locks: KeyedLocks,
    is_stale: Callable[[V], bool],
    *,
    name: str = "store",
) -> int:
    """Delete every record ``is_stale`` accepts, re-reading each under its key lock.

    A record refreshed between the key snapshot and the deletion is kept. Errors
    on a single key are logged and skipped so one bad entry never aborts a sweep.
    """
    removed = 0
    for key in store.keys():
        try:
            with locks.hold(key):
                record = store.get(key)
                if record is not None and is_stale(record):
                    if store.delete(key):
                        removed += 1
        except Exception as exc:
            logger.warning("sweep_entry_failed", store=name, error=str(exc))
    return removed
