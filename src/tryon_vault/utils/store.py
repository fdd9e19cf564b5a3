"""Small key-value store interface backing sessions and rate-limit buckets."""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Callable, Dict, Generic, Iterator, List, Optional, Tuple, TypeVar

K = TypeVar("K")
V = TypeVar("V")


class KeyValueStore(ABC, Generic[K, V]):
    """Swap in a sharded or external store without touching call sites."""

    @abstractmethod
    def get(self, key: K) -> Optional[V]:
        ...

    @abstractmethod
    def set(self, key: K, value: V) -> None:
        ...

    @abstractmethod
    def delete(self, key: K) -> bool:
        ...

    @abstractmethod
    def sweep(self, predicate: Callable[[K, V], bool]) -> int:
        """Remove every entry matching predicate, returning how many went."""

    @abstractmethod
    def items(self) -> List[Tuple[K, V]]:
        ...

    @abstractmethod
    def __len__(self) -> int:
        ...

    @contextmanager
    def transaction(self) -> Iterator["KeyValueStore[K, V]"]:
        """Run a read-modify-write sequence without interleaving."""
        yield self


class InMemoryStore(KeyValueStore[K, V]):
    """Dict guarded by one re-entrant lock.

    Insertion order is kept, so the first item is always the oldest insert.
    """

    def __init__(self):
        self._data: Dict[K, V] = {}
        self._lock = threading.RLock()

    def get(self, key: K) -> Optional[V]:
        with self._lock:
            return self._data.get(key)

    def set(self, key: K, value: V) -> None:
        with self._lock:
            self._data[key] = value

    def delete(self, key: K) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def sweep(self, predicate: Callable[[K, V], bool]) -> int:
        with self._lock:
            doomed = [key for key, value in self._data.items() if predicate(key, value)]
            for key in doomed:
                del self._data[key]
            return len(doomed)

    def items(self) -> List[Tuple[K, V]]:
        with self._lock:
            return list(self._data.items())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStore[K, V]"]:
        with self._lock:
            yield self
