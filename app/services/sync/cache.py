import time
from typing import Callable, Dict, Generic, Hashable, Optional, Tuple, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class TTLCache(Generic[K, V]):
    """Small keyed cache whose entries go stale ``ttl_seconds`` after being set.

    ``get`` only returns fresh values. Stale values are kept until they are
    replaced or invalidated and stay reachable through ``peek``. A ttl of 0
    makes every value stale on arrival. ``clock`` is injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[K, Tuple[float, V]] = {}

    def get(self, key: K) -> Optional[V]:
        item = self._entries.get(key)
        if item is None:
            return None
        expires_at, value = item
        if self._clock() >= expires_at:
            return None
        return value

    def peek(self, key: K) -> Optional[V]:
        """Last value set for ``key``, fresh or not"""
        item = self._entries.get(key)
        return item[1] if item is not None else None

    def set(self, key: K, value: V) -> None:
        self._entries[key] = (self._clock() + max(self.ttl_seconds, 0), value)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: K) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        now = self._clock()
        return sum(1 for expires_at, _ in self._entries.values() if now < expires_at)
