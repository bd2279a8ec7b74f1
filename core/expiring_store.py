import threading
import time
from typing import Any, Callable


class ExpiringStore:
    """In-process key/value store with an explicit TTL per entry.

    Expired entries are invisible to ``get`` but are only removed by
    ``sweep``, which runs as a scheduled job.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._items: dict[str, tuple[float, Any]] = {}
        self._lock = threading.Lock()

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._items[key] = (self._clock() + ttl_seconds, value)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            entry = self._items.get(key)
        if entry is None:
            return default
        expires_at, value = entry
        if expires_at <= self._clock():
            return default
        return value

    def delete(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._items.items() if expires_at <= now]
            for key in expired:
                del self._items[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


# processor availability checks
availability_cache = ExpiringStore()
