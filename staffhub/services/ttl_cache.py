"""In-process cache with per-entry expiry, shared by the AI services."""

import json
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """Thread-safe dict whose entries expire *ttl* seconds after being set.

    Expired entries are dropped on read, on every ``set`` and by
    ``clean_expired``, so keys that are never read again do not pile up.
    """

    def __init__(self, ttl: float, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._data: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()

    @staticmethod
    def make_key(method: str, params: Any) -> str:
        return f"{method}_{json.dumps(params, sort_keys=True, default=str)}"

    def _sweep(self, now: float) -> int:
        # Caller holds the lock.
        expired = [k for k, (stored_at, _) in self._data.items() if now - stored_at >= self.ttl]
        for key in expired:
            del self._data[key]
        return len(expired)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            hit = self._data.get(key)
            if hit is None:
                return None
            stored_at, value = hit
            if self._clock() - stored_at >= self.ttl:
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        now = self._clock()
        with self._lock:
            self._sweep(now)
            self._data[key] = (now, value)

    def clean_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._sweep(now)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def stats(self) -> dict:
        self.clean_expired()
        with self._lock:
            return {"size": len(self._data), "keys": list(self._data)}
