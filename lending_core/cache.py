"""
TTL Cache Module

Key/value cache with per-entry expiry. Owned and injected by the caller
(reports, API wiring) rather than kept as a process-wide singleton, and
driven by a pluggable clock so expiry can be tested without sleeping.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


Clock = Callable[[], float]


class TTLCache:
    """Thread-safe cache whose entries expire after a time-to-live"""

    def __init__(self, default_ttl_seconds: float = 300, clock: Optional[Clock] = None):
        if default_ttl_seconds <= 0:
            raise ValueError("default_ttl_seconds must be positive")
        self.default_ttl_seconds = default_ttl_seconds
        self._clock = clock or time.monotonic
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Optional[Any]:
        """Return the cached value, or None if missing or expired"""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            expires_at, value = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """Store a value with the given (or default) time-to-live"""
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        with self._lock:
            self._entries[key] = (self._clock() + ttl, value)

    def get_or_compute(self, key: str, compute: Callable[[], Any],
                       ttl_seconds: Optional[float] = None) -> Any:
        """Return the cached value or compute, store and return it"""
        value = self.get(key)
        if value is None:
            value = compute()
            self.set(key, value, ttl_seconds)
        return value

    def invalidate(self, key: str) -> bool:
        """Drop one key"""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix"""
        with self._lock:
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def evict_expired(self) -> int:
        """Remove expired entries, returns number removed"""
        now = self._clock()
        with self._lock:
            expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
