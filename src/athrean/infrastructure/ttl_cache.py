from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TTL_SECONDS = 5 * 60
DEFAULT_MAX_ENTRIES = 10_000
EVICTION_INTERVAL_SECONDS = 60.0


@dataclass
class _Entry(Generic[T]):
    value: T
    expires_at: float


class TTLCache(Generic[T]):
    """Thread-safe in-memory map with per-entry expiry.

    Lifetime belongs to whoever constructs it: :meth:`start` launches an optional
    background sweeper and :meth:`dispose` stops it and drops every entry.
    Only writes (and :meth:`touch`) refresh an entry's expiry.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
        eviction_interval: float = EVICTION_INTERVAL_SECONDS,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._ttl = float(ttl_seconds)
        self._max_entries = int(max_entries)
        self._clock = clock
        self._interval = eviction_interval
        self._data: "OrderedDict[str, _Entry[T]]" = OrderedDict()
        self._lock = threading.RLock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self._disposed = False

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> Optional[T]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            if entry.expires_at <= self._clock():
                del self._data[key]
                return None
            return entry.value

    def set(self, key: str, value: T) -> None:
        with self._lock:
            if self._disposed:
                raise RuntimeError("Cache has been disposed")
            if key in self._data:
                del self._data[key]
            elif len(self._data) >= self._max_entries:
                oldest, _ = self._data.popitem(last=False)
                logger.debug("ttl_cache_capacity_eviction", extra={"cache_key": oldest})
            self._data[key] = _Entry(value=value, expires_at=self._clock() + self._ttl)

    def touch(self, key: str) -> bool:
        """Extend the expiry of a live entry."""

        value = self.get(key)
        if value is None:
            return False
        self.set(key, value)
        return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def has(self, key: str) -> bool:
        return self.get(key) is not None

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()

    def evict_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._data.items() if entry.expires_at <= now]
            for key in expired:
                del self._data[key]
        return len(expired)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._disposed:
                raise RuntimeError("Cache has been disposed")
            if self._sweeper is not None:
                return
            self._sweeper = threading.Thread(target=self._sweep, name="athrean-ttl-cache", daemon=True)
            self._sweeper.start()

    def _sweep(self) -> None:
        while not self._stop.wait(self._interval):
            removed = self.evict_expired()
            if removed:
                logger.debug("ttl_cache_swept", extra={"removed": removed})

    def dispose(self) -> None:
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=self._interval + 1.0)
        with self._lock:
            self._sweeper = None
            self._data.clear()
            self._disposed = True

    @property
    def disposed(self) -> bool:
        return self._disposed
