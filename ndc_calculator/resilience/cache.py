# ndc_calculator/resilience/cache.py
from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_STALE_SECONDS = 48 * 60 * 60


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    value: T
    inserted_at: float
    expires_at: float


@dataclass(frozen=True)
class CacheHit(Generic[T]):
    value: T
    fresh: bool
    age: float  # секунды с момента записи


class ResilientCache(Generic[T]):
    """
    LRU-кэш с TTL на запись и режимом чтения устаревших данных.

    Жизненный цикл записи:
    - fresh: возраст <= ttl, отдаётся обычным get();
    - stale: ttl < возраст <= max_stale, отдаётся только через get_stale()
      (деградированный режим, когда источник недоступен);
    - evicted: старше max_stale или вытеснена по LRU.

    Значения не копируются, поэтому кладём сюда только неизменяемые объекты
    (frozen dataclass, tuple, str).
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_size: int = 1000,
        max_stale_seconds: float = DEFAULT_MAX_STALE_SECONDS,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.max_size = max_size
        self.max_stale_seconds = max(max_stale_seconds, ttl_seconds)
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry[T]]" = OrderedDict()
        self._lock = threading.Lock()
        self._stats: Dict[str, int] = {
            "hits": 0,
            "stale_hits": 0,
            "misses": 0,
            "sets": 0,
            "evictions": 0,
        }

    def get(self, key: str) -> Optional[CacheHit[T]]:
        """
        Только свежие данные. Устаревшая запись не удаляется:
        она ещё может пригодиться для get_stale().
        """
        with self._lock:
            entry = self._touch(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            now = self._clock()
            if now > entry.expires_at:
                self._stats["misses"] += 1
                return None

            self._stats["hits"] += 1
            return CacheHit(value=entry.value, fresh=True, age=now - entry.inserted_at)

    def get_stale(self, key: str) -> Optional[CacheHit[T]]:
        """
        Свежие или устаревшие данные не старше max_stale_seconds.
        Используется только в деградированном режиме.
        """
        with self._lock:
            entry = self._touch(key)
            if entry is None:
                self._stats["misses"] += 1
                return None

            now = self._clock()
            age = now - entry.inserted_at
            if age > self.max_stale_seconds:
                del self._entries[key]
                self._stats["evictions"] += 1
                self._stats["misses"] += 1
                return None

            fresh = now <= entry.expires_at
            self._stats["hits" if fresh else "stale_hits"] += 1
            return CacheHit(value=entry.value, fresh=fresh, age=age)

    def set(self, key: str, value: T) -> None:
        now = self._clock()
        entry = CacheEntry(value=value, inserted_at=now, expires_at=now + self.ttl_seconds)
        with self._lock:
            if key in self._entries:
                del self._entries[key]
            self._entries[key] = entry
            self._stats["sets"] += 1
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug("Cache %s evicted LRU entry", self.name)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {**self._stats, "size": len(self._entries), "max_size": self.max_size}

    def _touch(self, key: str) -> Optional[CacheEntry[T]]:
        # Поднимаем запись в конец очереди LRU
        entry = self._entries.get(key)
        if entry is not None:
            self._entries.move_to_end(key)
        return entry
