# ndc_calculator/resilience/rate_limiter.py
from __future__ import annotations

import threading
import time
from collections import deque
from typing import Callable, Deque


class SlidingWindowRateLimiter:
    """
    Ограничитель запросов со скользящим окном, локальный для процесса.

    Хранит отметки времени допущенных вызовов, выбрасывает те, что старше окна,
    и пропускает запрос, если в окне меньше limit вызовов.
    Не распределённый: лимит считается на один экземпляр процесса.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: float = 1.0,
        name: str = "limiter",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if limit <= 0:
            raise ValueError("limit must be positive")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.name = name
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        self._admitted: Deque[float] = deque()
        self._lock = threading.Lock()

    def try_acquire(self) -> bool:
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._admitted) >= self.limit:
                return False
            self._admitted.append(now)
            return True

    def retry_after(self) -> float:
        """
        Через сколько секунд освободится место в окне (0, если уже свободно).
        """
        with self._lock:
            now = self._clock()
            self._evict(now)
            if len(self._admitted) < self.limit:
                return 0.0
            oldest = self._admitted[0]
            return max(0.0, self.window_seconds - (now - oldest))

    def _evict(self, now: float) -> None:
        while self._admitted and now - self._admitted[0] >= self.window_seconds:
            self._admitted.popleft()
