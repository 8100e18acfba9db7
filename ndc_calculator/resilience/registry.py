# ndc_calculator/resilience/registry.py
"""
Общие для процесса кэши и лимитеры, по одному на каждый внешний источник.

Создаются при первом обращении и живут до конца процесса, явного закрытия
не требуют. Клиенты получают их через конструктор, а сюда обращаются только
фабрики по умолчанию, поэтому в тестах можно подставить свои экземпляры.
"""
from __future__ import annotations

import threading
from typing import Any, Dict, Optional

from ndc_calculator.config import AppConfig, UpstreamConfig, config
from ndc_calculator.resilience.cache import ResilientCache
from ndc_calculator.resilience.rate_limiter import SlidingWindowRateLimiter

_lock = threading.Lock()
_caches: Dict[str, ResilientCache[Any]] = {}
_limiters: Dict[str, SlidingWindowRateLimiter] = {}


def get_cache(upstream: UpstreamConfig, app_config: Optional[AppConfig] = None) -> ResilientCache[Any]:
    app_config = app_config or config
    with _lock:
        cache = _caches.get(upstream.name)
        if cache is None:
            cache = ResilientCache(
                ttl_seconds=upstream.cache_ttl_seconds,
                max_size=app_config.cache.max_size,
                max_stale_seconds=app_config.cache.max_stale_seconds,
                name=upstream.name,
            )
            _caches[upstream.name] = cache
        return cache


def get_rate_limiter(upstream: UpstreamConfig) -> SlidingWindowRateLimiter:
    with _lock:
        limiter = _limiters.get(upstream.name)
        if limiter is None:
            limiter = SlidingWindowRateLimiter(
                limit=upstream.rate_limit,
                window_seconds=upstream.rate_window_seconds,
                name=upstream.name,
            )
            _limiters[upstream.name] = limiter
        return limiter


def reset() -> None:
    """Сбрасывает все синглтоны. Нужно только тестам."""
    with _lock:
        _caches.clear()
        _limiters.clear()
