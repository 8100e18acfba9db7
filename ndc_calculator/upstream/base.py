# ndc_calculator/upstream/base.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, Optional, TypeVar

import httpx

from ndc_calculator.config import AppConfig, UpstreamConfig, config
from ndc_calculator.data_models import RequestContext
from ndc_calculator.errors import DependencyError, RateLimitError
from ndc_calculator.resilience import registry
from ndc_calculator.resilience.cache import ResilientCache
from ndc_calculator.resilience.rate_limiter import SlidingWindowRateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class UpstreamError(Exception):
    """Базовая ошибка обращения к внешнему источнику."""


class UpstreamRetryableError(UpstreamError):
    """5xx, 429 или таймаут, не прошедшие и после повторов."""


class UpstreamClient:
    """
    Общая дисциплина обращения к внешнему источнику данных:

    кэш -> лимитер -> HTTP-запрос с таймаутом -> один повтор с backoff на 5xx/таймаут;
    4xx кэшируем как отрицательный результат; если источник недоступен,
    пробуем отдать устаревшую запись из кэша (деградированный режим),
    иначе поднимаем DependencyError / RateLimitError.
    """

    source_label = "Upstream"

    def __init__(
        self,
        upstream: UpstreamConfig,
        cache: Optional[ResilientCache[Any]] = None,
        rate_limiter: Optional[SlidingWindowRateLimiter] = None,
        app_config: Optional[AppConfig] = None,
    ) -> None:
        app_config = app_config or config
        self._upstream = upstream
        self._base_url = upstream.base_url
        self._timeout = upstream.timeout_seconds
        self._retry_conf = upstream.retry
        self._cache = cache if cache is not None else registry.get_cache(upstream, app_config)
        self._rate_limiter = rate_limiter if rate_limiter is not None else registry.get_rate_limiter(upstream)
        self._dependency_retry_after = app_config.pipeline.dependency_retry_after_seconds

    @property
    def cache(self) -> ResilientCache[Any]:
        return self._cache

    @property
    def rate_limiter(self) -> SlidingWindowRateLimiter:
        return self._rate_limiter

    def _build_url(self, path: str) -> str:
        if not path:
            return self._base_url
        return f"{self._base_url.rstrip('/')}/{path.lstrip('/')}"

    async def _get_with_retries(self, path: str, params: Optional[Dict[str, Any]] = None) -> httpx.Response:
        """
        GET с повторами по 5xx/429/таймауту. 4xx возвращаем как есть, без повторов.
        """
        url = self._build_url(path)
        attempt = 0
        last_exc: Exception | None = None
        last_status: int | None = None

        while attempt <= self._retry_conf.max_retries:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    # Жёсткая граница на весь вызов, а не только на connect/read
                    response = await asyncio.wait_for(
                        client.get(url, params=params, headers={"Accept": "application/json"}),
                        timeout=self._timeout,
                    )

                last_status = response.status_code
                retryable = (response.status_code >= 500 and self._retry_conf.retry_on_5xx) or (
                    response.status_code == 429 and self._retry_conf.retry_on_429
                )
                if not retryable:
                    return response

                attempt += 1
                if attempt > self._retry_conf.max_retries:
                    break
                logger.warning(
                    "%s returned HTTP %s, retrying (attempt %s)", self.source_label, response.status_code, attempt
                )
                await self._sleep_backoff(attempt)

            except (httpx.TransportError, asyncio.TimeoutError) as exc:
                last_exc = exc
                if not self._retry_conf.retry_on_timeout:
                    break
                attempt += 1
                if attempt > self._retry_conf.max_retries:
                    break
                logger.warning("%s request failed (%s), retrying (attempt %s)", self.source_label, exc, attempt)
                await self._sleep_backoff(attempt)

        if last_exc is not None and last_status is None:
            raise UpstreamRetryableError(f"Request to {url} failed after retries") from last_exc

        raise UpstreamRetryableError(f"Request to {url} failed with status {last_status}")

    async def _sleep_backoff(self, attempt: int) -> None:
        # Экспоненциальный backoff: base, 2*base, ... но не больше max
        delay = min(
            self._retry_conf.backoff_base_seconds * (2 ** (attempt - 1)),
            self._retry_conf.backoff_max_seconds,
        )
        await asyncio.sleep(delay)

    def _cache_key(self, operation: str, param: str) -> str:
        return f"{self._upstream.name}:{operation}:{param.lower().strip()}"

    async def _cached_call(
        self,
        operation: str,
        param: str,
        path: str,
        params: Optional[Dict[str, Any]],
        parse: Callable[[Any], T],
        negative: T,
        ctx: Optional[RequestContext] = None,
    ) -> T:
        """
        Одна операция к источнику с полным набором защит.

        parse получает распарсенный JSON и возвращает неизменяемое значение для кэша.
        negative возвращается (и кэшируется) на 4xx.
        """
        key = self._cache_key(operation, param)

        hit = self._cache.get(key)
        if hit is not None:
            logger.info("%s cache hit: %s", self.source_label, operation)
            return hit.value

        logger.info("%s cache miss: %s", self.source_label, operation)

        if not self._rate_limiter.try_acquire():
            retry_after = self._rate_limiter.retry_after()
            logger.warning("%s rate limit exceeded, retry after %.3fs", self.source_label, retry_after)
            stale = self._serve_stale(key, operation, ctx)
            if stale is not None:
                return stale.value
            raise RateLimitError(
                f"{self.source_label} API rate limit exceeded",
                detail=f"Local request budget for {self.source_label} exhausted",
                retry_after_seconds=retry_after,
            )

        try:
            response = await self._get_with_retries(path, params)
        except UpstreamRetryableError as exc:
            logger.error("%s request failed after retries: %s", self.source_label, exc)
            stale = self._serve_stale(key, operation, ctx)
            if stale is not None:
                return stale.value
            raise DependencyError(
                f"Failed to query {self.source_label} API",
                detail=f"{self.source_label} API error: {exc}",
                retry_after_seconds=self._dependency_retry_after,
            ) from exc

        if 400 <= response.status_code < 500:
            # Повторять бессмысленно, кэшируем отрицательный результат
            logger.warning("%s API returned HTTP %s for %s", self.source_label, response.status_code, operation)
            self._cache.set(key, negative)
            return negative

        try:
            value = parse(response.json())
        except (ValueError, TypeError, KeyError, AttributeError) as exc:
            logger.error("%s returned malformed payload for %s", self.source_label, operation)
            stale = self._serve_stale(key, operation, ctx)
            if stale is not None:
                return stale.value
            raise DependencyError(
                f"Failed to query {self.source_label} API",
                detail=f"{self.source_label} API returned a malformed payload",
                retry_after_seconds=self._dependency_retry_after,
            ) from exc

        self._cache.set(key, value)
        logger.info("%s API call successful: %s", self.source_label, operation)
        return value

    def _serve_stale(self, key: str, operation: str, ctx: Optional[RequestContext]):
        hit = self._cache.get_stale(key)
        if hit is None:
            return None

        age_minutes = int(hit.age // 60)
        logger.warning(
            "%s unavailable, serving stale cache for %s (age %s min)", self.source_label, operation, age_minutes
        )
        if ctx is not None:
            ctx.add_note(f"{self.source_label} unavailable - using cached data ({age_minutes} min old)")
        return hit
