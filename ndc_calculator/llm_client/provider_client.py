# ndc_calculator/llm_client/provider_client.py
from __future__ import annotations

import asyncio
import json
import logging
import os
from typing import Any, Dict, Optional

import httpx

from ndc_calculator.calculator.units import normalize_unit
from ndc_calculator.config import LLMApiConfig, config
from ndc_calculator.data_models import ParsedDirective, ParseMethod
from ndc_calculator.directive.prompt_builder import PROMPT_SYSTEM_INSTRUCTIONS, PromptBuilder
from ndc_calculator.llm_client.base import LLMClient, LLMError, LLMRetryableError

logger = logging.getLogger(__name__)


class ProviderLLMClient(LLMClient):
    """
    Реализация LLMClient через HTTP API провайдера (OpenAI-совместимый chat completions).
    """

    def __init__(self, llm_config: Optional[LLMApiConfig] = None) -> None:
        llm_config = llm_config or config.llm
        self._base_url = llm_config.base_url
        self._api_key = os.getenv(llm_config.api_key_env_var, "")
        if not self._api_key:
            # Важно: не падаем молча, а даём явную ошибку конфигурации
            raise LLMError(f"Missing API key in env var {llm_config.api_key_env_var}")

        self._model = llm_config.model
        self._endpoint = llm_config.endpoint
        self._timeout = llm_config.timeout_seconds
        self._retry_conf = llm_config.retry
        self._prompt_builder = PromptBuilder()

    async def _post_with_retries(self, endpoint: str, json: Dict[str, Any]) -> httpx.Response:
        """
        Базовый метод отправки POST-запросов с ретраями по 5xx/429/timeout.
        """
        url = f"{self._base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        attempt = 0
        last_exc: Exception | None = None
        last_status: int | None = None

        while attempt <= self._retry_conf.max_retries:
            try:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await asyncio.wait_for(
                        client.post(url, json=json, headers=self._build_headers()),
                        timeout=self._timeout,
                    )

                last_status = response.status_code

                # Повторяем при 5xx/429, если разрешено конфигом
                if response.status_code >= 500 and self._retry_conf.retry_on_5xx:
                    attempt += 1
                    if attempt > self._retry_conf.max_retries:
                        break
                    logger.warning("LLM API returned HTTP %s, retrying (attempt %s)", response.status_code, attempt)
                    await self._sleep_backoff(attempt)
                    continue

                if response.status_code == 429 and self._retry_conf.retry_on_429:
                    attempt += 1
                    if attempt > self._retry_conf.max_retries:
                        break
                    logger.warning("LLM API rate limited, retrying (attempt %s)", attempt)
                    await self._sleep_backoff(attempt)
                    continue

                return response

            except (httpx.TimeoutException, httpx.ConnectError, asyncio.TimeoutError) as exc:
                last_exc = exc
                if not self._retry_conf.retry_on_timeout:
                    break
                attempt += 1
                if attempt > self._retry_conf.max_retries:
                    break
                logger.warning("LLM API request failed (%s), retrying (attempt %s)", type(exc).__name__, attempt)
                await self._sleep_backoff(attempt)

        # Если сюда дошли, ретраи не помогли
        if last_exc is not None and last_status is None:
            raise LLMRetryableError(f"Request to {url} failed after retries") from last_exc

        raise LLMRetryableError(f"Request to {url} failed with status {last_status}")

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = min(
            self._retry_conf.backoff_base_seconds * (2 ** (attempt - 1)),
            self._retry_conf.backoff_max_seconds,
        )
        await asyncio.sleep(delay)

    def _build_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }

    async def interpret_directive_raw(self, sig: str) -> Dict[str, Any]:
        user_prompt = self._prompt_builder.build_user_prompt(sig)

        messages = [
            {"role": "system", "content": PROMPT_SYSTEM_INSTRUCTIONS},
            {"role": "user", "content": user_prompt},
        ]

        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": 0,
            "stream": False,
            "response_format": {"type": "json_object"},
        }

        response = await self._post_with_retries(
            endpoint=self._endpoint,
            json=payload,
        )

        if response.status_code >= 400:
            raise LLMError(f"LLM API returned HTTP {response.status_code}: {response.text}")

        try:
            data = response.json()
        except ValueError as exc:
            raise LLMError("Failed to parse LLM response as JSON") from exc

        try:
            content = data["choices"][0]["message"]["content"]
            parsed = json.loads(content)
        except (KeyError, IndexError, TypeError, json.JSONDecodeError) as exc:
            raise LLMError("Failed to extract JSON from LLM response") from exc

        if not isinstance(parsed, dict):
            raise LLMError("LLM response is not a JSON object")

        return parsed

    async def interpret_directive(self, sig: str) -> ParsedDirective:
        """
        1) Вызывает LLM и получает сырой JSON-ответ в виде dict.
        2) Проверяет единицу и числа: ответ модели не доверенный.
        3) Собирает ParsedDirective с method=AI.
        """
        raw: Dict[str, Any] = await self.interpret_directive_raw(sig)

        if raw.get("parsed") is False:
            raise LLMError(f"LLM could not interpret directive: {raw.get('reason') or 'no reason given'}")

        dose_unit = normalize_unit(raw.get("dose_unit"))
        if dose_unit is None:
            raise LLMError(f"LLM returned unsupported unit: {raw.get('dose_unit')!r}")

        quantity_per_dose = _to_positive_float(raw.get("quantity_per_dose"))
        frequency_per_day = _to_positive_float(raw.get("frequency_per_day"))
        per_day = _to_positive_float(raw.get("per_day"))

        if per_day is None and quantity_per_dose is not None and frequency_per_day is not None:
            per_day = quantity_per_dose * frequency_per_day
        if per_day is None:
            raise LLMError("LLM response has no usable per_day value")

        return ParsedDirective(
            method=ParseMethod.AI,
            dose_unit=dose_unit,
            per_day=per_day,
            quantity_per_dose=quantity_per_dose,
            frequency_per_day=frequency_per_day,
            sub_method="llm",
            reason=str(raw.get("reason") or ""),
        )


def _to_positive_float(value: Any) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number <= 0 or number != number:
        return None
    return number
