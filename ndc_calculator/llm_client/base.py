# ndc_calculator/llm_client/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict

from ndc_calculator.data_models import ParsedDirective


class LLMError(Exception):
    """Базовая ошибка LLM-клиента."""


class LLMRetryableError(LLMError):
    """Ошибки, при которых можно безопасно повторить запрос (5xx, 429, timeout)."""


class LLMClient(ABC):
    """
    Абстракция LLM-клиента для разбора SIG.

    Задачи:
    - принять текст инструкции;
    - сходить к LLM;
    - вернуть структурированный JSON: единица, доза, кратность, расход в сутки.

    Парсер зависит только от этого интерфейса, поэтому в тестах
    подставляется детерминированная заглушка.
    """

    @abstractmethod
    async def interpret_directive_raw(self, sig: str) -> Dict[str, Any]:
        """
        Вызов LLM и возврат «сырого» структурированного ответа (dict).

        Здесь должны обрабатываться:
        - ретраи;
        - таймауты;
        - маппинг HTTP/сетевых ошибок в LLMError/LLMRetryableError.
        """
        raise NotImplementedError

    @abstractmethod
    async def interpret_directive(self, sig: str) -> ParsedDirective:
        """
        Высокоуровневая обёртка над interpret_directive_raw:
        вызывает LLM и маппит ответ в ParsedDirective с method=AI.
        Некорректный ответ модели даёт LLMError.
        """
        raise NotImplementedError
