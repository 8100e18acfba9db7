# ndc_calculator/directive/parser.py
from __future__ import annotations

import logging
from typing import Optional

from ndc_calculator.config import LLMApiConfig, config
from ndc_calculator.data_models import ParsedDirective, ParseMethod
from ndc_calculator.directive.rules import parse_with_rules
from ndc_calculator.llm_client.base import LLMClient, LLMError
from ndc_calculator.llm_client.provider_client import ProviderLLMClient

logger = logging.getLogger(__name__)

PARSE_GUIDANCE = (
    "Unable to parse SIG. Use a quantity with a unit and a frequency, "
    "e.g. '1 tablet twice daily', '5 mL three times daily', '2 puffs every 6 hours'."
)


class DirectiveParser:
    """
    Разбор SIG в два шага.

    1) Правила (детерминированно, без сети) -> method=RULES.
    2) Только если правила не сработали и fallback включён: LLM -> method=AI.
    3) Иначе method=FAILED. Ошибки LLM не пробрасываются: для конвейера это
       просто неразобранная инструкция.
    """

    def __init__(self, interpreter: Optional[LLMClient] = None, enabled: Optional[bool] = None) -> None:
        self._interpreter = interpreter
        self._enabled = config.llm.enabled if enabled is None else enabled

    @property
    def fallback_available(self) -> bool:
        return self._enabled and self._interpreter is not None

    async def parse(self, sig: str) -> ParsedDirective:
        result = parse_with_rules(sig)
        if result is not None:
            logger.info("SIG parsed by rules (%s): [REDACTED]", result.sub_method)
            return result

        logger.warning("Rule parser failed for SIG: [REDACTED]")

        if not self.fallback_available:
            return ParsedDirective(
                method=ParseMethod.FAILED,
                reason="No rule matched and the language-model fallback is disabled",
            )

        try:
            result = await self._interpreter.interpret_directive(sig)
        except LLMError as exc:
            logger.warning("Language-model fallback failed: %s", exc)
            return ParsedDirective(
                method=ParseMethod.FAILED,
                reason=f"No rule matched and the language-model fallback failed: {exc}",
            )

        logger.info("SIG parsed by language-model fallback: [REDACTED]")
        return result


def create_directive_interpreter(llm_config: Optional[LLMApiConfig] = None) -> Optional[LLMClient]:
    """
    Фабрика LLM-клиента по конфигу. None, если fallback выключен
    или не задан ключ API (тогда работаем только на правилах).
    """
    llm_config = llm_config or config.llm
    if not llm_config.enabled:
        logger.info("Language-model fallback disabled by configuration")
        return None

    try:
        return ProviderLLMClient(llm_config)
    except LLMError as exc:
        logger.warning("Language-model fallback disabled: %s", exc)
        return None
