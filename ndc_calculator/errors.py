# ndc_calculator/errors.py
from __future__ import annotations

from typing import Any, Dict, List, Optional


class AppError(Exception):
    """
    Базовая ошибка конвейера.

    Каждая ошибка несёт машиночитаемый код, HTTP-статус для внешнего слоя
    и человекочитаемое пояснение (detail). Для ошибок зависимостей ещё и
    подсказку, через сколько секунд повторить запрос.
    """

    error_code: str = "internal_error"
    status_code: int = 500

    def __init__(
        self,
        message: str,
        detail: Optional[str] = None,
        retry_after_seconds: Optional[float] = None,
        field_errors: Optional[List[Dict[str, str]]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail
        self.retry_after_seconds = retry_after_seconds
        self.field_errors = field_errors

    def to_error_response(self) -> Dict[str, Any]:
        response: Dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.detail:
            response["detail"] = self.detail
        if self.retry_after_seconds:
            response["retry_after_ms"] = int(round(self.retry_after_seconds * 1000))
        if self.field_errors:
            response["field_errors"] = self.field_errors
        return response


class ValidationError(AppError):
    """Некорректный вход (400). Обычно отсекается до ядра."""

    error_code = "validation_error"
    status_code = 400


class ParseError(AppError):
    """SIG не разобран ни правилами, ни LLM (422). Повтор не поможет."""

    error_code = "parse_error"
    status_code = 422


class DependencyError(AppError):
    """Внешние источники недоступны или исчерпан общий бюджет времени (424)."""

    error_code = "dependency_failure"
    status_code = 424


class RateLimitError(AppError):
    """Локальный лимит запросов к источнику исчерпан (429)."""

    error_code = "rate_limit_exceeded"
    status_code = 429


class InternalError(AppError):
    """Неожиданный сбой в расчёте или подборе упаковки (500). Всегда баг."""

    error_code = "internal_error"
    status_code = 500


def error_to_response(error: BaseException) -> Dict[str, Any]:
    """
    Переводит любое исключение в формат ответа с ошибкой.
    """
    if isinstance(error, AppError):
        return error.to_error_response()

    return {
        "error": str(error) or "Internal Server Error",
        "error_code": InternalError.error_code,
        "detail": "An unexpected error occurred",
    }
