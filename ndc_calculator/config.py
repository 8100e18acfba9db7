# ndc_calculator/config.py
from dataclasses import dataclass, field
import os
from typing import Optional

from dotenv import load_dotenv

# Загружаем .env
load_dotenv()


def _env_flag(name: str, default: bool = True) -> bool:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in ("false", "0", "no", "off")


@dataclass
class RetryConfig:
    # Один повтор на вызов: 1 с, потом потолок 2 с
    max_retries: int = 1
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 2.0
    retry_on_5xx: bool = True
    retry_on_429: bool = True
    retry_on_timeout: bool = True


@dataclass
class UpstreamConfig:
    """
    Настройки одного внешнего источника данных.

    TTL и лимит у каждого источника свои: RxNorm меняется чаще и разрешает
    больше запросов, openFDA более строгий и медленнее меняется.
    """
    name: str
    base_url: str
    cache_ttl_seconds: float
    rate_limit: int
    rate_window_seconds: float = 1.0
    timeout_seconds: float = 5.0
    api_key: Optional[str] = None
    retry: RetryConfig = field(default_factory=RetryConfig)


def _rxnorm_config() -> UpstreamConfig:
    return UpstreamConfig(
        name="rxnorm",
        base_url=os.getenv("RXNORM_API_URL", "https://rxnav.nlm.nih.gov/REST"),
        cache_ttl_seconds=60 * 60,  # 1 час
        rate_limit=10,  # 10 req/sec
    )


def _fda_config() -> UpstreamConfig:
    return UpstreamConfig(
        name="fda",
        base_url=os.getenv("FDA_API_URL", "https://api.fda.gov/drug/ndc.json"),
        cache_ttl_seconds=24 * 60 * 60,  # 24 часа
        rate_limit=3,  # 3 req/sec
        api_key=os.getenv("FDA_API_KEY") or None,
    )


@dataclass
class CacheConfig:
    max_size: int = 1000
    # Дольше этого устаревшие записи не отдаём даже в деградированном режиме
    max_stale_seconds: float = 48 * 60 * 60


@dataclass
class LLMApiConfig:
    """
    Конфиг LLM-провайдера для разбора SIG, когда правила не сработали.
    Сейчас настроен на OpenAI-совместимый API, поле provider оставлено для других вариантов.
    """
    provider: str = "openai"
    base_url: str = field(default_factory=lambda: os.getenv("LLM_API_BASE_URL", "https://api.openai.com/v1"))
    api_key_env_var: str = "OPENAI_API_KEY"
    timeout_seconds: float = 5.0
    retry: RetryConfig = field(default_factory=RetryConfig)
    model: str = "gpt-4o-mini"
    endpoint: str = "/chat/completions"
    enabled: bool = field(default_factory=lambda: _env_flag("USE_AI_FALLBACK", True))


@dataclass
class SelectionConfig:
    max_overfill_percent: float = 10.0
    max_packs: int = 3
    max_alternates: int = 10
    # Неактивный NDC можно выбрать, только если ни один активный не подошёл
    allow_inactive_fallback: bool = True


@dataclass
class PipelineConfig:
    total_timeout_seconds: float = 10.0
    # Сколько NDC из RxNorm, которых нет в выдаче FDA, проверяем поштучно
    max_code_verifications: int = 20
    dependency_retry_after_seconds: float = 2.0


@dataclass
class AppConfig:
    rxnorm: UpstreamConfig = field(default_factory=_rxnorm_config)
    fda: UpstreamConfig = field(default_factory=_fda_config)
    cache: CacheConfig = field(default_factory=CacheConfig)
    llm: LLMApiConfig = field(default_factory=LLMApiConfig)
    selection: SelectionConfig = field(default_factory=SelectionConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)


# Глобальный объект конфига, который можно импортировать как `from ndc_calculator.config import config`
config = AppConfig()
