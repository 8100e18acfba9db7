# tests/conftest.py
import pytest

from ndc_calculator.config import AppConfig, RetryConfig
from ndc_calculator.resilience import registry


class FakeClock:
    """Ручные часы для TTL и окна лимитера."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def fast_retry() -> RetryConfig:
    return RetryConfig(max_retries=1, backoff_base_seconds=0.0, backoff_max_seconds=0.0)


@pytest.fixture(autouse=True)
def reset_registry():
    registry.reset()
    yield
    registry.reset()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def app_config() -> AppConfig:
    cfg = AppConfig()
    cfg.rxnorm.base_url = "https://rxnav.test/REST"
    cfg.rxnorm.retry = fast_retry()
    cfg.fda.base_url = "https://fda.test/drug/ndc.json"
    cfg.fda.api_key = None
    cfg.fda.retry = fast_retry()
    cfg.llm.base_url = "https://llm.test/v1"
    cfg.llm.retry = fast_retry()
    return cfg
