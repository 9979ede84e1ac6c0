import pytest

from analyzer_llm.core.config import Settings


class FakeClock:
    """Manually advanced millisecond clock for the rate limiter."""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        openai_api_key="sk-test-fake-key",
        claude_api_key="",
        llm_provider="openai",
        llm_request_timeout_seconds=30.0,
        openai_default_model="gpt-4o-mini",
        claude_default_model="claude-sonnet-4-5",
        openai_fallback_models=["gpt-4o-mini", "gpt-4o"],
        claude_fallback_models=["claude-sonnet-4-5"],
    )
