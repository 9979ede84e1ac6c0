from pydantic_settings import BaseSettings, SettingsConfigDict

from analyzer_llm.gateway.types import ProviderName, RateLimitConfig, RetryPolicy


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Credentials (blank or whitespace-only → provider not configured)
    openai_api_key: str = ""
    claude_api_key: str = ""

    # Provider selection
    llm_provider: ProviderName = ProviderName.OPENAI
    llm_request_timeout_seconds: float = 300.0  # 5 minutes, long structured outputs

    # Models
    openai_default_model: str = "gpt-5.1"
    claude_default_model: str = "claude-sonnet-4-5"
    openai_fallback_models: list[str] = ["gpt-5.1", "gpt-5", "gpt-4o", "gpt-4-turbo"]
    claude_fallback_models: list[str] = ["claude-sonnet-4-5", "claude-haiku-4-5"]

    # Rate limits (requests per window, process-local)
    openai_rpm: int = 60
    claude_rpm: int = 50
    rate_limit_window_ms: int = 60_000

    # Retry
    retry_max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_backoff_factor: float = 2.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.0

    # Logging
    log_level: str = "INFO"
    log_json: bool = False  # set True in production for structured JSON logs

    def api_key_for(self, provider: ProviderName) -> str:
        if ProviderName(provider) == ProviderName.CLAUDE:
            return self.claude_api_key.strip()
        return self.openai_api_key.strip()

    def default_model_for(self, provider: ProviderName) -> str:
        if ProviderName(provider) == ProviderName.CLAUDE:
            return self.claude_default_model
        return self.openai_default_model

    def fallback_models_for(self, provider: ProviderName) -> list[str]:
        if ProviderName(provider) == ProviderName.CLAUDE:
            return list(self.claude_fallback_models)
        return list(self.openai_fallback_models)

    def rate_limit_configs(self) -> dict[str, RateLimitConfig]:
        return {
            ProviderName.OPENAI.value: RateLimitConfig(self.openai_rpm, self.rate_limit_window_ms),
            ProviderName.CLAUDE.value: RateLimitConfig(self.claude_rpm, self.rate_limit_window_ms),
        }

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.retry_max_retries,
            initial_delay=self.retry_initial_delay,
            backoff_factor=self.retry_backoff_factor,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
        )


settings = Settings()


def validate_settings(s: Settings | None = None) -> list[str]:
    """Return a list of configuration problems (empty when valid)."""
    s = s or settings
    errors: list[str] = []

    if s.llm_provider == ProviderName.OPENAI and not s.api_key_for(ProviderName.OPENAI):
        errors.append("OpenAI API key is required when using OpenAI provider")

    if s.llm_provider == ProviderName.CLAUDE and not s.api_key_for(ProviderName.CLAUDE):
        errors.append("Claude API key is required when using Claude provider")

    if s.llm_request_timeout_seconds <= 0:
        errors.append("LLM_REQUEST_TIMEOUT_SECONDS must be positive")

    if s.openai_rpm < 1 or s.claude_rpm < 1:
        errors.append("Rate limits must allow at least 1 request per window")

    if s.rate_limit_window_ms < 1000:
        errors.append("RATE_LIMIT_WINDOW_MS must be at least 1000ms")

    if s.retry_max_retries < 0:
        errors.append("RETRY_MAX_RETRIES must be >= 0")

    if s.retry_backoff_factor < 1:
        errors.append("RETRY_BACKOFF_FACTOR must be >= 1")

    return errors
