"""Failure taxonomy for the provider layer.

  - ConfigurationError: missing credential or unknown provider (fatal)
  - TransportError: network/HTTP/vendor failure (retryable)
  - ParseError: call succeeded, no usable JSON in the content
  - RateLimitDeniedError: local refusal before any network attempt
  - AllModelsFailedError / NoModelsAttemptedError: model fallback outcomes
"""

from __future__ import annotations


class LlmError(Exception):
    """Base class for all provider-layer failures."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class ConfigurationError(LlmError):
    """Raised when a provider is used without a credential, or is unknown."""


class TransportError(LlmError):
    """Raised when the vendor call fails on the wire or with a non-2xx status."""

    def __init__(
        self,
        message: str,
        provider: str = "",
        status_code: int = 0,
        error_code: str = "",
    ):
        super().__init__(message, provider=provider)
        self.status_code = status_code
        self.error_code = error_code


class ParseError(LlmError):
    """Raised when the call succeeded but no JSON could be extracted."""

    def __init__(self, message: str, provider: str = "", content: str = ""):
        super().__init__(message, provider=provider)
        self.content = content


class RateLimitDeniedError(LlmError):
    """Raised by RateLimiter.check when the window for a key is full."""

    def __init__(self, key: str):
        super().__init__(f"Rate limit reached for {key}", provider=key)
        self.key = key


class NoModelsAttemptedError(LlmError):
    """Raised by model fallback when the model list is empty."""


class AllModelsFailedError(LlmError):
    """Raised when every model in a fallback sequence failed.

    Only the last model's error is carried; earlier failures are logged.
    """

    def __init__(self, last_model: str, last_error: BaseException, provider: str = ""):
        super().__init__(
            f"All {provider or 'LLM'} models failed. Last error ({last_model}): {last_error}",
            provider=provider,
        )
        self.last_model = last_model
        self.last_error = last_error
