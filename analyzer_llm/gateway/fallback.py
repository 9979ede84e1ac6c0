"""Model-Fallback Sequencer — try a list of models until one call succeeds.

All request fields except the model are held fixed. Attempts are strictly
sequential. Only the last model's error reaches the caller (inside
AllModelsFailedError); earlier failures are visible in the logs only.
"""

from __future__ import annotations

import logging

from analyzer_llm.core.config import Settings, settings as default_settings
from analyzer_llm.gateway.errors import AllModelsFailedError, NoModelsAttemptedError
from analyzer_llm.gateway.providers import BaseLlmProvider
from analyzer_llm.gateway.retry import with_retry
from analyzer_llm.gateway.types import LlmRequest, LlmResponse, RetryPolicy

logger = logging.getLogger(__name__)


async def send_with_fallback(
    provider: BaseLlmProvider,
    request: LlmRequest,
    models: list[str],
    *,
    retry_policy: RetryPolicy | None = None,
) -> LlmResponse:
    """Call *provider* with each model in turn; return the first success.

    With *retry_policy*, every model gets its own retry budget before the
    sequencer moves on to the next one.

    Raises:
        NoModelsAttemptedError: *models* is empty (no call is made).
        AllModelsFailedError: every model failed; wraps the last error.
    """
    provider_name = provider.name.value
    if not models:
        raise NoModelsAttemptedError("No models given for fallback", provider=provider_name)

    last_error: Exception | None = None
    last_model = ""

    for model in models:
        model_request = request.with_model(model)
        logger.info("Trying %s model: %s", provider_name, model, extra={"provider": provider_name, "model": model})
        try:
            if retry_policy is None:
                response = await provider.send_request(model_request)
            else:
                response = await with_retry(
                    lambda req=model_request: provider.send_request(req),
                    retry_policy,
                )
        except Exception as e:
            logger.warning(
                "%s model %s failed: %s",
                provider_name,
                model,
                e,
                extra={"provider": provider_name, "model": model},
            )
            last_error = e
            last_model = model
            continue

        logger.info("Successfully used %s model: %s", provider_name, model)
        return response

    raise AllModelsFailedError(last_model, last_error, provider=provider_name) from last_error


class ModelFallbackSequencer:
    """Reusable fallback configuration for one provider.

    Usage:
        sequencer = ModelFallbackSequencer(provider, ["gpt-5.1", "gpt-4o"])
        response = await sequencer.send(request)
    """

    def __init__(
        self,
        provider: BaseLlmProvider,
        models: list[str] | None = None,
        retry_policy: RetryPolicy | None = None,
        settings: Settings | None = None,
    ):
        """
        Args:
            models: Models to try in order. Defaults to the provider's
                fallback list from *settings*.
            settings: Settings to read defaults from (module settings if None).
        """
        self.provider = provider
        self.settings = settings or default_settings
        if models is None:
            models = self.settings.fallback_models_for(provider.name)
        self.models = list(models)
        self.retry_policy = retry_policy

    async def send(self, request: LlmRequest) -> LlmResponse:
        return await send_with_fallback(
            self.provider,
            request,
            self.models,
            retry_policy=self.retry_policy,
        )
