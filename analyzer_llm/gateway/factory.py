"""Provider Factory — resolves and caches provider instances from settings."""

from __future__ import annotations

import logging

from analyzer_llm.core.config import Settings, settings as default_settings
from analyzer_llm.gateway.errors import ConfigurationError
from analyzer_llm.gateway.providers import BaseLlmProvider, create_provider
from analyzer_llm.gateway.types import ProviderName

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Creates one provider per vendor on first use and reuses it.

    Usage:
        factory = ProviderFactory()
        provider = factory.get_current_provider()
        if provider.is_configured():
            response = await provider.send_request(request)
    """

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or default_settings
        self._providers: dict[ProviderName, BaseLlmProvider] = {}

    def get_provider(self, name: ProviderName | str) -> BaseLlmProvider:
        """Get (or create) the provider instance for *name*."""
        try:
            provider_name = ProviderName(name)
        except ValueError:
            raise ConfigurationError(f"Unknown provider: {name}", provider=str(name)) from None

        if provider_name not in self._providers:
            self._providers[provider_name] = create_provider(
                provider_name,
                api_key=self.settings.api_key_for(provider_name),
                timeout=self.settings.llm_request_timeout_seconds,
                default_model=self.settings.default_model_for(provider_name),
            )
            logger.debug("Created %s provider", provider_name.value)
        return self._providers[provider_name]

    def get_current_provider(self) -> BaseLlmProvider:
        """The provider selected by the LLM_PROVIDER setting."""
        return self.get_provider(self.settings.llm_provider)

    def is_provider_configured(self, name: ProviderName | str) -> bool:
        return self.get_provider(name).is_configured()

    def get_configured_providers(self) -> list[ProviderName]:
        """All vendors that have a credential, in registry order."""
        return [name for name in ProviderName if self.is_provider_configured(name)]
