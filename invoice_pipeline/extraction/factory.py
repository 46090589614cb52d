"""Factory for creating text-model providers based on configuration.

Implements Factory Pattern for provider selection with registry pattern for extensibility.

Based on:
- Factory Pattern: https://refactoring.guru/design-patterns/factory-method/python
- Registry Pattern: Python Cookbook 3rd Edition, Recipe 9.22
"""

import logging

from invoice_pipeline.extraction.base import TextModelProvider
from invoice_pipeline.extraction.ollama_provider import OllamaTextProvider
from invoice_pipeline.extraction.openai_provider import OpenAITextProvider
from invoice_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of available text-model providers.

    Supports runtime registration of new providers.
    """

    _providers: dict[str, type[TextModelProvider]] = {
        "ollama": OllamaTextProvider,
        "openai": OpenAITextProvider,
    }

    @classmethod
    def register(cls, name: str, provider_class: type[TextModelProvider]) -> None:
        """Register a new provider.

        Args:
            name: Provider identifier (must match Settings.text_model_provider)
            provider_class: Provider class implementing TextModelProvider interface
        """
        cls._providers[name] = provider_class
        logger.info(f"Registered text model provider: {name}")

    @classmethod
    def get_provider_class(cls, name: str) -> type[TextModelProvider]:
        """Get provider class by name.

        Raises:
            ValueError: If provider not found in registry
        """
        if name not in cls._providers:
            available = ", ".join(cls._providers.keys())
            raise ValueError(
                f"Unknown text model provider: '{name}'. Available providers: {available}"
            )
        return cls._providers[name]

    @classmethod
    def list_providers(cls) -> list[str]:
        return list(cls._providers.keys())


def create_text_model_provider(settings: Settings) -> TextModelProvider:
    """Instantiate the provider named by settings.text_model_provider.

    Availability is probed lazily by the callers (it needs the event loop).

    Raises:
        ValueError: If configured provider is unknown
    """
    provider_name = settings.text_model_provider
    provider_class = ProviderRegistry.get_provider_class(provider_name)
    provider = provider_class(settings)
    logger.info(f"Created text model provider: {provider_name}")
    return provider
