"""Abstract base class for text-generation model providers.

The AI text extractor and the supplier learning manager only need "send a
prompt, get text back". Providers hide the transport (Ollama HTTP, OpenAI
SDK) behind that contract and share the retry policy.

Based on Strategy Pattern:
https://refactoring.guru/design-patterns/strategy/python
"""

import logging
from abc import ABC, abstractmethod

import httpx

from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import ModelTransportError
from invoice_pipeline.shared.retry import is_transient_http_error, linear_retrying

logger = logging.getLogger(__name__)


class TextModelProvider(ABC):
    """Abstract base class for text-generation providers.

    Example implementations:
    - OllamaTextProvider: self-hosted models over the Ollama HTTP API
    - OpenAITextProvider: OpenAI chat completions
    """

    # Every error the transport can raise; all of them become ModelTransportError
    provider_errors: tuple[type[BaseException], ...] = (httpx.HTTPError,)

    def __init__(self, settings: Settings) -> None:
        """Initialize provider with settings.

        Args:
            settings: Application settings
        """
        self.settings = settings

    def is_transient(self, error: BaseException) -> bool:
        """Whether a failed request is worth another attempt."""
        return is_transient_http_error(error)

    async def generate(self, prompt: str, max_tokens: int | None = None) -> str:
        """Send a prompt and return the raw completion text.

        Transient transport failures are retried with linear backoff
        (attempt N waits N x model_retry_backoff_seconds). Client errors
        such as a bad key or unknown model fail without retrying.

        Args:
            prompt: Full instruction text
            max_tokens: Override for the configured output limit

        Returns:
            Completion text as returned by the model

        Raises:
            ModelTransportError: When the request failed for good
        """
        try:
            async for attempt in linear_retrying(self.settings, self.is_transient):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.warning(f"{self.provider_name} retry attempt {number}")
                    return await self._complete(
                        prompt, max_tokens or self.settings.text_model_max_tokens
                    )
        except self.provider_errors as e:
            raise ModelTransportError(f"{self.provider_name} request failed: {e}") from e
        raise ModelTransportError(f"{self.provider_name} returned no response")

    @abstractmethod
    async def _complete(self, prompt: str, max_tokens: int) -> str:
        """Perform one completion request (no retries).

        Raises:
            One of provider_errors on transport failure
        """
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Check if this provider is reachable and configured.

        Returns:
            True if provider can be used, False otherwise
        """
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier (e.g., 'ollama', 'openai')
        """
        pass
