"""OpenAI-based text provider.

Cloud alternative to Ollama for line-item extraction and algorithm
generation. Requires OPENAI_API_KEY environment variable.

The SDK's own retries are disabled so the shared linear-backoff policy in
TextModelProvider.generate applies to connection, rate-limit and server
errors. Any other SDK error (bad key, unknown model) fails at once.
"""

import os

import openai
from openai import AsyncOpenAI

from invoice_pipeline.extraction.base import TextModelProvider
from invoice_pipeline.shared.config import Settings


class OpenAITextProvider(TextModelProvider):
    """Text provider using OpenAI chat completions."""

    provider_errors = (openai.OpenAIError,)
    retryable_errors = (
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
    )

    def __init__(self, settings: Settings) -> None:
        """Initialize OpenAI text provider.

        Args:
            settings: Application settings
        """
        super().__init__(settings)
        self._client: AsyncOpenAI | None = None

    def is_transient(self, error: BaseException) -> bool:
        return isinstance(error, self.retryable_errors)

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'openai'
        """
        return "openai"

    async def is_available(self) -> bool:
        """Check if OpenAI API key is configured.

        Returns:
            True if OPENAI_API_KEY environment variable is set
        """
        return os.getenv("OPENAI_API_KEY") is not None

    def _get_client(self) -> AsyncOpenAI:
        api_key = os.getenv("OPENAI_API_KEY")
        if self._client is None or self._client.api_key != api_key:
            self._client = AsyncOpenAI(
                api_key=api_key,
                timeout=self.settings.text_model_timeout_seconds,
                max_retries=0,
            )
        return self._client

    async def _complete(self, prompt: str, max_tokens: int) -> str:
        response = await self._get_client().chat.completions.create(
            model=self.settings.openai_model,
            messages=[
                {
                    "role": "system",
                    "content": "You extract structured data from supplier invoices.",
                },
                {"role": "user", "content": prompt},
            ],
            temperature=self.settings.text_model_temperature,
            max_tokens=max_tokens,
        )
        return response.choices[0].message.content or ""
