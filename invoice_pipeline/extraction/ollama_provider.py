"""Ollama-based text provider for self-hosted LLM inference.

Runs entirely on-premises; used for generic line-item extraction and for
generating learned supplier algorithms.

Requires Ollama server running on localhost:11434.
See: https://ollama.ai/
"""

import logging

import httpx

from invoice_pipeline.extraction.base import TextModelProvider
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import ModelFormatError

logger = logging.getLogger(__name__)


class OllamaTextProvider(TextModelProvider):
    """Text provider backed by the Ollama /api/generate endpoint."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """Initialize Ollama text provider.

        Args:
            settings: Application settings
            client: Optional pre-built HTTP client (tests inject a mock transport)
        """
        super().__init__(settings)
        self._base_url = settings.ollama_base_url.rstrip("/")
        self._model = settings.ollama_model
        self._client = client or httpx.AsyncClient(timeout=settings.text_model_timeout_seconds)

    @property
    def provider_name(self) -> str:
        """Get provider name for logging/metrics.

        Returns:
            Provider identifier 'ollama'
        """
        return "ollama"

    async def is_available(self) -> bool:
        """Check if Ollama server is running and the configured model is pulled.

        Returns:
            True if Ollama server responds and model is loaded
        """
        try:
            response = await self._client.get(
                f"{self._base_url}/api/tags",
                timeout=self.settings.availability_timeout_seconds,
            )
            if response.status_code != 200:
                return False
            models = response.json().get("models", [])
            model_names = [m.get("name", "").split(":")[0] for m in models]
            return self._model.split(":")[0] in model_names
        except (httpx.HTTPError, ValueError) as e:
            logger.info(f"Ollama not available: {e}")
            return False

    async def _complete(self, prompt: str, max_tokens: int) -> str:
        response = await self._client.post(
            f"{self._base_url}/api/generate",
            json={
                "model": self._model,
                "prompt": prompt,
                "stream": False,
                "options": {
                    "temperature": self.settings.text_model_temperature,
                    "top_p": 0.1,
                    "repeat_penalty": 1.1,
                    "num_predict": max_tokens,
                },
            },
        )
        response.raise_for_status()
        try:
            payload = response.json()
        except ValueError as e:
            raise ModelFormatError(f"Ollama returned non-JSON body: {e}") from e
        if not isinstance(payload, dict):
            raise ModelFormatError(f"Unexpected Ollama response: {type(payload).__name__}")
        return str(payload.get("response") or "")

    async def aclose(self) -> None:
        await self._client.aclose()
