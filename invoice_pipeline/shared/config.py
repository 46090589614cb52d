"""Shared configuration management for the invoice pipeline.

Pydantic Settings reference:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Service configuration
    service_name: str = Field(
        default="invoice-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # OCR configuration
    ocr_provider: Literal["tesseract", "paddleocr"] = Field(
        default="tesseract",
        description="OCR provider: tesseract (CPU), paddleocr (GPU-accelerated)",
    )
    pdf_ocr_max_pages: int = Field(
        default=3,
        ge=1,
        description="Pages rendered and OCR'd when a PDF has no text layer",
    )
    pdf_render_scale: float = Field(
        default=2.0,
        gt=0,
        description="Zoom factor used when rasterising PDF pages for OCR",
    )

    # Text model configuration
    text_model_provider: Literal["ollama", "openai"] = Field(
        default="ollama",
        description="Text-generation provider: ollama (self-hosted LLM), openai (cloud API)",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="llama3.2:3b",
        description="Ollama model used for line-item extraction and algorithm generation",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used when text_model_provider='openai'",
    )
    text_model_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for text-model calls",
    )
    availability_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for provider availability probes",
    )
    text_model_max_retries: int = Field(
        default=2,
        ge=0,
        description="Retries after the first failed text-model call",
    )
    model_retry_backoff_seconds: float = Field(
        default=1.0,
        ge=0,
        description="Linear backoff step: retry N waits N times this value",
    )
    text_model_temperature: float = Field(
        default=0.01,
        ge=0,
        description="Sampling temperature for text-model calls",
    )
    text_model_max_tokens: int = Field(
        default=2000,
        gt=0,
        description="Upper bound on generated tokens per text-model call",
    )

    # Vision model configuration (Gemini)
    vision_enabled: bool = Field(
        default=True,
        description="Try vision extraction first when a Gemini API key is configured",
    )
    gemini_api_key: str = Field(
        default="",
        description="Gemini API key (use env var APP_GEMINI_API_KEY)",
    )
    gemini_model: str = Field(
        default="gemini-2.5-flash",
        description="Gemini model used for vision extraction",
    )
    gemini_base_url: str = Field(
        default="https://generativelanguage.googleapis.com/v1beta",
        description="Gemini REST API base URL",
    )
    vision_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout for vision-model calls",
    )
    vision_max_output_tokens: int = Field(
        default=4096,
        gt=0,
        description="Output token limit for the detailed vision prompt",
    )
    vision_simple_max_output_tokens: int = Field(
        default=2048,
        gt=0,
        description="Output token limit for the simplified retry prompt",
    )
    vision_max_file_bytes: int = Field(
        default=20 * 1024 * 1024,
        gt=0,
        description="Largest file accepted for inline vision upload",
    )

    # Extraction defaults and thresholds
    default_tax_rate: float = Field(
        default=15.0,
        ge=0,
        description="VAT percentage applied when a supplier does not declare one",
    )
    default_currency: str = Field(
        default="ZAR",
        description="Currency assumed when none is detected",
    )
    reconciliation_tolerance_percent: float = Field(
        default=5.0,
        ge=0,
        description="Relative tolerance for total cross-checks",
    )
    reconciliation_tolerance_floor: float = Field(
        default=1.0,
        ge=0,
        description="Absolute tolerance floor (currency units) for total cross-checks",
    )
    max_ai_line_items: int = Field(
        default=20,
        gt=0,
        description="Cap on line items accepted from the generic AI text extractor",
    )

    # Product matching
    match_score_threshold: float = Field(
        default=0.3,
        ge=0,
        le=1,
        description="Minimum token-overlap score for a catalog suggestion",
    )
    max_match_suggestions: int = Field(
        default=5,
        gt=0,
        description="Suggestions returned per line item",
    )

    # Supplier learning
    algorithm_store_path: str = Field(
        default="data/learned_algorithms.json",
        description="JSON file holding learned per-supplier algorithms",
    )


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
