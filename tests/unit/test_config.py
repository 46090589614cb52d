"""Unit tests for configuration management."""

import os
from collections.abc import Generator

import pytest
from pydantic import ValidationError

from invoice_pipeline.shared.config import Settings, get_settings


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Clean environment variables before and after test."""
    original_env = dict(os.environ)
    env_vars = [k for k in os.environ if k.startswith("APP_")]
    for var in env_vars:
        del os.environ[var]
    yield
    os.environ.clear()
    os.environ.update(original_env)


def test_settings_defaults(clean_env: None) -> None:
    """Test that settings have correct default values."""
    settings = Settings()

    assert settings.environment == "development"
    assert settings.log_level == "INFO"
    assert settings.service_name == "invoice-pipeline"
    assert settings.ocr_provider == "tesseract"
    assert settings.text_model_provider == "ollama"
    assert settings.default_tax_rate == 15.0
    assert settings.default_currency == "ZAR"
    assert settings.text_model_max_retries == 2
    assert settings.reconciliation_tolerance_percent == 5.0
    assert settings.reconciliation_tolerance_floor == 1.0
    assert settings.match_score_threshold == 0.3


def test_settings_from_env_vars(clean_env: None) -> None:
    """Test that settings can be overridden via environment variables."""
    os.environ["APP_TEXT_MODEL_PROVIDER"] = "openai"
    os.environ["APP_DEFAULT_TAX_RATE"] = "14"
    os.environ["APP_GEMINI_API_KEY"] = "test-key"

    settings = Settings()

    assert settings.text_model_provider == "openai"
    assert settings.default_tax_rate == 14.0
    assert settings.gemini_api_key == "test-key"


def test_settings_case_insensitive(clean_env: None) -> None:
    """Test that environment variables are case insensitive."""
    os.environ["app_log_level"] = "DEBUG"

    settings = Settings()

    assert settings.log_level == "DEBUG"


def test_invalid_provider_rejected(clean_env: None) -> None:
    """Unknown provider names fail validation."""
    with pytest.raises(ValidationError):
        Settings(text_model_provider="unknown")


def test_negative_threshold_rejected(clean_env: None) -> None:
    with pytest.raises(ValidationError):
        Settings(match_score_threshold=-0.1)


def test_get_settings_returns_settings(clean_env: None) -> None:
    """Test that get_settings factory returns Settings instance."""
    settings = get_settings()

    assert isinstance(settings, Settings)
