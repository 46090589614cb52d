"""Factory for creating OCR services based on configuration.

Allows switching between Tesseract and PaddleOCR at runtime.
"""

import logging
from typing import Protocol

from invoice_pipeline.ocr.service import OCRResult
from invoice_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)


class OCRService(Protocol):
    """Protocol for OCR services."""

    @property
    def provider_name(self) -> str: ...

    async def extract_text(self, image_bytes: bytes) -> OCRResult:
        """Extract text from encoded image bytes."""
        ...

    def is_available(self) -> bool:
        """Check if OCR service is available."""
        ...


def create_ocr_service(settings: Settings) -> OCRService:
    """Factory function to create OCR service based on configuration.

    Args:
        settings: Application settings with ocr_provider field

    Returns:
        Configured OCR service instance

    Raises:
        ValueError: If configured provider is unknown
    """
    provider = settings.ocr_provider

    if provider == "tesseract":
        from invoice_pipeline.ocr.service import TesseractOCRService

        logger.info("Created OCR service: tesseract")
        return TesseractOCRService(settings)

    elif provider == "paddleocr":
        from invoice_pipeline.ocr.paddle_service import PaddleOCRService

        service = PaddleOCRService(settings)
        if not service.is_available():
            logger.warning(
                "PaddleOCR not available. Install with: pip install paddlepaddle paddleocr"
            )
        logger.info("Created OCR service: paddleocr")
        return service

    else:
        available = ["tesseract", "paddleocr"]
        raise ValueError(f"Unknown OCR provider: '{provider}'. Available: {', '.join(available)}")
