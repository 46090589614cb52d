"""OCR service using Tesseract.

OCR over in-memory image bytes with:
- Configurable Tesseract path via environment variables
- Blocking pytesseract calls moved off the event loop
- Type-safe results using Pydantic

Based on pytesseract documentation:
https://github.com/madmaze/pytesseract
"""

import asyncio
import io
import logging
import os
import shutil

import pytesseract
from PIL import Image
from pydantic import BaseModel

from invoice_pipeline.shared.config import Settings

logger = logging.getLogger(__name__)


class OCRResult(BaseModel):
    """Result of OCR operation.

    Attributes:
        text: Extracted text content
        success: Whether operation succeeded
        error: Error message if operation failed
        confidence: Average confidence score (0-1), if available
    """

    text: str
    success: bool
    error: str | None = None
    confidence: float | None = None


class TesseractOCRService:
    """OCR service using Tesseract engine."""

    def __init__(self, settings: Settings) -> None:
        """Initialize OCR service.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self._configure_tesseract()

    def _configure_tesseract(self) -> None:
        """Configure Tesseract command path from environment.

        Allows overriding default Tesseract path via TESSERACT_CMD environment variable.
        """
        tesseract_cmd = os.getenv("TESSERACT_CMD")
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd

    @property
    def provider_name(self) -> str:
        return "tesseract"

    def is_available(self) -> bool:
        """Check that a tesseract binary can be found."""
        return shutil.which(pytesseract.pytesseract.tesseract_cmd) is not None

    async def extract_text(self, image_bytes: bytes) -> OCRResult:
        """Extract text from encoded image bytes (PNG, JPEG, TIFF, ...).

        Args:
            image_bytes: Encoded image file content

        Returns:
            OCRResult with extracted text or error information
        """
        if not image_bytes:
            return OCRResult(text="", success=False, error="Empty image data")

        try:
            text = await asyncio.to_thread(self._run_tesseract, image_bytes)
            return OCRResult(text=text, success=True)
        except Exception as e:
            logger.error(f"Tesseract processing failed: {e}")
            return OCRResult(text="", success=False, error=f"OCR processing failed: {str(e)}")

    @staticmethod
    def _run_tesseract(image_bytes: bytes) -> str:
        with Image.open(io.BytesIO(image_bytes)) as image:
            text: str = pytesseract.image_to_string(image)
        return text
