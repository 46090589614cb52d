"""Unit tests for the Tesseract and PaddleOCR services and the OCR factory."""

import io
from unittest.mock import MagicMock, patch

import pytesseract
import pytest
from PIL import Image

from invoice_pipeline.ocr.factory import create_ocr_service
from invoice_pipeline.ocr.paddle_service import PaddleOCRService
from invoice_pipeline.ocr.service import TesseractOCRService
from invoice_pipeline.shared.config import Settings


@pytest.fixture
def png_bytes() -> bytes:
    """Create a simple test image as bytes."""
    img = Image.new("RGB", (200, 100), color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class TestTesseractOCRService:
    @pytest.mark.asyncio
    async def test_extracts_text(self, settings: Settings, png_bytes: bytes) -> None:
        service = TesseractOCRService(settings)

        with patch.object(pytesseract, "image_to_string", return_value="Invoice 123"):
            result = await service.extract_text(png_bytes)

        assert result.success is True
        assert result.text == "Invoice 123"
        assert service.provider_name == "tesseract"

    @pytest.mark.asyncio
    async def test_empty_bytes(self, settings: Settings) -> None:
        result = await TesseractOCRService(settings).extract_text(b"")

        assert result.success is False
        assert result.error == "Empty image data"

    @pytest.mark.asyncio
    async def test_engine_failure_reported(self, settings: Settings, png_bytes: bytes) -> None:
        """Should return an error result instead of raising."""
        service = TesseractOCRService(settings)

        with patch.object(
            pytesseract, "image_to_string", side_effect=RuntimeError("tesseract missing")
        ):
            result = await service.extract_text(png_bytes)

        assert result.success is False
        assert "tesseract missing" in (result.error or "")

    @pytest.mark.asyncio
    async def test_undecodable_image(self, settings: Settings) -> None:
        result = await TesseractOCRService(settings).extract_text(b"not an image")

        assert result.success is False

    def test_tesseract_cmd_from_env(
        self, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("TESSERACT_CMD", "/opt/tesseract/bin/tesseract")
        monkeypatch.setattr(pytesseract.pytesseract, "tesseract_cmd", "tesseract")

        TesseractOCRService(settings)

        assert pytesseract.pytesseract.tesseract_cmd == "/opt/tesseract/bin/tesseract"


class TestPaddleOCRService:
    @pytest.mark.asyncio
    async def test_joins_recognised_lines(self, settings: Settings, png_bytes: bytes) -> None:
        pytest.importorskip("numpy")
        engine = MagicMock()
        engine.ocr.return_value = [{"rec_texts": ["Line A", "Line B"], "rec_scores": [0.9, 0.7]}]
        service = PaddleOCRService(settings)

        with patch.object(service, "_get_ocr", return_value=engine):
            result = await service.extract_text(png_bytes)

        assert result.success is True
        assert result.text == "Line A\nLine B"
        assert result.confidence == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_engine_error_reported(self, settings: Settings, png_bytes: bytes) -> None:
        pytest.importorskip("numpy")
        service = PaddleOCRService(settings)

        with patch.object(service, "_get_ocr", side_effect=ImportError("PaddleOCR not installed")):
            result = await service.extract_text(png_bytes)

        assert result.success is False
        assert "PaddleOCR not installed" in (result.error or "")


class TestOCRFactory:
    def test_creates_tesseract(self) -> None:
        service = create_ocr_service(Settings(ocr_provider="tesseract"))

        assert isinstance(service, TesseractOCRService)

    def test_creates_paddle(self) -> None:
        service = create_ocr_service(Settings(ocr_provider="paddleocr"))

        assert isinstance(service, PaddleOCRService)
        assert service.provider_name == "paddleocr"
