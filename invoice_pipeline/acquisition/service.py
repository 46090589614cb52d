"""Raw text acquisition from invoice images and PDFs.

Images go straight through OCR. PDFs are read from their embedded text
layer first; image-only PDFs are rasterised (first pages only) and OCR'd.

PDF handling uses PyMuPDF:
https://pymupdf.readthedocs.io/en/latest/recipes-text.html
"""

import asyncio
import logging

import fitz  # PyMuPDF

from invoice_pipeline.extraction.schema import InvoiceDocument
from invoice_pipeline.ocr.factory import OCRService
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import NoTextDetected, PdfExtractionFailed, UnsupportedFileType

logger = logging.getLogger(__name__)


class TextAcquisitionService:
    """Turns an InvoiceDocument into raw text for the text-based strategies."""

    def __init__(self, settings: Settings, ocr_service: OCRService) -> None:
        self.settings = settings
        self.ocr_service = ocr_service

    async def acquire_text(self, document: InvoiceDocument) -> str:
        """Extract raw text from an uploaded invoice.

        Args:
            document: Uploaded invoice file

        Returns:
            Non-empty text

        Raises:
            NoTextDetected: Image OCR produced no text
            PdfExtractionFailed: Neither the text layer nor page OCR produced text
            UnsupportedFileType: File is not an image or a PDF
        """
        if document.is_pdf:
            return await self.extract_pdf_text(document.file_bytes)
        if document.is_image:
            return await self.extract_image_text(document.file_bytes)
        raise UnsupportedFileType(f"Unsupported file type: {document.file_type}")

    async def extract_image_text(self, image_bytes: bytes) -> str:
        result = await self.ocr_service.extract_text(image_bytes)
        if not result.success:
            raise NoTextDetected(result.error or "OCR failed")
        text = result.text.strip()
        if not text:
            raise NoTextDetected("No text detected in image")
        logger.info(f"OCR extracted {len(text)} characters from image")
        return text

    async def extract_pdf_text(self, pdf_bytes: bytes) -> str:
        try:
            text = await asyncio.to_thread(self._read_text_layer, pdf_bytes)
        except Exception as e:
            logger.warning(f"PDF text layer extraction failed: {e}")
            text = ""

        if text.strip():
            logger.info(f"PDF text layer yielded {len(text)} characters")
            return text.strip()

        logger.info("PDF has no text layer, falling back to OCR of rendered pages")
        try:
            pages = await asyncio.to_thread(self._render_pages, pdf_bytes)
        except Exception as e:
            raise PdfExtractionFailed(f"Could not render PDF pages: {e}") from e

        page_texts = []
        for page_number, png_bytes in enumerate(pages, start=1):
            result = await self.ocr_service.extract_text(png_bytes)
            if result.success and result.text.strip():
                page_texts.append(result.text.strip())
            else:
                logger.warning(f"OCR produced no text for PDF page {page_number}")

        text = "\n".join(page_texts)
        if not text.strip():
            raise PdfExtractionFailed("No text found in PDF text layer or rendered pages")
        return text

    @staticmethod
    def _read_text_layer(pdf_bytes: bytes) -> str:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return "\n".join(page.get_text("text") for page in doc)

    def _render_pages(self, pdf_bytes: bytes) -> list[bytes]:
        scale = self.settings.pdf_render_scale
        matrix = fitz.Matrix(scale, scale)
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            page_count = min(doc.page_count, self.settings.pdf_ocr_max_pages)
            return [
                doc.load_page(index).get_pixmap(matrix=matrix, alpha=False).tobytes("png")
                for index in range(page_count)
            ]
