"""Vision extraction with Gemini: the original file goes to the model, no OCR.

Uses the Gemini REST generateContent endpoint with the file inlined as
base64. Two prompts exist: a detailed one and a minimal one used when the
first answer was blocked by safety filtering, or was cut off by the output
limit with no line items recoverable.

Based on the Gemini API reference:
https://ai.google.dev/api/generate-content
"""

import base64
import logging
from typing import Any

import httpx
from pydantic import BaseModel, ValidationError

from invoice_pipeline.extraction.json_repair import parse_possibly_truncated, scrape_partial_invoice
from invoice_pipeline.extraction.schema import (
    ExtractionMethod,
    ExtractionResult,
    InvoiceDocument,
    InvoiceMetadata,
    LineItem,
    build_line_item,
)
from invoice_pipeline.extraction.text_extractor import reconcile_with_total
from invoice_pipeline.learning.schema import AnnotatedLineItem, TrainingAnnotations
from invoice_pipeline.normalization.amounts import parse_amount, parse_invoice_date
from invoice_pipeline.profiles.metadata import UNKNOWN_SUPPLIER
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import ModelFormatError, ModelTransportError, StrategyFailure
from invoice_pipeline.shared.retry import linear_retrying

logger = logging.getLogger(__name__)

HARM_CATEGORIES = (
    "HARM_CATEGORY_HARASSMENT",
    "HARM_CATEGORY_HATE_SPEECH",
    "HARM_CATEGORY_SEXUALLY_EXPLICIT",
    "HARM_CATEGORY_DANGEROUS_CONTENT",
)
BLOCKED_FINISH_REASONS = {
    "SAFETY",
    "BLOCKED_REASON_UNSPECIFIED",
    "PROHIBITED_CONTENT",
    "BLOCKLIST",
    "SPII",
}
MAX_TOKENS = "MAX_TOKENS"
AUTOFILL_MAX_OUTPUT_TOKENS = 1500


class VisionReply(BaseModel):
    """The parts of a generateContent response the extractor cares about."""

    text: str = ""
    finish_reason: str | None = None
    block_reason: str | None = None

    @property
    def blocked(self) -> bool:
        return self.block_reason is not None or self.finish_reason in BLOCKED_FINISH_REASONS


class GeminiVisionExtractor:
    """Extracts invoices directly from images and PDFs with a vision model."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        """Initialize the vision extractor.

        Args:
            settings: Application settings (API key, model, limits)
            client: Optional pre-built HTTP client (tests inject a mock transport)
        """
        self.settings = settings
        self._base_url = settings.gemini_base_url.rstrip("/")
        self._model = settings.gemini_model
        self._client = client or httpx.AsyncClient(timeout=settings.vision_timeout_seconds)

    @property
    def provider_name(self) -> str:
        return "gemini"

    async def is_available(self) -> bool:
        """Check vision is enabled, a key is configured and the model answers."""
        if not self.settings.vision_enabled or not self.settings.gemini_api_key:
            return False
        try:
            response = await self._client.get(
                f"{self._base_url}/models/{self._model}",
                headers=self._headers(),
                timeout=self.settings.availability_timeout_seconds,
            )
        except httpx.HTTPError as e:
            logger.info(f"Gemini not available: {e}")
            return False
        return response.status_code == 200

    async def extract(self, document: InvoiceDocument) -> ExtractionResult:
        """Extract an invoice from the original file.

        Args:
            document: Uploaded invoice

        Returns:
            ExtractionResult tagged vision or vision-simple

        Raises:
            StrategyFailure: File too large for inline upload
            ModelTransportError: Gemini unreachable after retries
            ModelFormatError: No usable answer from either prompt
        """
        self._check_size(document)
        reply = await self._generate(
            document,
            build_detailed_prompt(document.supplier_hint),
            self.settings.vision_max_output_tokens,
            "BLOCK_NONE",
        )

        if not reply.text:
            if reply.blocked or reply.finish_reason == MAX_TOKENS:
                logger.warning(
                    f"Vision response empty ({reply.finish_reason or reply.block_reason}), "
                    "retrying with simple prompt"
                )
                return await self._extract_simple(document)
            raise ModelFormatError(f"Vision response had no content: {reply.finish_reason}")

        data = parse_vision_payload(reply.text)
        line_items = data.get("lineItems") or []
        if reply.finish_reason == MAX_TOKENS:
            if not line_items:
                logger.warning("Truncated vision response with no line items, retrying simple")
                return await self._extract_simple(document)
            logger.warning(f"Vision response truncated, keeping {len(line_items)} partial items")

        return self._to_result(data, ExtractionMethod.VISION, document, reply)

    async def _extract_simple(self, document: InvoiceDocument) -> ExtractionResult:
        reply = await self._generate(
            document,
            build_simple_prompt(),
            self.settings.vision_simple_max_output_tokens,
            "BLOCK_ONLY_HIGH",
        )
        if not reply.text:
            raise ModelFormatError(
                f"Simple prompt failed to generate content: {reply.finish_reason or 'unknown'}"
            )
        data = parse_vision_payload(reply.text)
        return self._to_result(data, ExtractionMethod.VISION_SIMPLE, document, reply)

    async def auto_fill_training(
        self, document: InvoiceDocument, supplier: str
    ) -> TrainingAnnotations:
        """Suggest training annotations for a user to review.

        Raises:
            StrategyFailure: File too large for inline upload
            ModelTransportError: Gemini unreachable after retries
            ModelFormatError: Answer could not be parsed
        """
        self._check_size(document)
        reply = await self._generate(
            document, build_autofill_prompt(supplier), AUTOFILL_MAX_OUTPUT_TOKENS, "BLOCK_NONE"
        )
        if not reply.text:
            raise ModelFormatError(f"Auto-fill produced no content: {reply.finish_reason}")
        data = parse_vision_payload(reply.text)
        annotations = project_annotations(data, supplier, self.settings)
        logger.info(
            f"Auto-filled training data for '{supplier}' with "
            f"{len(annotations.line_items)} example items"
        )
        return annotations

    def _check_size(self, document: InvoiceDocument) -> None:
        size = len(document.file_bytes)
        if size > self.settings.vision_max_file_bytes:
            limit_mb = self.settings.vision_max_file_bytes / 1024 / 1024
            raise StrategyFailure(
                "vision", f"File size {size / 1024 / 1024:.1f}MB exceeds limit of {limit_mb:.0f}MB"
            )

    def _headers(self) -> dict[str, str]:
        return {"x-goog-api-key": self.settings.gemini_api_key}

    async def _generate(
        self,
        document: InvoiceDocument,
        prompt: str,
        max_output_tokens: int,
        safety_threshold: str,
    ) -> VisionReply:
        body = {
            "contents": [
                {
                    "parts": [
                        {"text": prompt},
                        {
                            "inline_data": {
                                "mime_type": document.file_type or "application/pdf",
                                "data": base64.b64encode(document.file_bytes).decode("ascii"),
                            }
                        },
                    ]
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "topK": 1,
                "topP": 0.1,
                "maxOutputTokens": max_output_tokens,
            },
            "safetySettings": [
                {"category": category, "threshold": safety_threshold}
                for category in HARM_CATEGORIES
            ],
        }
        url = f"{self._base_url}/models/{self._model}:generateContent"

        try:
            async for attempt in linear_retrying(self.settings):
                with attempt:
                    number = attempt.retry_state.attempt_number
                    if number > 1:
                        logger.warning(f"Gemini retry attempt {number}")
                    response = await self._client.post(url, json=body, headers=self._headers())
                    response.raise_for_status()
        except httpx.HTTPError as e:
            raise ModelTransportError(f"Gemini request failed: {e}") from e

        try:
            payload = response.json()
        except ValueError as e:
            raise ModelFormatError(f"Gemini returned non-JSON body: {e}") from e
        return read_reply(payload)

    def _to_result(
        self,
        data: dict[str, Any],
        method: ExtractionMethod,
        document: InvoiceDocument,
        reply: VisionReply,
    ) -> ExtractionResult:
        currency = data.get("currency") or self.settings.default_currency
        raw_date = data.get("invoiceDate")
        parsed_date = parse_invoice_date(str(raw_date)) if raw_date else None
        metadata = InvoiceMetadata(
            invoice_number=_text(data.get("invoiceNumber")),
            date=parsed_date.isoformat() if parsed_date else _text(raw_date),
            total_amount=parse_amount(data.get("totalAmount")),
            total_excluding_tax=parse_amount(data.get("totalExcludingTax")),
            tax_amount=parse_amount(data.get("taxAmount")),
            currency=currency,
        )

        raw_items = data.get("lineItems") or []
        items = self.project_line_items(raw_items if isinstance(raw_items, list) else [], currency)
        items = reconcile_with_total(
            items,
            metadata.total_amount,
            self.settings.reconciliation_tolerance_percent,
            self.settings.reconciliation_tolerance_floor,
        )
        supplier = _text(data.get("supplier")) or document.supplier_hint or UNKNOWN_SUPPLIER
        logger.info(f"Vision ({method.value}) extracted {len(items)} line items for '{supplier}'")
        return ExtractionResult(
            method=method,
            supplier=supplier,
            invoice_metadata=metadata,
            line_items=items,
            raw_trace=f"gemini finish={reply.finish_reason}\n{reply.text}",
        )

    def project_line_items(self, raw_items: list[Any], currency: str | None) -> list[LineItem]:
        """Validate untyped vision output into tax-exclusive LineItems."""
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            description = _text(raw.get("description")) or _text(raw.get("name"))
            if not description:
                continue
            quantity = parse_amount(raw.get("quantity")) or 1.0
            total = parse_amount(raw.get("totalPrice"))
            unit_price = parse_amount(raw.get("unitPrice"))
            if unit_price is None:
                unit_price = parse_amount(raw.get("netPrice"))
            if unit_price is None and total is not None:
                unit_price = total / quantity
            try:
                items.append(
                    build_line_item(
                        code=_text(raw.get("code")),
                        description=description,
                        quantity=quantity,
                        unit_price_excl_tax=unit_price or 0.0,
                        discount_percent=parse_amount(raw.get("discountPercent")) or 0.0,
                        tax_rate=self.settings.default_tax_rate,
                        total_price_as_reported=total,
                        currency=currency,
                        source="gemini-vision",
                    )
                )
            except ValidationError as e:
                logger.warning(f"Dropping malformed vision line item {raw!r}: {e}")
        return items

    async def aclose(self) -> None:
        await self._client.aclose()


def read_reply(payload: Any) -> VisionReply:
    """Pull text, finish reason and block reason out of a generateContent body.

    Raises:
        ModelFormatError: The body is not shaped like a generateContent reply
    """
    if not isinstance(payload, dict):
        raise ModelFormatError(f"Unexpected Gemini response: {type(payload).__name__}")
    feedback = payload.get("promptFeedback") or {}
    candidates = payload.get("candidates") or []
    if not isinstance(feedback, dict) or not isinstance(candidates, list):
        raise ModelFormatError("Unexpected Gemini response structure")
    block_reason = feedback.get("blockReason")
    if not candidates:
        return VisionReply(block_reason=block_reason)
    candidate = candidates[0]
    content = candidate.get("content") if isinstance(candidate, dict) else None
    if content is not None and not isinstance(content, dict):
        raise ModelFormatError("Unexpected Gemini candidate structure")
    parts = (content or {}).get("parts") or []
    if not isinstance(parts, list):
        raise ModelFormatError("Unexpected Gemini content parts")
    text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
    return VisionReply(
        text=text.strip(),
        finish_reason=candidate.get("finishReason") if isinstance(candidate, dict) else None,
        block_reason=block_reason,
    )


def parse_vision_payload(text: str) -> dict[str, Any]:
    """Parse a vision answer, repairing truncation and scraping as a last resort.

    Raises:
        ModelFormatError: Nothing at all could be recovered
    """
    try:
        parsed = parse_possibly_truncated(text)
    except ModelFormatError as e:
        logger.warning(f"Vision JSON unparseable ({e}), scraping partial fields")
        scraped = scrape_partial_invoice(text)
        if len(scraped) == 1 and not scraped["lineItems"]:
            raise
        return scraped
    if isinstance(parsed, list):
        return {"lineItems": parsed}
    if isinstance(parsed, dict):
        return parsed
    raise ModelFormatError(f"Unexpected vision payload type: {type(parsed).__name__}")


def project_annotations(
    data: dict[str, Any], supplier: str, settings: Settings
) -> TrainingAnnotations:
    """Turn an auto-fill answer into editable TrainingAnnotations."""
    examples = []
    for raw in data.get("lineItems") or []:
        if not isinstance(raw, dict):
            continue
        name = _text(raw.get("name")) or _text(raw.get("description"))
        if not name:
            continue
        examples.append(
            AnnotatedLineItem(
                name=name,
                code=_text(raw.get("code")),
                quantity=parse_amount(raw.get("quantity")) or 1.0,
                unit_price=parse_amount(raw.get("unitPrice")) or 0.0,
                discount=parse_amount(raw.get("discount")) or 0.0,
                net_price=parse_amount(raw.get("netPrice")),
            )
        )

    tax_rate = parse_amount(data.get("taxRate"))
    prices_include_tax = data.get("pricesIncludeTax")
    return TrainingAnnotations(
        supplier=supplier,
        line_items=examples,
        invoice_number=_text(data.get("invoiceNumber")),
        invoice_date=_text(data.get("invoiceDate")),
        date_format=_text(data.get("dateFormat")) or "DD/MM/YY",
        total_excluding_tax=parse_amount(data.get("totalExcludingTax")),
        total_including_tax=parse_amount(data.get("totalIncludingTax")),
        tax_rate=tax_rate if tax_rate is not None else settings.default_tax_rate,
        prices_include_tax=prices_include_tax if isinstance(prices_include_tax, bool) else None,
        has_discounts=data.get("hasDiscounts") is True,
        currency=_text(data.get("currency")) or settings.default_currency,
    )


def _text(value: Any) -> str | None:
    if value is None or isinstance(value, dict | list):
        return None
    text = str(value).strip()
    return text if text and text.lower() != "null" else None


def build_detailed_prompt(supplier_hint: str | None) -> str:
    hint = f" This appears to be from {supplier_hint}." if supplier_hint else ""
    return f"""You are an expert invoice data extraction system. Analyze this invoice \
document and extract the itemized products.{hint}

STEP 1: Find the supplier name (usually at the top).
STEP 2: Find the invoice number (looks like "IN326587" or similar).
STEP 3: Find the invoice date (may appear as DD/MM/YY, like "17/02/25").
STEP 4: Read the main items table. Columns usually hold a product code \
(like "F-12345-67B"), the description, quantity, unit price, discount percent and line total.
STEP 5: Find the totals: total before tax, tax amount, final total including tax.

RULES:
- Line item prices are EXCLUDING tax; tax is added at the bottom.
- Extract ONLY what you can clearly see. Use exact quantities and prices as shown.
- Each table row is one lineItem. Do not calculate or invent values.

Return ONLY a JSON object in this format:
{{
  "supplier": "exact_company_name_from_document",
  "invoiceNumber": "exact_invoice_number",
  "invoiceDate": "date_as_written",
  "totalAmount": final_total_including_tax,
  "totalExcludingTax": subtotal_before_tax,
  "taxAmount": tax_amount,
  "currency": "ZAR",
  "lineItems": [
    {{
      "code": "product_code_from_table",
      "description": "exact_product_name_from_table",
      "quantity": exact_quantity_number,
      "unitPrice": exact_unit_price,
      "discountPercent": discount_percent_or_0,
      "netPrice": exact_unit_price,
      "totalPrice": exact_total_for_this_line
    }}
  ]
}}"""


def build_simple_prompt() -> str:
    return """Extract invoice data. Find date in DD/MM/YY format. Line prices are excluding tax. \
Return JSON:
{
  "supplier": "company_name",
  "invoiceNumber": "number",
  "invoiceDate": "DD/MM/YY_date_from_document",
  "totalAmount": final_total,
  "totalExcludingTax": subtotal_before_tax,
  "taxAmount": tax_amount,
  "lineItems": [{
    "code": "product_code",
    "description": "item_name",
    "quantity": number,
    "unitPrice": price_excluding_tax,
    "totalPrice": line_total_excluding_tax
  }]
}"""


def build_autofill_prompt(supplier: str) -> str:
    return f"""You are helping to pre-fill invoice training data. Analyze this {supplier} \
invoice and suggest values that a user will review and correct.

Return ONLY a JSON object in this format:
{{
  "invoiceNumber": "exact_invoice_number",
  "invoiceDate": "exact_date_as_shown",
  "dateFormat": "detected_format_like_DD/MM/YY",
  "totalIncludingTax": number,
  "totalExcludingTax": number,
  "taxRate": number_as_percentage,
  "currency": "currency_code",
  "pricesIncludeTax": true_or_false,
  "hasDiscounts": true_or_false,
  "lineItems": [
    {{
      "name": "product_description",
      "code": "product_code_if_visible",
      "quantity": number,
      "unitPrice": number,
      "netPrice": number,
      "discount": number_if_any
    }}
  ]
}}

Include 3-5 representative line items and extract only what you can clearly see."""
