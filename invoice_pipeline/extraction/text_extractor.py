"""Generic AI line-item extraction from raw invoice text.

The model gets the OCR/PDF text plus any header values we already trust
(invoice number, total) and must answer with a JSON array of line items.
Its answer is projected into LineItem, deduplicated, capped and reconciled
against the invoice total.
"""

import logging
from typing import Any

from pydantic import ValidationError

from invoice_pipeline.extraction.base import TextModelProvider
from invoice_pipeline.extraction.json_repair import parse_json_array
from invoice_pipeline.extraction.schema import InvoiceMetadata, LineItem, build_line_item
from invoice_pipeline.normalization.amounts import parse_amount
from invoice_pipeline.normalization.tax import within_tolerance
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import ModelFormatError

logger = logging.getLogger(__name__)

OUTPUT_FIELDS = ("code", "description", "quantity", "unitPrice", "discountPercent", "totalPrice")


class AITextExtractor:
    """Line-item extraction through a text-generation model."""

    def __init__(self, settings: Settings, provider: TextModelProvider) -> None:
        self.settings = settings
        self.provider = provider

    async def is_available(self) -> bool:
        return await self.provider.is_available()

    async def extract(
        self,
        text: str,
        supplier: str,
        metadata: InvoiceMetadata | None = None,
    ) -> list[LineItem]:
        """Extract line items from raw text.

        Args:
            text: OCR or PDF text of the invoice
            supplier: Detected supplier name, included as context
            metadata: Header values used as cross-checks in the prompt and
                for reconciliation

        Returns:
            Deduplicated, capped, reconciled line items

        Raises:
            ModelTransportError: Model unreachable after retries
            ModelFormatError: Response contained no parseable items
        """
        metadata = metadata or InvoiceMetadata()
        prompt = build_extraction_prompt(text, supplier, metadata)
        response_text = await self.provider.generate(prompt)

        raw_items = parse_json_array(response_text)
        items = self.project_items(raw_items, metadata.currency)
        if not items:
            raise ModelFormatError("Model response contained no valid line items")

        items = deduplicate(items)
        if len(items) > self.settings.max_ai_line_items:
            logger.warning(
                f"AI returned {len(items)} items, keeping first {self.settings.max_ai_line_items}"
            )
            items = items[: self.settings.max_ai_line_items]

        items = reconcile_with_total(
            items,
            metadata.total_amount,
            self.settings.reconciliation_tolerance_percent,
            self.settings.reconciliation_tolerance_floor,
        )
        logger.info(f"AI text extraction produced {len(items)} line items")
        return items

    def project_items(self, raw_items: list[Any], currency: str | None) -> list[LineItem]:
        """Validate untyped model output into LineItems, dropping unusable rows."""
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict):
                continue
            item = self._project_item(raw, currency)
            if item is not None:
                items.append(item)
        return items

    def _project_item(self, raw: dict[str, Any], currency: str | None) -> LineItem | None:
        description = str(raw.get("description") or raw.get("name") or "").strip()
        if not description:
            return None

        quantity = _number(raw.get("quantity")) or 1.0
        total = _number(raw.get("totalPrice"))
        unit_price = _number(raw.get("unitPrice"))
        discount = _number(raw.get("discountPercent")) or 0.0
        if unit_price is None and total is not None:
            unit_price = total / quantity
        code = raw.get("code")

        try:
            return build_line_item(
                code=str(code) if code not in (None, "", "null") else None,
                description=description,
                quantity=quantity,
                unit_price_excl_tax=unit_price or 0.0,
                discount_percent=discount,
                tax_rate=self.settings.default_tax_rate,
                total_price_as_reported=total,
                currency=currency or self.settings.default_currency,
                source=f"ai-text:{self.provider.provider_name}",
            )
        except ValidationError as e:
            logger.warning(f"Dropping malformed AI line item {raw!r}: {e}")
            return None


def build_extraction_prompt(text: str, supplier: str, metadata: InvoiceMetadata) -> str:
    """Prompt asking for a strict JSON array of line items."""
    checks = []
    if metadata.invoice_number:
        checks.append(f"- Invoice number: {metadata.invoice_number}")
    if metadata.total_amount is not None:
        checks.append(
            f"- Invoice total: {metadata.total_amount:.2f} "
            "(the line items should add up to roughly this amount including VAT)"
        )
    known = "\n".join(checks) if checks else "- none"

    return f"""You are extracting purchased products from a supplier invoice.

SUPPLIER: {supplier}

KNOWN VALUES (use them to sanity-check your answer):
{known}

OUTPUT CONTRACT:
Return ONLY a JSON array. Each element must be an object with exactly these fields:
{{"code": string|null, "description": string, "quantity": number, \
"unitPrice": number, "discountPercent": number, "totalPrice": number}}

RULES:
- One object per product line. Skip headers, totals, tax, banking and address lines.
- unitPrice is the price per unit before VAT and before discount.
- discountPercent is 0 when no discount is printed.
- totalPrice is the line total exactly as printed.
- Never invent products that are not in the text.
- No explanation, no markdown.

INVOICE TEXT:
{text}

JSON ARRAY:"""


def deduplicate(items: list[LineItem]) -> list[LineItem]:
    """Collapse items sharing (code, description), keeping the larger reported total.

    First-seen order is preserved. Applying this twice gives the same list.
    """
    kept: dict[tuple[str, str], LineItem] = {}
    for item in items:
        key = (item.code or "no-code", item.description.strip().lower())
        current = kept.get(key)
        if current is None or (item.total_price_as_reported or 0) > (
            current.total_price_as_reported or 0
        ):
            kept[key] = item
    return list(kept.values())


def reconcile_with_total(
    items: list[LineItem],
    invoice_total: float | None,
    tolerance_percent: float = 5.0,
    tolerance_floor: float = 1.0,
) -> list[LineItem]:
    """Attach a warning to every item when their VAT-inclusive sum misses the total.

    The comparison allows max(tolerance_percent of the total, tolerance_floor).
    """
    if invoice_total is None or not items:
        return items
    line_sum = sum(item.net_total_incl_tax for item in items)
    if within_tolerance(invoice_total, line_sum, tolerance_percent, tolerance_floor):
        return items

    warning = (
        f"Total reconciliation warning: line items sum to {line_sum:.2f} "
        f"but invoice total is {invoice_total:.2f}"
    )
    logger.warning(warning)
    return [
        item.model_copy(update={"validation_errors": [*item.validation_errors, warning]})
        for item in items
    ]


def _number(value: Any) -> float | None:
    if isinstance(value, str):
        return parse_amount(value)
    if isinstance(value, int | float) and not isinstance(value, bool):
        return float(value)
    return None
