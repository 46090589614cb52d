"""Data models shared by every extraction strategy.

Whatever path produced them (vision, pattern library, AI text, learned
algorithm), line items leave the pipeline as LineItem and results as
ExtractionResult.
"""

import math
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from invoice_pipeline.normalization.tax import DEFAULT_TAX_RATE, compute_line_totals

PDF_MIME_TYPE = "application/pdf"


class ExtractionMethod(str, Enum):
    """Which strategy produced a result."""

    VISION = "vision"
    VISION_SIMPLE = "vision-simple"
    TEXT_PATTERN = "text-pattern"
    TEXT_AI = "text-ai"
    LEARNED_ALGORITHM = "learned-algorithm"


class InvoiceDocument(BaseModel):
    """One uploaded file. Lives only for the duration of one extraction."""

    file_name: str
    file_type: str = Field(..., description="Declared MIME type, e.g. application/pdf")
    file_bytes: bytes
    supplier_hint: str | None = None

    @property
    def is_pdf(self) -> bool:
        return self.file_type == PDF_MIME_TYPE or self.file_name.lower().endswith(".pdf")

    @property
    def is_image(self) -> bool:
        return self.file_type.startswith("image/")


class InvoiceMetadata(BaseModel):
    """Header and footer values printed on the invoice."""

    invoice_number: str | None = None
    date: str | None = Field(None, description="ISO date when parseable, else as printed")
    total_amount: float | None = None
    total_excluding_tax: float | None = None
    tax_amount: float | None = None
    currency: str | None = None


class ProductSuggestion(BaseModel):
    """Catalog item proposed for a line item."""

    product: dict[str, Any]
    score: float = Field(..., ge=0, le=1)


class LineItem(BaseModel):
    """One extracted invoice row with derived totals.

    subtotal, discount_amount, net_total, tax_amount and net_total_incl_tax
    are always the output of compute_line_totals over quantity,
    unit_price_excl_tax, discount_percent and tax_rate.
    """

    code: str | None = None
    description: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0)
    unit_price_excl_tax: float = Field(..., ge=0)
    discount_percent: float = Field(0.0, ge=0, le=100)
    tax_rate: float = Field(DEFAULT_TAX_RATE, ge=0)

    subtotal: float = 0.0
    discount_amount: float = 0.0
    net_total: float = 0.0
    tax_amount: float = 0.0
    net_total_incl_tax: float = 0.0

    total_price_as_reported: float | None = Field(
        None, description="Total printed on the invoice, used for cross-checks only"
    )
    currency: str | None = None
    is_valid: bool = True
    validation_errors: list[str] = Field(default_factory=list)
    source: str
    original_text: str | None = None

    # Product matching
    matched_product: dict[str, Any] | None = None
    match_score: float = 0.0
    suggestions: list[ProductSuggestion] = Field(default_factory=list)
    is_new_product: bool = False

    def recompute(self) -> "LineItem":
        """Return a copy whose derived totals are recomputed from the inputs."""
        totals = compute_line_totals(
            self.quantity, self.unit_price_excl_tax, self.discount_percent, self.tax_rate
        )
        return self.model_copy(update=totals.model_dump())


def build_line_item(
    *,
    description: str,
    quantity: Any,
    unit_price_excl_tax: Any,
    source: str,
    discount_percent: Any = 0.0,
    tax_rate: float = DEFAULT_TAX_RATE,
    code: str | None = None,
    total_price_as_reported: float | None = None,
    currency: str | None = None,
    original_text: str | None = None,
    validation_errors: list[str] | None = None,
    is_valid: bool = True,
) -> LineItem:
    """Create a LineItem with totals filled in by the tax normalizer.

    Missing or non-positive quantities default to 1 and discounts are clamped
    into 0-100.

    Raises:
        pydantic.ValidationError: If the description is empty
    """
    quantity_value = _positive_or_default(quantity, 1.0)
    price_value = _positive_or_default(unit_price_excl_tax, 0.0)
    discount_value = min(_positive_or_default(discount_percent, 0.0), 100.0)
    totals = compute_line_totals(quantity_value, price_value, discount_value, tax_rate)

    return LineItem(
        code=code.strip() if code and code.strip() else None,
        description=(description or "").strip(),
        quantity=quantity_value,
        unit_price_excl_tax=price_value,
        discount_percent=discount_value,
        tax_rate=tax_rate,
        total_price_as_reported=total_price_as_reported,
        currency=currency,
        is_valid=is_valid,
        validation_errors=list(validation_errors or []),
        source=source,
        original_text=original_text,
        **totals.model_dump(),
    )


def _positive_or_default(value: Any, default: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) and number > 0 else default


class ExtractionResult(BaseModel):
    """Output of any extraction strategy.

    line_items may be empty, method and supplier are always set.
    """

    method: ExtractionMethod
    supplier: str
    invoice_metadata: InvoiceMetadata = Field(default_factory=InvoiceMetadata)
    line_items: list[LineItem] = Field(default_factory=list)
    raw_trace: str = ""
    needs_training: bool = False
