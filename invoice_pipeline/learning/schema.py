"""Models for supplier training sessions and learned extraction algorithms.

Patterns are stored as plain regex strings plus a group map so algorithms
serialise to JSON; they are compiled only when applied.
"""

import re
import uuid
from datetime import UTC, datetime
from typing import Literal

from pydantic import BaseModel, Field

from invoice_pipeline.extraction.schema import ExtractionResult
from invoice_pipeline.normalization.amounts import normalize_supplier_key
from invoice_pipeline.shared.errors import ModelFormatError, TrainingIncomplete

# Field names a line-item group map may use
LINE_ITEM_FIELDS = (
    "code",
    "description",
    "quantity",
    "unit_multiplier",
    "unit_price",
    "discount_percent",
    "net_unit_price",
    "total_price",
)

_FLAG_MAP = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}
_JS_NAMED_GROUP = re.compile(r"\(\?<(?![=!])")


def compile_pattern(regex: str, flags: str = "") -> re.Pattern[str]:
    """Compile a stored pattern string.

    JavaScript-style flags ("gmi") and named groups "(?<name>...)" are
    accepted; "g" is implicit since every pattern is applied with finditer.

    Raises:
        ModelFormatError: If the pattern does not compile
    """
    compiled_flags = 0
    for flag in flags:
        compiled_flags |= _FLAG_MAP.get(flag, 0)
    try:
        return re.compile(_JS_NAMED_GROUP.sub("(?P<", regex), compiled_flags)
    except re.error as e:
        raise ModelFormatError(f"Invalid stored pattern {regex!r}: {e}") from e


class LineItemPattern(BaseModel):
    """Line-item regex and which capture group holds which field."""

    regex: str
    flags: str = "gm"
    groups: dict[str, int | str] = Field(default_factory=dict)


class FieldPattern(BaseModel):
    """Regex for a single header value; group 0 means the whole match."""

    regex: str
    flags: str = "i"
    group: int = 1


class AlgorithmPatterns(BaseModel):
    line_items: LineItemPattern
    invoice_number: FieldPattern | None = None
    invoice_date: FieldPattern | None = None


class ProcessingRules(BaseModel):
    """How captured numbers are turned into tax-exclusive line values."""

    currency: str = "ZAR"
    tax_rate: float = 15.0
    prices_include_tax: bool = False
    has_discounts: bool = False
    date_format: str = "DD/MM/YY"


class ValidationReport(BaseModel):
    """Informational result of checking an algorithm against its training text."""

    success: bool
    accuracy: float = Field(..., ge=0, le=100)
    line_item_matches: int = 0
    expected_line_items: int = 0
    invoice_number_matched: bool = False
    invoice_date_matched: bool = False
    errors: list[str] = Field(default_factory=list)


class LearnedAlgorithm(BaseModel):
    """Persisted per-supplier extraction rules."""

    supplier: str
    patterns: AlgorithmPatterns
    processing: ProcessingRules = Field(default_factory=ProcessingRules)
    version: str = "1.0"
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    training_count: int = 1
    generated_by: Literal["ai", "manual"] = "ai"
    validation: ValidationReport | None = None

    @property
    def supplier_key(self) -> str:
        return normalize_supplier_key(self.supplier)


class AnnotatedLineItem(BaseModel):
    """One example row typed in by the user during training."""

    name: str
    code: str | None = None
    quantity: float
    unit_price: float
    discount: float = 0.0
    net_price: float | None = None


class TrainingAnnotations(BaseModel):
    """Everything the user supplies while training a new supplier."""

    supplier: str
    line_items: list[AnnotatedLineItem] = Field(default_factory=list)
    invoice_number: str | None = None
    invoice_date: str | None = None
    date_format: str = "DD/MM/YY"
    total_excluding_tax: float | None = None
    total_including_tax: float | None = None
    tax_rate: float = 15.0
    prices_include_tax: bool | None = None
    has_discounts: bool = False
    currency: str = "ZAR"

    def ensure_complete(self) -> None:
        """Check the annotations are usable for algorithm generation.

        Raises:
            TrainingIncomplete: Listing every missing piece
        """
        problems = []
        if not self.line_items:
            problems.append("at least one line item is required")
        for index, item in enumerate(self.line_items, start=1):
            if not item.name.strip():
                problems.append(f"line item {index}: name is required")
            if item.quantity <= 0:
                problems.append(f"line item {index}: quantity must be positive")
            if item.unit_price <= 0:
                problems.append(f"line item {index}: unit price must be positive")
        if self.prices_include_tax is None:
            problems.append("specify whether prices include tax")
        if self.total_excluding_tax is None and self.total_including_tax is None:
            problems.append("at least one invoice total is required")
        if problems:
            raise TrainingIncomplete("; ".join(problems))


class TrainingSession(BaseModel):
    """State of one training interaction, discarded once it ends."""

    session_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    supplier: str
    raw_invoice_text: str
    annotations: TrainingAnnotations
    status: Literal["requested", "annotated", "generated", "persisted", "abandoned"] = (
        "requested"
    )
    started_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    success: bool | None = None
    algorithm: LearnedAlgorithm | None = None


class NeedsTrainingResponse(BaseModel):
    """Returned instead of line items for a supplier with no known layout."""

    needs_training: Literal[True] = True
    supplier: str
    training_session: TrainingSession
    raw_text: str
    message: str


class TrainingOutcome(BaseModel):
    """Result of completing a training session."""

    success: bool
    algorithm: LearnedAlgorithm
    validation: ValidationReport
    result: ExtractionResult | None = None


class PatternDebugInfo(BaseModel):
    name: str
    regex: str
    compiled: bool
    error: str | None = None
    match_count: int = 0
    sample_matches: list[dict[str, str | None]] = Field(default_factory=list)


class AlgorithmDebugReport(BaseModel):
    """What each stored pattern does against a given text."""

    supplier: str
    version: str
    patterns: list[PatternDebugInfo]
    line_items_extracted: int = 0


def ensure_compiles(algorithm: LearnedAlgorithm) -> None:
    """Raise ModelFormatError if any stored pattern fails to compile."""
    compile_pattern(algorithm.patterns.line_items.regex, algorithm.patterns.line_items.flags)
    for field_pattern in (algorithm.patterns.invoice_number, algorithm.patterns.invoice_date):
        if field_pattern is not None:
            compile_pattern(field_pattern.regex, field_pattern.flags)
