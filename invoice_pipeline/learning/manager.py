"""Per-supplier training and application of learned extraction algorithms.

Lifecycle per supplier (keyed by the normalised supplier name):

    unknown -> training requested -> annotated -> generated -> persisted
    persisted -> applied (every later invoice)

Generation asks the text model for a JSON algorithm first and falls back to
a hand-built template on any transport, format or validation failure, so a
training session always ends with a persisted algorithm.
"""

import json
import logging
import re
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from invoice_pipeline.extraction.base import TextModelProvider
from invoice_pipeline.extraction.json_repair import (
    extract_balanced_object,
    remove_trailing_commas,
    strip_code_fences,
)
from invoice_pipeline.extraction.schema import (
    ExtractionMethod,
    ExtractionResult,
    LineItem,
    build_line_item,
)
from invoice_pipeline.learning.repository import AlgorithmRepository
from invoice_pipeline.learning.schema import (
    LINE_ITEM_FIELDS,
    AlgorithmDebugReport,
    AlgorithmPatterns,
    FieldPattern,
    LearnedAlgorithm,
    LineItemPattern,
    PatternDebugInfo,
    ProcessingRules,
    TrainingAnnotations,
    TrainingOutcome,
    TrainingSession,
    ValidationReport,
    compile_pattern,
    ensure_compiles,
)
from invoice_pipeline.learning.templates import build_manual_algorithm
from invoice_pipeline.normalization.amounts import (
    normalize_supplier_key,
    parse_amount,
    parse_invoice_date,
)
from invoice_pipeline.normalization.tax import exclusive_of_tax, within_tolerance
from invoice_pipeline.profiles.metadata import extract_metadata
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import (
    AlgorithmNotFound,
    ModelFormatError,
    ModelTransportError,
    TrainingIncomplete,
)

logger = logging.getLogger(__name__)

ALGORITHM_MAX_TOKENS = 3000

# Weighted validation score; success lifts the informational accuracy to the floor
LINE_ITEM_WEIGHT = 60
INVOICE_NUMBER_WEIGHT = 20
INVOICE_DATE_WEIGHT = 20
SUCCESS_ACCURACY_FLOOR = 70.0

# camelCase keys produced by the model -> LineItemPattern group names
GROUP_ALIASES = {
    "unitPrice": "unit_price",
    "discountPercent": "discount_percent",
    "discount": "discount_percent",
    "netUnitPrice": "net_unit_price",
    "totalPrice": "total_price",
    "netPrice": "total_price",
    "unitMultiplier": "unit_multiplier",
    "name": "description",
}

DEBUG_SAMPLE_SIZE = 3


class SupplierLearningManager:
    """Trains, stores and applies per-supplier extraction algorithms."""

    def __init__(
        self,
        settings: Settings,
        repository: AlgorithmRepository,
        text_provider: TextModelProvider | None = None,
    ) -> None:
        """Initialize the learning manager.

        Args:
            settings: Application settings
            repository: Where algorithms are persisted
            text_provider: Model used for AI generation; manual templates only when None
        """
        self.settings = settings
        self.repository = repository
        self.text_provider = text_provider

    def needs_training(self, supplier: str) -> bool:
        """True iff no learned algorithm is stored for the supplier."""
        return self.repository.get(normalize_supplier_key(supplier)) is None

    def start_training(self, supplier: str, raw_text: str) -> TrainingSession:
        """Open a training session pre-filled with sensible annotation defaults."""
        session = TrainingSession(
            supplier=supplier,
            raw_invoice_text=raw_text,
            annotations=TrainingAnnotations(
                supplier=supplier,
                tax_rate=self.settings.default_tax_rate,
                currency=self.settings.default_currency,
            ),
        )
        logger.info(f"Started training session {session.session_id} for '{supplier}'")
        return session

    def abandon_training(self, session: TrainingSession) -> TrainingSession:
        """Close a session without persisting anything."""
        logger.info(f"Training session {session.session_id} for '{session.supplier}' abandoned")
        return session.model_copy(update={"status": "abandoned", "success": False})

    async def process_annotations(
        self,
        annotations: TrainingAnnotations,
        raw_text: str,
        session: TrainingSession | None = None,
    ) -> TrainingOutcome:
        """Generate, validate and persist an algorithm from user annotations.

        When a session is given, the algorithm is stored under the session's
        supplier so the supplier that triggered training stops needing it.

        Args:
            annotations: User-supplied example rows and invoice values
            raw_text: Invoice text the annotations refer to
            session: Open training session, if any

        Returns:
            TrainingOutcome with the persisted algorithm and its validation report

        Raises:
            TrainingIncomplete: Session was abandoned or annotations are unusable
        """
        if session is not None:
            if session.status == "abandoned":
                raise TrainingIncomplete(f"Training session {session.session_id} was abandoned")
            annotations = annotations.model_copy(update={"supplier": session.supplier})
        annotations.ensure_complete()

        algorithm: LearnedAlgorithm | None = None
        validation: ValidationReport | None = None
        try:
            algorithm = await self.generate_algorithm(annotations, raw_text)
            validation = self.validate_algorithm(algorithm, raw_text, annotations)
            if not validation.success:
                logger.warning(
                    f"AI algorithm for '{annotations.supplier}' failed validation: "
                    f"{validation.errors}"
                )
                algorithm = None
        except (ModelTransportError, ModelFormatError) as e:
            logger.warning(f"AI algorithm generation failed for '{annotations.supplier}': {e}")
            algorithm = None
        except Exception:
            logger.exception(f"AI algorithm generation crashed for '{annotations.supplier}'")
            algorithm = None

        if algorithm is None or validation is None:
            algorithm = build_manual_algorithm(annotations, raw_text)
            validation = self.validate_algorithm(algorithm, raw_text, annotations)

        algorithm = self.save_algorithm(algorithm.model_copy(update={"validation": validation}))
        logger.info(
            f"Persisted {algorithm.generated_by} algorithm v{algorithm.version} for "
            f"'{algorithm.supplier}' (accuracy {validation.accuracy:.0f}%)"
        )
        return TrainingOutcome(
            success=validation.success, algorithm=algorithm, validation=validation
        )

    async def generate_algorithm(
        self, annotations: TrainingAnnotations, raw_text: str
    ) -> LearnedAlgorithm:
        """Ask the text model for an algorithm.

        Raises:
            ModelTransportError: No provider, provider unavailable or request failed
            ModelFormatError: Response is not a usable algorithm
        """
        if self.text_provider is None or not await self.text_provider.is_available():
            raise ModelTransportError("Text model not available for algorithm generation")

        prompt = build_algorithm_prompt(annotations, raw_text)
        response = await self.text_provider.generate(prompt, max_tokens=ALGORITHM_MAX_TOKENS)
        algorithm = parse_algorithm_response(response, annotations)
        logger.info(f"Text model generated algorithm for '{annotations.supplier}'")
        return algorithm

    def validate_algorithm(
        self,
        algorithm: LearnedAlgorithm,
        raw_text: str,
        annotations: TrainingAnnotations,
    ) -> ValidationReport:
        """Check an algorithm against its own training text.

        Success means the line pattern matched at least once, or both the
        invoice-number and date patterns matched. Accuracy is informational.
        """
        errors: list[str] = []
        line_matches = 0
        try:
            line_regex = compile_pattern(
                algorithm.patterns.line_items.regex, algorithm.patterns.line_items.flags
            )
            line_matches = sum(1 for _ in line_regex.finditer(raw_text))
        except ModelFormatError as e:
            errors.append(f"Line item regex error: {e}")

        number_matched = self._check_field(
            algorithm.patterns.invoice_number,
            annotations.invoice_number,
            raw_text,
            "Invoice number",
            errors,
        )
        date_matched = self._check_field(
            algorithm.patterns.invoice_date,
            annotations.invoice_date,
            raw_text,
            "Invoice date",
            errors,
        )

        expected = len(annotations.line_items)
        score = 0.0
        max_score = LINE_ITEM_WEIGHT
        if line_matches and expected:
            score += LINE_ITEM_WEIGHT * min(line_matches / expected, 1.0)
        elif line_matches:
            score += LINE_ITEM_WEIGHT
        if algorithm.patterns.invoice_number is not None and annotations.invoice_number:
            max_score += INVOICE_NUMBER_WEIGHT
            score += INVOICE_NUMBER_WEIGHT if number_matched else 0
        if algorithm.patterns.invoice_date is not None and annotations.invoice_date:
            max_score += INVOICE_DATE_WEIGHT
            score += INVOICE_DATE_WEIGHT if date_matched else 0

        accuracy = score / max_score * 100
        success = line_matches > 0 or (number_matched and date_matched)
        if success:
            accuracy = max(accuracy, SUCCESS_ACCURACY_FLOOR)

        return ValidationReport(
            success=success,
            accuracy=accuracy,
            line_item_matches=line_matches,
            expected_line_items=expected,
            invoice_number_matched=number_matched,
            invoice_date_matched=date_matched,
            errors=errors,
        )

    @staticmethod
    def _check_field(
        pattern: FieldPattern | None,
        expected: str | None,
        text: str,
        label: str,
        errors: list[str],
    ) -> bool:
        if pattern is None or not expected:
            return False
        try:
            value = _search_field(pattern, text)
        except ModelFormatError as e:
            errors.append(f"{label} regex error: {e}")
            return False
        if not value:
            errors.append(f"{label} pattern failed to match")
            return False
        return True

    def save_algorithm(self, algorithm: LearnedAlgorithm) -> LearnedAlgorithm:
        """Persist an algorithm, bumping training_count when retraining."""
        key = algorithm.supplier_key
        existing = self.repository.get(key)
        now = datetime.now(UTC)
        if existing is not None:
            algorithm = algorithm.model_copy(
                update={
                    "created_at": existing.created_at,
                    "updated_at": now,
                    "training_count": existing.training_count + 1,
                }
            )
            logger.info(f"Retraining '{key}' (training #{algorithm.training_count})")
        else:
            algorithm = algorithm.model_copy(update={"updated_at": now, "training_count": 1})
        self.repository.put(key, algorithm)
        return algorithm

    def load_algorithms(self) -> dict[str, LearnedAlgorithm]:
        return self.repository.list_all()

    def apply_algorithm(self, supplier: str, text: str) -> ExtractionResult:
        """Run a stored algorithm against new invoice text.

        Raises:
            AlgorithmNotFound: Nothing stored for the supplier
            ModelFormatError: A stored pattern no longer compiles
        """
        key = normalize_supplier_key(supplier)
        algorithm = self.repository.get(key)
        if algorithm is None:
            raise AlgorithmNotFound(f"No algorithm found for supplier: {key}")

        items = self._extract_line_items(algorithm, text)
        metadata = extract_metadata(text, algorithm.processing.currency)
        updates: dict[str, Any] = {"currency": algorithm.processing.currency}
        number = _search_field(algorithm.patterns.invoice_number, text)
        if number:
            updates["invoice_number"] = number
        raw_date = _search_field(algorithm.patterns.invoice_date, text)
        if raw_date:
            parsed = parse_invoice_date(raw_date)
            updates["date"] = parsed.isoformat() if parsed else raw_date

        logger.info(f"Learned algorithm for '{key}' extracted {len(items)} line items")
        return ExtractionResult(
            method=ExtractionMethod.LEARNED_ALGORITHM,
            supplier=algorithm.supplier,
            invoice_metadata=metadata.model_copy(update=updates),
            line_items=items,
            raw_trace=(
                f"learned-algorithm {algorithm.generated_by} v{algorithm.version}: "
                f"{len(items)} items"
            ),
        )

    def _extract_line_items(self, algorithm: LearnedAlgorithm, text: str) -> list[LineItem]:
        pattern = algorithm.patterns.line_items
        regex = compile_pattern(pattern.regex, pattern.flags)
        items = []
        for match in regex.finditer(text):
            values = _captured_values(match, pattern.groups)
            item = self._process_line(values, match.group(0), algorithm)
            if item is not None:
                items.append(item)
        return items

    def _process_line(
        self, values: dict[str, str], line: str, algorithm: LearnedAlgorithm
    ) -> LineItem | None:
        rules = algorithm.processing
        description = values.get("description") or values.get("code")
        if not description:
            return None

        quantity = parse_amount(values.get("quantity")) or 1.0
        unit = parse_amount(values.get("unit_multiplier")) or 1.0
        total = parse_amount(values.get("total_price"))
        unit_price = parse_amount(values.get("unit_price"))
        if unit_price is None:
            unit_price = parse_amount(values.get("net_unit_price"))
        if unit_price is None and total is not None:
            unit_price = total / quantity
        discount = 0.0
        if rules.has_discounts:
            discount = parse_amount(values.get("discount_percent")) or 0.0
        if rules.prices_include_tax and unit_price is not None:
            unit_price = exclusive_of_tax(unit_price, rules.tax_rate)

        try:
            item = build_line_item(
                code=values.get("code"),
                description=description,
                quantity=quantity * unit,
                unit_price_excl_tax=(unit_price or 0.0) / unit,
                discount_percent=discount,
                tax_rate=rules.tax_rate,
                total_price_as_reported=total,
                currency=rules.currency,
                source=f"learned:{algorithm.supplier_key}",
                original_text=line.strip(),
            )
        except ValidationError as e:
            logger.warning(f"Skipping unusable learned match {line.strip()!r}: {e}")
            return None

        computed = item.net_total_incl_tax if rules.prices_include_tax else item.net_total
        if total is not None and not within_tolerance(
            computed,
            total,
            self.settings.reconciliation_tolerance_percent,
            self.settings.reconciliation_tolerance_floor,
        ):
            item.validation_errors.append(
                f"Total price doesn't match expected calculation: "
                f"computed {computed:.2f}, invoice shows {total:.2f}"
            )
        return item

    def debug_algorithm(self, supplier: str, text: str) -> AlgorithmDebugReport:
        """Report how each stored pattern behaves against the given text.

        Raises:
            AlgorithmNotFound: Nothing stored for the supplier
        """
        key = normalize_supplier_key(supplier)
        algorithm = self.repository.get(key)
        if algorithm is None:
            raise AlgorithmNotFound(f"No algorithm found for supplier: {key}")

        patterns = algorithm.patterns
        infos = [_debug_line_pattern(patterns.line_items, text)]
        for name, field_pattern in (
            ("invoice_number", patterns.invoice_number),
            ("invoice_date", patterns.invoice_date),
        ):
            if field_pattern is not None:
                infos.append(_debug_field_pattern(name, field_pattern, text))

        extracted = 0
        if infos[0].compiled:
            extracted = len(self._extract_line_items(algorithm, text))
        return AlgorithmDebugReport(
            supplier=algorithm.supplier,
            version=algorithm.version,
            patterns=infos,
            line_items_extracted=extracted,
        )

    def get_trained_suppliers(self) -> list[LearnedAlgorithm]:
        return sorted(self.repository.list_all().values(), key=lambda algo: algo.supplier_key)

    def delete_algorithm(self, supplier: str) -> bool:
        key = normalize_supplier_key(supplier)
        removed = self.repository.delete(key)
        if removed:
            logger.info(f"Deleted learned algorithm for '{key}'")
        return removed

    def clear_all_algorithms(self) -> int:
        count = len(self.repository.list_all())
        self.repository.clear()
        logger.info(f"Cleared {count} learned algorithms")
        return count


def build_algorithm_prompt(annotations: TrainingAnnotations, raw_text: str) -> str:
    """Prompt asking the text model for a JSON extraction algorithm."""
    examples = "\n".join(
        f'Item {index}: "{item.name}" | Code: {item.code or "-"} | Qty: {item.quantity} | '
        f"Unit Price: {item.unit_price} | Net Price: {item.net_price}"
        + (f" | Discount: {item.discount}%" if item.discount else "")
        for index, item in enumerate(annotations.line_items, start=1)
    )
    sample_lines = _lines_containing(raw_text, [item.name for item in annotations.line_items])
    number_regex = json.dumps(re.escape(annotations.invoice_number or ""))
    date_regex = json.dumps(re.escape(annotations.invoice_date or ""))

    return f"""You are a JSON generator. Create a valid JSON extraction algorithm.

SUPPLIER: {annotations.supplier}
INVOICE NUMBER: "{annotations.invoice_number or ''}"
INVOICE DATE: "{annotations.invoice_date or ''}"
LINE ITEMS: {len(annotations.line_items)} items

ANNOTATED LINE ITEMS:
{examples}

INVOICE LINES CONTAINING THESE ITEMS:
{sample_lines or '(not found verbatim)'}

CREATE SIMPLE REGEX PATTERNS.
USE THESE RULES:
- Use [ \\t]+ for whitespace inside a line
- Use .+? for text (non-greedy)
- Use \\d+(?:\\.\\d+)? for decimal numbers
- Escape special characters
- One match per invoice line item

Return ONLY valid JSON (no markdown, no extra text):

{{
  "supplier": {json.dumps(annotations.supplier)},
  "patterns": {{
    "lineItems": {{
      "regex": "^(.+?)[ \\\\t]+(\\\\d+(?:\\\\.\\\\d+)?)[ \\\\t]+(\\\\d+(?:\\\\.\\\\d+)?)$",
      "groups": {{"description": 1, "quantity": 2, "unitPrice": 3}},
      "multiline": true
    }},
    "invoiceNumber": {{"regex": {number_regex}, "group": 0}},
    "invoiceDate": {{"regex": {date_regex}, "group": 0}}
  }}
}}"""


def parse_algorithm_response(response: str, annotations: TrainingAnnotations) -> LearnedAlgorithm:
    """Turn a model response into a compiled-checked LearnedAlgorithm.

    Processing rules come from the annotations, not from the model.

    Raises:
        ModelFormatError: No JSON object, missing supplier/patterns, or bad regex
    """
    block = extract_balanced_object(strip_code_fences(response))
    if block is None:
        raise ModelFormatError("No JSON object in algorithm response")
    try:
        data = json.loads(remove_trailing_commas(block))
    except json.JSONDecodeError as e:
        raise ModelFormatError(f"Algorithm response is not valid JSON: {e}") from e

    if not isinstance(data, dict) or not data.get("supplier") or not data.get("patterns"):
        raise ModelFormatError("Missing required fields in algorithm")
    patterns = data["patterns"]
    line_data = patterns.get("lineItems") if isinstance(patterns, dict) else None
    if not isinstance(line_data, dict) or not line_data.get("regex"):
        raise ModelFormatError("Algorithm has no line item pattern")

    try:
        algorithm = LearnedAlgorithm(
            supplier=annotations.supplier,
            patterns=AlgorithmPatterns(
                line_items=LineItemPattern(
                    regex=line_data["regex"],
                    flags="gmi" if line_data.get("multiline", True) else "gi",
                    groups=_normalise_groups(line_data.get("groups") or {}),
                ),
                invoice_number=_field_pattern(patterns.get("invoiceNumber")),
                invoice_date=_field_pattern(patterns.get("invoiceDate")),
            ),
            processing=ProcessingRules(
                currency=annotations.currency,
                tax_rate=annotations.tax_rate,
                prices_include_tax=bool(annotations.prices_include_tax),
                has_discounts=annotations.has_discounts
                or any(item.discount > 0 for item in annotations.line_items),
                date_format=annotations.date_format,
            ),
            generated_by="ai",
        )
    except (ValidationError, TypeError, ValueError) as e:
        raise ModelFormatError(f"Algorithm response has invalid structure: {e}") from e

    ensure_compiles(algorithm)
    return algorithm


def _normalise_groups(raw_groups: dict[str, Any]) -> dict[str, int | str]:
    groups: dict[str, int | str] = {}
    for key, ref in raw_groups.items():
        field = GROUP_ALIASES.get(key, key)
        if field not in LINE_ITEM_FIELDS or ref in (None, "", 0):
            continue
        if isinstance(ref, str) and ref.isdigit():
            ref = int(ref)
        if isinstance(ref, int | str) and not isinstance(ref, bool):
            groups[field] = ref
    return groups


def _field_pattern(data: Any) -> FieldPattern | None:
    if not isinstance(data, dict) or not data.get("regex"):
        return None
    return FieldPattern(regex=str(data["regex"]), flags="i", group=int(data.get("group", 1)))


def _lines_containing(text: str, needles: list[str]) -> str:
    wanted = [needle.lower() for needle in needles if needle.strip()]
    return "\n".join(
        line.strip() for line in text.splitlines() if any(n in line.lower() for n in wanted)
    )


def _search_field(pattern: FieldPattern | None, text: str) -> str | None:
    if pattern is None:
        return None
    match = compile_pattern(pattern.regex, pattern.flags).search(text)
    if not match:
        return None
    try:
        value = match.group(pattern.group)
    except IndexError:
        return None
    return value.strip() if value else None


def _captured_values(match: re.Match[str], groups: dict[str, int | str]) -> dict[str, str]:
    values = {}
    for field, ref in groups.items():
        try:
            value = match.group(ref)
        except IndexError:
            continue
        if value:
            values[field] = value.strip()
    return values


def _debug_line_pattern(pattern: LineItemPattern, text: str) -> PatternDebugInfo:
    try:
        regex = compile_pattern(pattern.regex, pattern.flags)
    except ModelFormatError as e:
        return PatternDebugInfo(
            name="line_items", regex=pattern.regex, compiled=False, error=str(e)
        )
    matches = list(regex.finditer(text))
    samples: list[dict[str, str | None]] = [
        {"match": m.group(0).strip(), **_captured_values(m, pattern.groups)}
        for m in matches[:DEBUG_SAMPLE_SIZE]
    ]
    return PatternDebugInfo(
        name="line_items",
        regex=pattern.regex,
        compiled=True,
        match_count=len(matches),
        sample_matches=samples,
    )


def _debug_field_pattern(name: str, pattern: FieldPattern, text: str) -> PatternDebugInfo:
    try:
        value = _search_field(pattern, text)
    except ModelFormatError as e:
        return PatternDebugInfo(name=name, regex=pattern.regex, compiled=False, error=str(e))
    return PatternDebugInfo(
        name=name,
        regex=pattern.regex,
        compiled=True,
        match_count=1 if value else 0,
        sample_matches=[{"value": value}] if value else [],
    )
