"""Hand-built algorithm templates used when AI generation is unavailable.

Building a manual algorithm makes no external calls and always returns a
compilable LearnedAlgorithm, so a training session can always finish.

Line-item templates, tried in order against the training text:
- structural family: code, description, quantity, "x N"/"Each", unit price,
  optional discount, net unit price, total
- example-derived: built from the raw line that contains the user's first
  annotated item, with numeric columns mapped by value
- tabular family: description, quantity, unit price, total
"""

import logging
import re

from invoice_pipeline.learning.schema import (
    AlgorithmPatterns,
    AnnotatedLineItem,
    FieldPattern,
    LearnedAlgorithm,
    LineItemPattern,
    ProcessingRules,
    TrainingAnnotations,
    compile_pattern,
)

logger = logging.getLogger(__name__)

MANUAL_VERSION = "1.0-manual"

STRUCTURED_FAMILY = LineItemPattern(
    regex=(
        r"^([A-Z0-9-]+)[ \t]+(.+?)[ \t]+(\d+(?:\.\d+)?)[ \t]+(?:x[ \t]*(\d+)|Each)[ \t]+"
        r"(\d+(?:\.\d+)?)[ \t]+(?:(\d+(?:\.\d+)?)[ \t]+)?R?(\d+(?:\.\d+)?)[ \t]+"
        r"R(\d+(?:\.\d+)?)[ \t]*$"
    ),
    flags="gm",
    groups={
        "code": 1,
        "description": 2,
        "quantity": 3,
        "unit_multiplier": 4,
        "unit_price": 5,
        "discount_percent": 6,
        "net_unit_price": 7,
        "total_price": 8,
    },
)

TABULAR_FAMILY = LineItemPattern(
    regex=(
        r"^([A-Za-z][^\n]{2,80}?)[ \t]+(\d+(?:\.\d+)?)[ \t]+[R$€£]?(\d[\d,]*\.\d{2})[ \t]+"
        r"[R$€£]?(\d[\d,]*\.\d{2})[ \t]*$"
    ),
    flags="gm",
    groups={"description": 1, "quantity": 2, "unit_price": 3, "total_price": 4},
)

_NUMERIC_TOKEN = re.compile(r"^[R$€£]?\d[\d,]*(?:\.\d+)?$")
_CODE_TOKEN = re.compile(r"^(?=[A-Z0-9-]*\d|[A-Z0-9]+-)[A-Z0-9-]{2,}$")
_NUMERIC_CAPTURE = r"[R$€£]?(\d[\d,]*(?:\.\d+)?)"
_SHAPE_RUNS = re.compile(r"\d+|[A-Za-z]+|.", re.DOTALL)


def build_manual_algorithm(annotations: TrainingAnnotations, raw_text: str) -> LearnedAlgorithm:
    """Create a template algorithm for the annotated supplier.

    Args:
        annotations: User-supplied examples and invoice metadata
        raw_text: Text of the invoice used for training

    Returns:
        A compilable LearnedAlgorithm stamped version '1.0-manual'
    """
    line_items = select_line_item_template(annotations.line_items, raw_text)
    algorithm = LearnedAlgorithm(
        supplier=annotations.supplier,
        patterns=AlgorithmPatterns(
            line_items=line_items,
            invoice_number=field_pattern_for_value(raw_text, annotations.invoice_number),
            invoice_date=field_pattern_for_value(raw_text, annotations.invoice_date),
        ),
        processing=ProcessingRules(
            currency=annotations.currency,
            tax_rate=annotations.tax_rate,
            prices_include_tax=bool(annotations.prices_include_tax),
            has_discounts=annotations.has_discounts
            or any(item.discount > 0 for item in annotations.line_items),
            date_format=annotations.date_format,
        ),
        version=MANUAL_VERSION,
        generated_by="manual",
    )
    logger.info(f"Built manual algorithm for '{annotations.supplier}'")
    return algorithm


def select_line_item_template(
    examples: list[AnnotatedLineItem], raw_text: str
) -> LineItemPattern:
    """Pick the first template that matches at least one line of the text."""
    candidates = [STRUCTURED_FAMILY]
    if examples:
        derived = template_from_example(raw_text, examples[0])
        if derived is not None:
            candidates.append(derived)
    candidates.append(TABULAR_FAMILY)

    for candidate in candidates:
        if compile_pattern(candidate.regex, candidate.flags).search(raw_text):
            return candidate
    return candidates[1] if len(candidates) > 2 else TABULAR_FAMILY


def template_from_example(raw_text: str, example: AnnotatedLineItem) -> LineItemPattern | None:
    """Derive a line regex from the printed row holding an annotated item.

    Returns:
        Pattern whose groups are mapped by comparing captured numbers with the
        annotated quantity, unit price, discount and net price; None when the
        row cannot be found or no price column can be identified
    """
    name_tokens = example.name.lower().split()
    if not name_tokens:
        return None

    for line in raw_text.splitlines():
        tokens = line.split()
        span = _find_span([t.lower() for t in tokens], name_tokens)
        if span is None:
            continue
        pattern = _pattern_from_tokens(tokens, span, example)
        if pattern is not None:
            return pattern
    return None


def _find_span(tokens: list[str], wanted: list[str]) -> tuple[int, int] | None:
    size = len(wanted)
    for start in range(len(tokens) - size + 1):
        if tokens[start : start + size] == wanted:
            return start, start + size
    return None


def _pattern_from_tokens(
    tokens: list[str], span: tuple[int, int], example: AnnotatedLineItem
) -> LineItemPattern | None:
    pieces: list[str] = []
    groups: dict[str, int | str] = {}
    numeric: list[tuple[int, float, bool]] = []  # group, value, follows "x"
    group = 0

    for index, token in enumerate(tokens):
        if index == span[0]:
            group += 1
            groups["description"] = group
            pieces.append("(.+?)")
            continue
        if span[0] < index < span[1]:
            continue
        if _NUMERIC_TOKEN.match(token):
            group += 1
            value = float(token.lstrip("R$€£").replace(",", ""))
            numeric.append((group, value, index > 0 and tokens[index - 1] == "x"))
            pieces.append(_NUMERIC_CAPTURE)
        elif index == 0 and _CODE_TOKEN.match(token):
            group += 1
            groups["code"] = group
            pieces.append("([A-Z0-9-]+)")
        elif token in ("x", "Each"):
            pieces.append(re.escape(token))
        else:
            pieces.append(r"\S+")

    groups.update(_map_numeric_groups(numeric, example))
    if "unit_price" not in groups and "total_price" not in groups:
        return None
    return LineItemPattern(
        regex="^" + r"[ \t]+".join(pieces) + r"[ \t]*$",
        flags="gm",
        groups=groups,
    )


def _map_numeric_groups(
    numeric: list[tuple[int, float, bool]], example: AnnotatedLineItem
) -> dict[str, int]:
    mapping: dict[str, int] = {}
    used: set[int] = set()

    def claim(field: str, target: float | None, from_end: bool = False) -> None:
        if target is None or target <= 0:
            return
        ordered = reversed(numeric) if from_end else iter(numeric)
        for group, value, _ in ordered:
            if group not in used and abs(value - target) < 0.01:
                mapping[field] = group
                used.add(group)
                return

    for group, _, after_x in numeric:
        if after_x:
            mapping["unit_multiplier"] = group
            used.add(group)
            break

    expected_total = example.net_price
    if expected_total is None:
        expected_total = example.quantity * example.unit_price * (1 - example.discount / 100)
    claim("total_price", expected_total, from_end=True)
    claim("quantity", example.quantity)
    claim("unit_price", example.unit_price)
    claim("discount_percent", example.discount)
    return mapping


def field_pattern_for_value(raw_text: str, value: str | None) -> FieldPattern | None:
    """Pattern for a header value such as an invoice number or date.

    When the value is printed after a label on the same line, the pattern is
    the escaped label followed by the value's character shape, so it also
    matches later invoices. Otherwise it is the escaped literal (group 0).
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    position = raw_text.find(value)
    if position == -1:
        return FieldPattern(regex=re.escape(value), group=0)

    line_start = raw_text.rfind("\n", 0, position) + 1
    label_words = raw_text[line_start:position].split()[-3:]
    if not label_words:
        return FieldPattern(regex=re.escape(value), group=0)

    label = r"[ \t]*".join(re.escape(word) for word in label_words)
    return FieldPattern(regex=rf"{label}[ \t]*({value_shape(value)})", flags="i", group=1)


def value_shape(value: str) -> str:
    """Regex matching strings shaped like value: digit runs, letter runs, literals."""
    parts = []
    for run in _SHAPE_RUNS.findall(value):
        if run.isdigit():
            parts.append(r"\d+")
        elif run.isalpha():
            parts.append("[A-Za-z]+")
        else:
            parts.append(re.escape(run))
    return "".join(parts)
