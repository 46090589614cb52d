"""Layout-agnostic line scan used when no supplier profile yields items.

Any line with at least two price-like tokens and no header/footer keyword is
taken as a candidate row. The first price is read as the unit price, the last
as the printed total, and whatever text is left after removing prices,
quantities and a leading product code becomes the description.
"""

import logging
import re

from invoice_pipeline.extraction.schema import LineItem, build_line_item
from invoice_pipeline.normalization.amounts import parse_amount

logger = logging.getLogger(__name__)

MIN_LINE_LENGTH = 15

PRICE_TOKEN = re.compile(r"(?<![\w.])[R$€£]?\d[\d,]*\.\d{1,2}\b|(?<![\w.])[R$€£]\d[\d,]*\b")
QUANTITY_MARKER = re.compile(r"\b(\d+(?:\.\d+)?)[ \t]*(?:x[ \t]*(\d+)|Each)\b", re.IGNORECASE)
BARE_INTEGER = re.compile(r"(?<![\w.])(\d{1,5})(?![\w.])")
LEADING_CODE = re.compile(r"^(?=[A-Z0-9-]*\d|[A-Z0-9]+-)[A-Z0-9-]{3,15}(?=\s)")

HEADER_FOOTER_KEYWORDS = re.compile(
    r"\b(?:sub-?total|total|vat|tax|discount|amount|balance|invoice|date|time|"
    r"account|branch|banking|order|shipping|payment|due)\b",
    re.IGNORECASE,
)


def scan_generic_line_items(
    text: str,
    tax_rate: float = 15.0,
    currency: str | None = None,
) -> list[LineItem]:
    """Scan every line of the text for price-bearing rows.

    Args:
        text: Raw invoice text
        tax_rate: VAT percentage applied to every candidate
        currency: Currency recorded on every candidate

    Returns:
        Candidate line items (may be empty)
    """
    items: list[LineItem] = []
    for line in text.splitlines():
        stripped = line.strip()
        if len(stripped) < MIN_LINE_LENGTH or HEADER_FOOTER_KEYWORDS.search(stripped):
            continue
        prices = PRICE_TOKEN.findall(stripped)
        if len(prices) < 2:
            continue

        description = extract_description(stripped)
        if len(description) <= 3:
            continue

        code_match = LEADING_CODE.match(stripped)
        quantity, priced_part = _split_quantity(stripped, prices[0])
        row_prices = PRICE_TOKEN.findall(priced_part) or prices
        unit_price = parse_amount(row_prices[0]) or 0.0
        total = parse_amount(row_prices[-1])

        items.append(
            build_line_item(
                code=code_match.group(0) if code_match else None,
                description=description,
                quantity=quantity,
                unit_price_excl_tax=unit_price,
                tax_rate=tax_rate,
                total_price_as_reported=total,
                currency=currency,
                source="generic-scan",
                original_text=stripped,
            )
        )

    logger.info(f"Generic line scan found {len(items)} candidate items")
    return items


def extract_description(line: str) -> str:
    """Strip leading code, prices, quantity markers and bare numbers from a row."""
    description = LEADING_CODE.sub("", line)
    description = QUANTITY_MARKER.sub(" ", description)
    description = PRICE_TOKEN.sub(" ", description)
    description = BARE_INTEGER.sub(" ", description)
    return re.sub(r"\s+", " ", description).strip()


def _split_quantity(line: str, first_price: str) -> tuple[float, str]:
    """Return the printed quantity and the part of the row holding its prices."""
    marker = QUANTITY_MARKER.search(line)
    if marker:
        quantity = float(marker.group(1))
        return (quantity if quantity > 0 else 1.0), line[marker.end() :]

    # lone integer column just before the first price
    before = line[: line.find(first_price)]
    integers = BARE_INTEGER.findall(before)
    if integers and int(integers[-1]) > 0:
        return float(integers[-1]), line
    return 1.0, line
