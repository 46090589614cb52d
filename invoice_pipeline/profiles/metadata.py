"""Invoice header/footer metadata and supplier-name detection from raw text."""

import logging
import re

from invoice_pipeline.extraction.schema import InvoiceMetadata
from invoice_pipeline.normalization.amounts import parse_amount, parse_invoice_date

logger = logging.getLogger(__name__)

UNKNOWN_SUPPLIER = "Unknown Supplier"

_VALUE = r"[ \t]*[:#]?[ \t]*([A-Z0-9][A-Z0-9/-]*\d[A-Z0-9/-]*)"
INVOICE_NUMBER_PATTERNS = (
    re.compile(r"Document[ \t]*No\.?" + _VALUE, re.IGNORECASE),
    re.compile(r"Invoice[ \t]*(?:Number|No\.?|#)" + _VALUE, re.IGNORECASE),
    re.compile(r"Order[ \t]*(?:Number|No\.?|#)" + _VALUE, re.IGNORECASE),
    re.compile(r"Invoice" + _VALUE, re.IGNORECASE),
    re.compile(r"\b(IN\d{5,}(?:-[A-Z0-9]+)?)\b"),
)

_DATE = r"(\d{1,2}/\d{1,2}/\d{2,4})"
DATE_PATTERNS = (
    re.compile(r"(?:Invoice[ \t]*)?Date[ \t]*:?[ \t]*" + _DATE, re.IGNORECASE),
    re.compile(r"\b" + _DATE + r"\b"),
)

_MONEY = r"[ \t]*:?[ \t]*[R$€£]?[ \t]*(\d[\d,]*\.\d{2})"
TOTAL_PATTERNS = (
    re.compile(
        r"^[ \t]*(?:Grand[ \t]+)?TOTAL(?:[ \t]+(?:due|payable|incl\.?[ \t]*(?:vat|tax)))?" + _MONEY,
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(r"Total[ \t]+nett[ \t]+price" + _MONEY, re.IGNORECASE),
    re.compile(r"Amount[ \t]+due" + _MONEY, re.IGNORECASE),
)
EXCL_TAX_PATTERNS = (
    re.compile(r"Amount[ \t]+excl\.?[ \t]*(?:tax|vat)" + _MONEY, re.IGNORECASE),
    re.compile(r"Total[ \t]+excl\.?[ \t]*(?:tax|vat)" + _MONEY, re.IGNORECASE),
    re.compile(r"Sub-?total" + _MONEY, re.IGNORECASE),
)
TAX_PATTERNS = (
    re.compile(
        r"^[ \t]*(?:Tax|VAT)(?:[ \t]*\(?\d+(?:\.\d+)?%\)?)?" + _MONEY, re.IGNORECASE | re.MULTILINE
    ),
)
CURRENCY_AMOUNT = re.compile(r"R[ \t]?(\d[\d,]*\.\d{2})")

CURRENCY_SYMBOLS = (
    (re.compile(r"\bZAR\b|(?<![A-Za-z])R\d"), "ZAR"),
    (re.compile(r"\bUSD\b|\$"), "USD"),
    (re.compile(r"\bEUR\b|€"), "EUR"),
    (re.compile(r"\bGBP\b|£"), "GBP"),
)

HEADER_KEYWORDS = ("invoice", "date", "total", "amount", "quantity", "description", "tax")

# the last-resort total is taken from the invoice footer only
FOOTER_WINDOW = 500
MIN_FOOTER_TOTAL = 100


def extract_metadata(text: str, default_currency: str | None = None) -> InvoiceMetadata:
    """Pull invoice number, date, totals, tax and currency out of raw text.

    Args:
        text: Raw invoice text
        default_currency: Used when no currency marker is found

    Returns:
        InvoiceMetadata with whatever could be found
    """
    raw_date = _first_group(DATE_PATTERNS, text)
    parsed_date = parse_invoice_date(raw_date)

    metadata = InvoiceMetadata(
        invoice_number=_first_group(INVOICE_NUMBER_PATTERNS, text),
        date=parsed_date.isoformat() if parsed_date else raw_date,
        total_amount=_first_amount(TOTAL_PATTERNS, text) or _footer_total(text),
        total_excluding_tax=_first_amount(EXCL_TAX_PATTERNS, text),
        tax_amount=_first_amount(TAX_PATTERNS, text),
        currency=detect_currency(text) or default_currency,
    )
    logger.debug(f"Extracted metadata: {metadata.model_dump()}")
    return metadata


def detect_currency(text: str) -> str | None:
    for pattern, code in CURRENCY_SYMBOLS:
        if pattern.search(text):
            return code
    return None


def guess_supplier_name(text: str) -> str:
    """Heuristic supplier name from the top of the invoice.

    Returns the first of the first ten lines that is 3-50 characters, starts
    with a letter and is not a header label; UNKNOWN_SUPPLIER otherwise.
    """
    for line in text.splitlines()[:10]:
        candidate = line.strip()
        if not (3 <= len(candidate) <= 50) or not candidate[0].isalpha():
            continue
        if candidate.lower().startswith(HEADER_KEYWORDS):
            continue
        return candidate
    return UNKNOWN_SUPPLIER


def _first_group(patterns: tuple[re.Pattern[str], ...], text: str) -> str | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match.group(1).strip()
    return None


def _first_amount(patterns: tuple[re.Pattern[str], ...], text: str) -> float | None:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            amount = parse_amount(match.group(1))
            if amount:
                return amount
    return None


def _footer_total(text: str) -> float | None:
    amounts = [parse_amount(value) or 0 for value in CURRENCY_AMOUNT.findall(text[-FOOTER_WINDOW:])]
    candidates = [amount for amount in amounts if amount > MIN_FOOTER_TOTAL]
    return max(candidates) if candidates else None
