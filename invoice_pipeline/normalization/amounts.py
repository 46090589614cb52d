"""Parsing helpers for amounts, dates and supplier names as printed on invoices."""

import re
from datetime import date

_CURRENCY_SYMBOLS = re.compile(r"[R$€£¥₹\s,]")
_DATE_PATTERN = re.compile(r"^\s*(\d{1,2})[/.-](\d{1,2})[/.-](\d{2,4})\s*$")
_NON_ALNUM = re.compile(r"[^a-z0-9]")


def parse_amount(raw: str | float | int | None) -> float | None:
    """Parse a printed amount such as 'R1,933.31' or '$25.99'.

    Returns:
        The numeric value, or None when nothing numeric remains
    """
    if raw is None:
        return None
    if isinstance(raw, int | float) and not isinstance(raw, bool):
        return float(raw)
    cleaned = _CURRENCY_SYMBOLS.sub("", str(raw))
    if not cleaned:
        return None
    try:
        return float(cleaned)
    except ValueError:
        return None


def parse_invoice_date(raw: str | None) -> date | None:
    """Parse a day-first date (DD/MM/YY or DD/MM/YYYY).

    Two-digit years below 50 map to 20YY, the rest to 19YY.
    """
    if not raw:
        return None
    match = _DATE_PATTERN.match(raw)
    if not match:
        return None
    day, month, year = (int(part) for part in match.groups())
    if year < 100:
        year += 2000 if year < 50 else 1900
    try:
        return date(year, month, day)
    except ValueError:
        return None


def normalize_supplier_key(name: str | None) -> str:
    """Key used to store learned algorithms: lowercase, alphanumeric only.

    'MEDIS (PTY) LTD' and 'medis pty ltd' both become 'medisptyltd'.
    """
    if not name:
        return ""
    return _NON_ALNUM.sub("", name.lower())
