"""Line-item money math.

compute_line_totals is the only place totals are derived. Extractors hand it
quantity, tax-exclusive unit price, discount and tax rate and copy the result
onto the line item; nothing else recomputes subtotal/net/tax independently.
"""

import math
from typing import Any

from pydantic import BaseModel

DEFAULT_TAX_RATE = 15.0


class LineTotals(BaseModel):
    """Derived monetary fields for one line item."""

    subtotal: float
    discount_amount: float
    net_total: float
    tax_amount: float
    net_total_incl_tax: float


def coerce_non_negative(value: Any) -> float:
    """Turn arbitrary input into a finite, non-negative float.

    Strings are parsed, anything unparseable, negative, NaN or infinite
    becomes 0.0.
    """
    if isinstance(value, bool):
        return 0.0
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number) or number < 0:
        return 0.0
    return number


def compute_line_totals(
    quantity: Any,
    unit_price_excl_tax: Any,
    discount_percent: Any = 0.0,
    tax_rate_percent: Any = None,
) -> LineTotals:
    """Compute subtotal, discount, net, tax and tax-inclusive total.

    Never raises. Discounts above 100% are clamped to 100.

    Args:
        quantity: Units purchased
        unit_price_excl_tax: Price per unit before VAT
        discount_percent: Line discount, 0-100
        tax_rate_percent: VAT percentage, DEFAULT_TAX_RATE when None

    Returns:
        LineTotals derived purely from the inputs
    """
    qty = coerce_non_negative(quantity)
    price = coerce_non_negative(unit_price_excl_tax)
    discount = min(coerce_non_negative(discount_percent), 100.0)
    rate = DEFAULT_TAX_RATE if tax_rate_percent is None else coerce_non_negative(tax_rate_percent)

    subtotal = qty * price
    discount_amount = subtotal * discount / 100
    net_total = subtotal - discount_amount
    tax_amount = net_total * rate / 100

    return LineTotals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        net_total=net_total,
        tax_amount=tax_amount,
        net_total_incl_tax=net_total + tax_amount,
    )


def within_tolerance(
    computed: float,
    reported: float,
    percent: float = 5.0,
    floor: float = 1.0,
) -> bool:
    """Check |reported - computed| <= max(percent% of computed, floor)."""
    allowed = max(abs(computed) * percent / 100, floor)
    return abs(reported - computed) <= allowed


def exclusive_of_tax(price_incl_tax: float, tax_rate_percent: float) -> float:
    """Strip VAT from a tax-inclusive price."""
    return coerce_non_negative(price_incl_tax) / (1 + coerce_non_negative(tax_rate_percent) / 100)
