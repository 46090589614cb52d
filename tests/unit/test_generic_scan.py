"""Unit tests for the layout-agnostic line scan."""

import pytest

from invoice_pipeline.profiles.generic import extract_description, scan_generic_line_items


def test_scans_tabular_invoice(transpharm_text: str) -> None:
    """Should pick up every product row and skip subtotal/VAT/total lines."""
    items = scan_generic_line_items(transpharm_text, tax_rate=15.0, currency="ZAR")

    assert [item.description for item in items] == [
        "Orthotics Kit Professional",
        "Silicone Toe Separators",
        "Anti-Fungal Cream 50ml",
    ]
    first = items[0]
    assert first.quantity == 2.0
    assert first.unit_price_excl_tax == pytest.approx(450.0)
    assert first.total_price_as_reported == pytest.approx(900.0)
    assert first.source == "generic-scan"
    assert first.currency == "ZAR"


def test_leading_code_and_quantity_marker() -> None:
    text = "AB-123 Widget Deluxe 3 x 2 R10.00 R60.00\n"
    items = scan_generic_line_items(text)

    assert len(items) == 1
    assert items[0].code == "AB-123"
    assert items[0].description == "Widget Deluxe"
    assert items[0].quantity == 3.0
    assert items[0].unit_price_excl_tax == pytest.approx(10.0)
    assert items[0].total_price_as_reported == pytest.approx(60.0)


def test_lines_with_one_price_are_ignored() -> None:
    assert scan_generic_line_items("Delivery charge for order R45.00\n") == []


def test_short_and_keyword_lines_are_ignored() -> None:
    text = "A 1.00 2.00\nTotal amount due R10.00 R20.00\n"

    assert scan_generic_line_items(text) == []


def test_extract_description_strips_numbers() -> None:
    assert extract_description("F-00042 Heel Pad 2 Each R10.00 R20.00") == "Heel Pad"
