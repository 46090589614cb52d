"""Unit tests for header/footer metadata and supplier-name detection."""

import pytest

from invoice_pipeline.profiles.metadata import (
    UNKNOWN_SUPPLIER,
    detect_currency,
    extract_metadata,
    guess_supplier_name,
)


class TestExtractMetadata:
    def test_medis_footer(self, medis_text: str) -> None:
        metadata = extract_metadata(medis_text)

        assert metadata.invoice_number == "IN326587"
        assert metadata.date == "2025-02-17"
        assert metadata.total_amount == pytest.approx(2223.41)
        assert metadata.total_excluding_tax == pytest.approx(1933.31)
        assert metadata.tax_amount == pytest.approx(290.10)
        assert metadata.currency == "ZAR"

    def test_transpharm_footer(self, transpharm_text: str) -> None:
        metadata = extract_metadata(transpharm_text)

        assert metadata.invoice_number == "TP-2025-001"
        assert metadata.date == "2025-02-15"
        assert metadata.total_amount == pytest.approx(1545.03)
        assert metadata.total_excluding_tax == pytest.approx(1343.50)
        assert metadata.tax_amount == pytest.approx(201.53)

    def test_default_currency_when_none_printed(self, acme_text: str) -> None:
        metadata = extract_metadata(acme_text, default_currency="ZAR")

        assert metadata.invoice_number == "AC-1001"
        assert metadata.currency == "ZAR"
        assert metadata.total_amount == pytest.approx(669.30)

    def test_footer_total_fallback(self) -> None:
        """Should take the largest footer amount when no total label exists."""
        text = "Some header\nPayment received R1,250.00 with thanks\n"

        assert extract_metadata(text).total_amount == pytest.approx(1250.0)

    def test_nothing_found(self) -> None:
        metadata = extract_metadata("hello world")

        assert metadata.invoice_number is None
        assert metadata.date is None
        assert metadata.total_amount is None
        assert metadata.currency is None


@pytest.mark.parametrize(
    "text,expected",
    [("Total USD 10.00", "USD"), ("Price $5.00", "USD"), ("€12,00", "EUR"), ("£3", "GBP")],
)
def test_detect_currency(text: str, expected: str) -> None:
    assert detect_currency(text) == expected


class TestGuessSupplierName:
    def test_first_plausible_line(self, acme_text: str) -> None:
        assert guess_supplier_name(acme_text) == "ACME MEDICAL SUPPLIES"

    def test_skips_header_labels_and_numbers(self) -> None:
        text = "Invoice\n123 Street\nTax Invoice\nBest Supplies Ltd\n"

        assert guess_supplier_name(text) == "Best Supplies Ltd"

    def test_unknown_when_nothing_fits(self) -> None:
        assert guess_supplier_name("") == UNKNOWN_SUPPLIER
        assert guess_supplier_name("12\n\n#\n") == UNKNOWN_SUPPLIER
