"""Unit tests for tolerant model-output JSON parsing."""

import pytest

from invoice_pipeline.extraction.json_repair import (
    extract_balanced_object,
    parse_json_array,
    parse_possibly_truncated,
    remove_trailing_commas,
    repair_truncated_json,
    scrape_partial_invoice,
    strip_code_fences,
)
from invoice_pipeline.shared.errors import ModelFormatError


def test_strip_code_fences() -> None:
    assert strip_code_fences('```json\n[{"a": 1}]\n```') == '[{"a": 1}]'
    assert strip_code_fences('  {"a": 1} ') == '{"a": 1}'


def test_remove_trailing_commas() -> None:
    assert remove_trailing_commas('{"a": [1, 2,], }') == '{"a": [1, 2]}'


class TestParseJsonArray:
    def test_array_with_commentary(self) -> None:
        """Should find the array inside surrounding prose."""
        items = parse_json_array('Here you go: [{"description": "A"}, {"description": "B"}] done')

        assert items == [{"description": "A"}, {"description": "B"}]

    def test_salvages_objects_from_broken_array(self) -> None:
        """Should keep each flat object that parses on its own."""
        text = '[{"description": "A", "quantity": 1},\n{"description": "B", broken}\n'

        assert parse_json_array(text) == [{"description": "A", "quantity": 1}]

    def test_nothing_usable(self) -> None:
        with pytest.raises(ModelFormatError):
            parse_json_array("I could not find any line items.")


def test_extract_balanced_object_honours_strings() -> None:
    text = 'prefix {"a": "}", "b": {"c": 1}} suffix {"d": 2}'

    assert extract_balanced_object(text) == '{"a": "}", "b": {"c": 1}}'
    assert extract_balanced_object("no braces") is None
    assert extract_balanced_object('{"open": ') is None


class TestTruncationRepair:
    """Complete items before the cut survive, the partial tail is dropped."""

    def test_cut_inside_string(self) -> None:
        text = '{"supplier": "X", "lineItems": [{"d": "A", "q": 1}, {"d": "Bro'

        assert repair_truncated_json(text) == {
            "supplier": "X",
            "lineItems": [{"d": "A", "q": 1}],
        }

    def test_cut_after_complete_item(self) -> None:
        text = '{"lineItems": [{"d": "A"}, {"d": "B"},'

        assert repair_truncated_json(text) == {"lineItems": [{"d": "A"}, {"d": "B"}]}

    def test_unrepairable(self) -> None:
        with pytest.raises(ModelFormatError):
            repair_truncated_json('"just a string')


class TestParsePossiblyTruncated:
    def test_trailing_commentary_ignored(self) -> None:
        assert parse_possibly_truncated('{"a": 1} hope this helps {"b": 2}') == {"a": 1}

    def test_fenced_with_trailing_commas(self) -> None:
        assert parse_possibly_truncated('```json\n{"a": [1, 2,]}\n```') == {"a": [1, 2]}

    def test_truncated_array(self) -> None:
        assert parse_possibly_truncated('[{"d": "A"}, {"d": "Bu') == [{"d": "A"}]

    def test_no_json(self) -> None:
        with pytest.raises(ModelFormatError):
            parse_possibly_truncated("no structure here")


def test_scrape_partial_invoice() -> None:
    text = (
        '{"supplier": "Medis", "invoiceNumber": "IN1", "totalAmount": 123.45, '
        '"lineItems": [{"description": "A", "quantity": 1}, {"description": "B", "qua'
    )
    scraped = scrape_partial_invoice(text)

    assert scraped["supplier"] == "Medis"
    assert scraped["invoiceNumber"] == "IN1"
    assert scraped["totalAmount"] == 123.45
    assert scraped["lineItems"] == [{"description": "A", "quantity": 1}]
