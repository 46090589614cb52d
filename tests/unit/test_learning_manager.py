"""Unit tests for SupplierLearningManager.

Covers the training lifecycle (needs training -> annotated -> persisted),
AI generation with manual fallback, validation scoring, application of a
stored algorithm to new text, and algorithm management.
"""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from invoice_pipeline.extraction.openai_provider import OpenAITextProvider
from invoice_pipeline.extraction.schema import ExtractionMethod
from invoice_pipeline.learning.manager import (
    ALGORITHM_MAX_TOKENS,
    SupplierLearningManager,
    build_algorithm_prompt,
    parse_algorithm_response,
)
from invoice_pipeline.learning.repository import InMemoryAlgorithmRepository
from invoice_pipeline.learning.schema import (
    AlgorithmPatterns,
    AnnotatedLineItem,
    FieldPattern,
    LearnedAlgorithm,
    LineItemPattern,
    ProcessingRules,
    TrainingAnnotations,
)
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import AlgorithmNotFound, ModelFormatError, TrainingIncomplete

ACME = "ACME MEDICAL SUPPLIES"


def acme_annotations(**overrides: object) -> TrainingAnnotations:
    data: dict[str, object] = {
        "supplier": ACME,
        "line_items": [
            AnnotatedLineItem(name="Heel Cup Gel Large", quantity=2, unit_price=120),
            AnnotatedLineItem(name="Arch Support Insole", quantity=4, unit_price=85.5),
        ],
        "invoice_number": "AC-1001",
        "invoice_date": "03/03/25",
        "total_excluding_tax": 582.0,
        "total_including_tax": 669.3,
        "prices_include_tax": False,
    }
    data.update(overrides)
    return TrainingAnnotations(**data)


def ai_algorithm_json(line_regex: str, multiline: bool = True) -> str:
    return json.dumps(
        {
            "supplier": ACME,
            "patterns": {
                "lineItems": {
                    "regex": line_regex,
                    "groups": {"description": 1, "quantity": 2, "unitPrice": 3, "netPrice": 4},
                    "multiline": multiline,
                },
                "invoiceNumber": {"regex": r"Invoice Number:\s*(\S+)", "group": 1},
                "invoiceDate": {"regex": r"Date:\s*(\S+)", "group": 1},
            },
        }
    )


GOOD_LINE_REGEX = r"^(.+?)[ \t]+(\d+)[ \t]+(\d+\.\d{2})[ \t]+(\d+\.\d{2})$"


@pytest.fixture
def text_provider() -> MagicMock:
    provider = MagicMock()
    provider.provider_name = "fake"
    provider.is_available = AsyncMock(return_value=True)
    provider.generate = AsyncMock(return_value=ai_algorithm_json(GOOD_LINE_REGEX))
    return provider


@pytest.fixture
def repository() -> InMemoryAlgorithmRepository:
    return InMemoryAlgorithmRepository()


@pytest.fixture
def manager(settings: Settings, repository: InMemoryAlgorithmRepository) -> SupplierLearningManager:
    """Manager without a text model, so training always uses manual templates."""
    return SupplierLearningManager(settings, repository)


@pytest.fixture
def ai_manager(
    settings: Settings, repository: InMemoryAlgorithmRepository, text_provider: MagicMock
) -> SupplierLearningManager:
    return SupplierLearningManager(settings, repository, text_provider)


class TestTrainingLifecycle:
    @pytest.mark.asyncio
    async def test_needs_training_flips_after_annotation(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        """Should stop needing training once annotations are processed."""
        assert manager.needs_training(ACME) is True

        outcome = await manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.success is True
        assert manager.needs_training(ACME) is False
        assert manager.needs_training("acme medical supplies") is False
        assert manager.needs_training("Another Supplier") is True

    def test_start_training_defaults(self, manager: SupplierLearningManager) -> None:
        session = manager.start_training(ACME, "raw")

        assert session.status == "requested"
        assert session.raw_invoice_text == "raw"
        assert session.annotations.supplier == ACME
        assert session.annotations.tax_rate == 15.0
        assert session.annotations.currency == "ZAR"
        assert session.annotations.prices_include_tax is None

    @pytest.mark.asyncio
    async def test_abandoned_session_persists_nothing(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        session = manager.abandon_training(manager.start_training(ACME, acme_text))

        assert session.status == "abandoned"
        with pytest.raises(TrainingIncomplete):
            await manager.process_annotations(acme_annotations(), acme_text, session)
        assert manager.needs_training(ACME) is True

    @pytest.mark.asyncio
    async def test_incomplete_annotations_rejected(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        annotations = acme_annotations(
            prices_include_tax=None, total_excluding_tax=None, total_including_tax=None
        )

        with pytest.raises(TrainingIncomplete) as exc_info:
            await manager.process_annotations(annotations, acme_text)

        message = str(exc_info.value)
        assert "prices include tax" in message
        assert "invoice total" in message

    @pytest.mark.asyncio
    async def test_no_line_items_rejected(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        with pytest.raises(TrainingIncomplete, match="at least one line item"):
            await manager.process_annotations(acme_annotations(line_items=[]), acme_text)

    @pytest.mark.asyncio
    async def test_session_supplier_wins(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        """Should store under the supplier that triggered training."""
        session = manager.start_training(ACME, acme_text)

        outcome = await manager.process_annotations(
            acme_annotations(supplier="Acme"), acme_text, session
        )

        assert outcome.algorithm.supplier == ACME
        assert manager.needs_training(ACME) is False
        assert manager.needs_training("Acme") is True

    @pytest.mark.asyncio
    async def test_retraining_increments_count(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        first = await manager.process_annotations(acme_annotations(), acme_text)
        second = await manager.process_annotations(acme_annotations(), acme_text)

        assert first.algorithm.training_count == 1
        assert second.algorithm.training_count == 2
        assert second.algorithm.created_at == first.algorithm.created_at
        assert second.algorithm.updated_at >= first.algorithm.updated_at


class TestGeneration:
    @pytest.mark.asyncio
    async def test_ai_algorithm_is_persisted(
        self,
        ai_manager: SupplierLearningManager,
        text_provider: MagicMock,
        acme_text: str,
    ) -> None:
        outcome = await ai_manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "ai"
        assert outcome.algorithm.patterns.line_items.flags == "gmi"
        assert outcome.algorithm.patterns.line_items.groups == {
            "description": 1,
            "quantity": 2,
            "unit_price": 3,
            "total_price": 4,
        }
        assert outcome.validation.line_item_matches == 2
        assert outcome.validation.accuracy == 100.0
        assert outcome.algorithm.validation == outcome.validation
        assert text_provider.generate.call_args.kwargs["max_tokens"] == ALGORITHM_MAX_TOKENS

    @pytest.mark.asyncio
    async def test_unparseable_answer_falls_back_to_manual(
        self,
        ai_manager: SupplierLearningManager,
        text_provider: MagicMock,
        acme_text: str,
    ) -> None:
        text_provider.generate.return_value = "Sorry, I cannot help with that."

        outcome = await ai_manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "manual"
        assert outcome.algorithm.version == "1.0-manual"
        assert outcome.success is True

    @pytest.mark.asyncio
    async def test_failed_validation_falls_back_to_manual(
        self,
        ai_manager: SupplierLearningManager,
        text_provider: MagicMock,
        acme_text: str,
    ) -> None:
        text_provider.generate.return_value = json.dumps(
            {"supplier": ACME, "patterns": {"lineItems": {"regex": "^NEVER MATCHES$"}}}
        )

        outcome = await ai_manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "manual"

    @pytest.mark.asyncio
    async def test_unavailable_provider_falls_back_to_manual(
        self,
        ai_manager: SupplierLearningManager,
        text_provider: MagicMock,
        acme_text: str,
    ) -> None:
        text_provider.is_available.return_value = False

        outcome = await ai_manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "manual"
        text_provider.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejected_api_key_falls_back_to_manual(
        self,
        settings: Settings,
        repository: InMemoryAlgorithmRepository,
        rejected_openai: OpenAITextProvider,
        acme_text: str,
    ) -> None:
        manager = SupplierLearningManager(settings, repository, rejected_openai)

        outcome = await manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "manual"
        assert outcome.success is True
        assert manager.needs_training(ACME) is False

    @pytest.mark.asyncio
    async def test_unexpected_provider_crash_falls_back_to_manual(
        self,
        ai_manager: SupplierLearningManager,
        text_provider: MagicMock,
        acme_text: str,
    ) -> None:
        text_provider.generate.side_effect = RuntimeError("event loop closed")

        outcome = await ai_manager.process_annotations(acme_annotations(), acme_text)

        assert outcome.algorithm.generated_by == "manual"

    def test_prompt_lists_examples_and_their_lines(self, acme_text: str) -> None:
        prompt = build_algorithm_prompt(acme_annotations(), acme_text)

        assert f"SUPPLIER: {ACME}" in prompt
        assert 'Item 1: "Heel Cup Gel Large"' in prompt
        assert "Heel Cup Gel Large      2    120.00    240.00" in prompt
        assert "LINE ITEMS: 2 items" in prompt


class TestParseAlgorithmResponse:
    def test_aliases_and_unknown_groups(self) -> None:
        response = json.dumps(
            {
                "supplier": "whatever the model says",
                "patterns": {
                    "lineItems": {
                        "regex": r"^(?<name>.+?) (\d+)$",
                        "groups": {"name": "name", "quantity": "2", "bogus": 3},
                        "multiline": False,
                    }
                },
            }
        )

        algorithm = parse_algorithm_response(
            "Here it is:\n```json\n" + response + "\n```", acme_annotations()
        )

        assert algorithm.supplier == ACME
        assert algorithm.patterns.line_items.flags == "gi"
        assert algorithm.patterns.line_items.groups == {"description": "name", "quantity": 2}
        assert algorithm.patterns.invoice_number is None

    @pytest.mark.parametrize(
        "response",
        [
            "no json at all",
            '{"supplier": "X"}',
            '{"supplier": "X", "patterns": {"lineItems": {}}}',
            '{"supplier": "X", "patterns": {"lineItems": {"regex": "([unclosed"}}}',
        ],
    )
    def test_rejects_unusable_answers(self, response: str) -> None:
        with pytest.raises(ModelFormatError):
            parse_algorithm_response(response, acme_annotations())


class TestValidation:
    def test_scores_matches_and_header_fields(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        algorithm = parse_algorithm_response(
            ai_algorithm_json(r"^Heel.+$"), acme_annotations()
        )

        report = manager.validate_algorithm(algorithm, acme_text, acme_annotations())

        assert report.success is True
        assert report.line_item_matches == 1
        assert report.invoice_number_matched is True
        assert report.invoice_date_matched is True
        assert report.accuracy == pytest.approx(30 + 20 + 20)

    def test_header_fields_alone_are_enough(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        algorithm = parse_algorithm_response(
            ai_algorithm_json("^NO LINE$"), acme_annotations()
        )

        report = manager.validate_algorithm(algorithm, acme_text, acme_annotations())

        assert report.success is True
        assert report.line_item_matches == 0
        assert report.accuracy == 70.0

    def test_nothing_matches(self, manager: SupplierLearningManager) -> None:
        algorithm = parse_algorithm_response(ai_algorithm_json("^NO LINE$"), acme_annotations())

        report = manager.validate_algorithm(algorithm, "unrelated text", acme_annotations())

        assert report.success is False
        assert report.accuracy == 0.0
        assert "Invoice number pattern failed to match" in report.errors


class TestApplyAlgorithm:
    @pytest.mark.asyncio
    async def test_applies_to_new_invoice(
        self, manager: SupplierLearningManager, acme_text: str
    ) -> None:
        """Should extract items and header values from a later invoice."""
        await manager.process_annotations(acme_annotations(), acme_text)
        later = acme_text.replace("AC-1001", "AC-1002").replace("03/03/25", "10/04/25")

        result = manager.apply_algorithm(ACME, later)

        assert result.method == ExtractionMethod.LEARNED_ALGORITHM
        assert result.supplier == ACME
        assert result.invoice_metadata.invoice_number == "AC-1002"
        assert result.invoice_metadata.date == "2025-04-10"
        assert result.invoice_metadata.currency == "ZAR"
        assert [item.description for item in result.line_items] == [
            "Heel Cup Gel Large",
            "Arch Support Insole",
        ]
        first = result.line_items[0]
        assert first.quantity == 2.0
        assert first.unit_price_excl_tax == pytest.approx(120.0)
        assert first.net_total == pytest.approx(240.0)
        assert first.source == "learned:acmemedicalsupplies"
        assert first.validation_errors == []

    @pytest.mark.asyncio
    async def test_medis_structured_layout(
        self, manager: SupplierLearningManager, medis_text: str
    ) -> None:
        annotations = TrainingAnnotations(
            supplier="MEDIS (PTY) LTD",
            line_items=[
                AnnotatedLineItem(
                    name="Met & Bunion Protector Sleeve Size L",
                    code="F-00042-47B",
                    quantity=4,
                    unit_price=300.33,
                    discount=25,
                    net_price=900.99,
                )
            ],
            invoice_number="IN326587",
            invoice_date="17/02/25",
            total_including_tax=2223.41,
            prices_include_tax=False,
        )
        await manager.process_annotations(annotations, medis_text)

        items = manager.apply_algorithm("Medis (Pty) Ltd", medis_text).line_items

        assert [item.code for item in items] == ["F-00042-47B", "F-00042-46B", "F-00033-03", "P-PB"]
        assert items[0].discount_percent == 25.0
        assert items[0].net_total == pytest.approx(900.99)
        assert items[2].quantity == 6.0
        assert items[2].unit_price_excl_tax == pytest.approx(41.26)
        assert all(item.validation_errors == [] for item in items)

    def test_prices_including_tax(
        self, manager: SupplierLearningManager, repository: InMemoryAlgorithmRepository
    ) -> None:
        algorithm = LearnedAlgorithm(
            supplier="Gross Prices",
            patterns=AlgorithmPatterns(
                line_items=LineItemPattern(
                    regex=r"^(\w+) (\d+) (\d+\.\d{2}) (\d+\.\d{2})$",
                    groups={"description": 1, "quantity": 2, "unit_price": 3, "total_price": 4},
                )
            ),
            processing=ProcessingRules(prices_include_tax=True, tax_rate=15.0),
        )
        repository.put(algorithm.supplier_key, algorithm)

        item = manager.apply_algorithm("Gross Prices", "Widget 2 115.00 230.00\n").line_items[0]

        assert item.unit_price_excl_tax == pytest.approx(100.0)
        assert item.net_total_incl_tax == pytest.approx(230.0)
        assert item.validation_errors == []

    def test_total_mismatch_is_flagged(
        self, manager: SupplierLearningManager, repository: InMemoryAlgorithmRepository
    ) -> None:
        algorithm = LearnedAlgorithm(
            supplier="Net Prices",
            patterns=AlgorithmPatterns(
                line_items=LineItemPattern(
                    regex=r"^(\w+) (\d+) (\d+\.\d{2}) (\d+\.\d{2})$",
                    groups={"description": 1, "quantity": 2, "unit_price": 3, "total_price": 4},
                )
            ),
        )
        repository.put(algorithm.supplier_key, algorithm)

        item = manager.apply_algorithm("Net Prices", "Widget 2 100.00 900.00\n").line_items[0]

        assert "doesn't match" in item.validation_errors[0]

    def test_unknown_supplier(self, manager: SupplierLearningManager) -> None:
        with pytest.raises(AlgorithmNotFound):
            manager.apply_algorithm("Nobody", "text")


class TestManagement:
    @pytest.mark.asyncio
    async def test_list_delete_clear(
        self, manager: SupplierLearningManager, acme_text: str, transpharm_text: str
    ) -> None:
        await manager.process_annotations(acme_annotations(), acme_text)
        await manager.process_annotations(
            acme_annotations(supplier="Zulu Supplies"), transpharm_text
        )

        assert [a.supplier for a in manager.get_trained_suppliers()] == [ACME, "Zulu Supplies"]
        assert set(manager.load_algorithms()) == {"acmemedicalsupplies", "zulusupplies"}

        assert manager.delete_algorithm("zulu supplies") is True
        assert manager.delete_algorithm("zulu supplies") is False
        assert manager.clear_all_algorithms() == 1
        assert manager.get_trained_suppliers() == []

    @pytest.mark.asyncio
    async def test_debug_report(self, manager: SupplierLearningManager, acme_text: str) -> None:
        await manager.process_annotations(acme_annotations(), acme_text)

        report = manager.debug_algorithm(ACME, acme_text)

        assert report.version == "1.0-manual"
        assert report.line_items_extracted == 2
        names = [info.name for info in report.patterns]
        assert names == ["line_items", "invoice_number", "invoice_date"]
        line_info = report.patterns[0]
        assert line_info.compiled is True
        assert line_info.match_count == 2
        assert line_info.sample_matches[0]["description"] == "Heel Cup Gel Large"
        assert report.patterns[1].sample_matches == [{"value": "AC-1001"}]

    def test_debug_report_for_broken_pattern(
        self, manager: SupplierLearningManager, repository: InMemoryAlgorithmRepository
    ) -> None:
        algorithm = LearnedAlgorithm(
            supplier="Broken",
            patterns=AlgorithmPatterns(
                line_items=LineItemPattern(regex="([unclosed"),
                invoice_number=FieldPattern(regex="No: (\\d+)"),
            ),
        )
        repository.put(algorithm.supplier_key, algorithm)

        report = manager.debug_algorithm("Broken", "No: 42")

        assert report.patterns[0].compiled is False
        assert report.patterns[0].error
        assert report.patterns[1].sample_matches == [{"value": "42"}]
        assert report.line_items_extracted == 0

    def test_debug_unknown_supplier(self, manager: SupplierLearningManager) -> None:
        with pytest.raises(AlgorithmNotFound):
            manager.debug_algorithm("Nobody", "text")
