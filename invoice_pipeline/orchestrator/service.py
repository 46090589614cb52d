"""Top-level extraction cascade.

process_file tries vision first (when configured), then acquires text and
walks an explicit, ordered list of text strategies:

    learned-algorithm -> pattern-library -> generic-scan -> ai-text

Every strategy takes the same ExtractionContext and either returns an
ExtractionResult with at least one line item or raises. Strategy errors are
logged and passed to the fallback hook; only AcquisitionError reaches the
caller. Product matching runs on whatever result comes out.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

from invoice_pipeline.acquisition.service import TextAcquisitionService
from invoice_pipeline.extraction.factory import create_text_model_provider
from invoice_pipeline.extraction.schema import (
    ExtractionMethod,
    ExtractionResult,
    InvoiceDocument,
    InvoiceMetadata,
)
from invoice_pipeline.extraction.text_extractor import AITextExtractor, reconcile_with_total
from invoice_pipeline.learning.manager import SupplierLearningManager
from invoice_pipeline.learning.repository import AlgorithmRepository, JsonFileAlgorithmRepository
from invoice_pipeline.learning.schema import (
    NeedsTrainingResponse,
    TrainingAnnotations,
    TrainingOutcome,
    TrainingSession,
)
from invoice_pipeline.matching.catalog import InMemoryProductCatalog, ProductCatalog
from invoice_pipeline.matching.matcher import ProductMatcher
from invoice_pipeline.ocr.factory import create_ocr_service
from invoice_pipeline.profiles.generic import scan_generic_line_items
from invoice_pipeline.profiles.library import SupplierPatternLibrary, SupplierProfile
from invoice_pipeline.profiles.metadata import (
    UNKNOWN_SUPPLIER,
    extract_metadata,
    guess_supplier_name,
)
from invoice_pipeline.shared.config import Settings
from invoice_pipeline.shared.errors import (
    AlgorithmNotFound,
    ModelFormatError,
    ModelTransportError,
    StrategyFailure,
)
from invoice_pipeline.vision.gemini_provider import GeminiVisionExtractor

logger = logging.getLogger(__name__)

# Errors that hand control to the next tier
FALLBACK_ERRORS = (StrategyFailure, ModelTransportError, ModelFormatError, AlgorithmNotFound)


@dataclass
class ExtractionContext:
    """What the text strategies know about one invoice."""

    document: InvoiceDocument
    text: str
    supplier: str = UNKNOWN_SUPPLIER
    profile: SupplierProfile | None = None
    metadata: InvoiceMetadata = field(default_factory=InvoiceMetadata)
    trace: list[str] = field(default_factory=list)


Strategy = Callable[[ExtractionContext], Awaitable[ExtractionResult]]
FallbackHook = Callable[[str, Exception], None]


class ExtractionOrchestrator:
    """Runs the strategy cascade for one invoice at a time."""

    def __init__(
        self,
        settings: Settings,
        acquisition: TextAcquisitionService,
        learning: SupplierLearningManager,
        pattern_library: SupplierPatternLibrary | None = None,
        ai_extractor: AITextExtractor | None = None,
        vision: GeminiVisionExtractor | None = None,
        matcher: ProductMatcher | None = None,
        on_fallback: FallbackHook | None = None,
    ) -> None:
        self.settings = settings
        self.acquisition = acquisition
        self.learning = learning
        self.pattern_library = pattern_library or SupplierPatternLibrary(
            tolerance_percent=settings.reconciliation_tolerance_percent,
            tolerance_floor=settings.reconciliation_tolerance_floor,
        )
        self.ai_extractor = ai_extractor
        self.vision = vision
        self.matcher = matcher
        self.on_fallback = on_fallback
        self.text_strategies: list[tuple[str, Strategy]] = [
            ("learned-algorithm", self._apply_learned),
            ("pattern-library", self._apply_profile),
            ("generic-scan", self._scan_generic),
            ("ai-text", self._extract_with_ai),
        ]

    async def process_file(
        self, document: InvoiceDocument
    ) -> ExtractionResult | NeedsTrainingResponse:
        """Extract line items from one uploaded invoice.

        Args:
            document: Uploaded file with optional supplier hint

        Returns:
            ExtractionResult (possibly with no items) or a NeedsTrainingResponse
            for a supplier with no learned algorithm and no built-in profile

        Raises:
            AcquisitionError: Vision was not used and no text could be read
        """
        result = await self._try_vision(document)
        if result is None:
            context = await self.prepare_context(document)
            if context.profile is None and self.learning.needs_training(context.supplier):
                session = self.learning.start_training(context.supplier, context.text)
                logger.info(f"Supplier '{context.supplier}' needs training")
                return NeedsTrainingResponse(
                    supplier=context.supplier,
                    training_session=session,
                    raw_text=context.text,
                    message=(
                        f"No extraction algorithm for '{context.supplier}'. "
                        "Annotate a few line items to train one."
                    ),
                )
            result = await self.run_text_cascade(context)
        return await self.match_products(result)

    async def _try_vision(self, document: InvoiceDocument) -> ExtractionResult | None:
        if self.vision is None or not await self.vision.is_available():
            return None
        try:
            result = await self.vision.extract(document)
        except FALLBACK_ERRORS as e:
            self._record_fallback("vision", e)
            return None
        except Exception as e:
            logger.exception(f"Vision extraction crashed for {document.file_name}")
            self._record_fallback("vision", e)
            return None
        if not result.line_items:
            self._record_fallback("vision", StrategyFailure("vision", "no line items"))
            return None
        return result

    async def prepare_context(self, document: InvoiceDocument) -> ExtractionContext:
        """Acquire text and detect supplier and header metadata.

        Raises:
            AcquisitionError: No text could be read
        """
        text = await self.acquisition.acquire_text(document)
        supplier, profile = self.detect_supplier(text, document.supplier_hint)
        currency = profile.currency if profile else self.settings.default_currency
        return ExtractionContext(
            document=document,
            text=text,
            supplier=supplier,
            profile=profile,
            metadata=extract_metadata(text, currency),
        )

    def detect_supplier(
        self, text: str, hint: str | None = None
    ) -> tuple[str, SupplierProfile | None]:
        """Identify the supplier of an invoice.

        Order: built-in profile identifier, caller hint, a trained supplier
        whose name appears in the text, then a guess from the first lines.
        """
        profile = self.pattern_library.detect(text)
        if profile is not None:
            return profile.name, profile
        if hint and hint.strip():
            return hint.strip(), None
        lowered = text.lower()
        for algorithm in self.learning.get_trained_suppliers():
            if algorithm.supplier.lower() in lowered:
                return algorithm.supplier, None
        return guess_supplier_name(text), None

    async def run_text_cascade(self, context: ExtractionContext) -> ExtractionResult:
        """Try each text strategy in order, returning the first with items.

        When every strategy fails, returns an empty ai-text result whose
        raw_trace lists each failure.
        """
        for name, strategy in self.text_strategies:
            try:
                result = await strategy(context)
            except FALLBACK_ERRORS as e:
                self._record_fallback(name, e)
                context.trace.append(f"{name}: {e}")
                continue
            except Exception as e:
                logger.exception(f"Strategy '{name}' crashed for '{context.supplier}'")
                self._record_fallback(name, e)
                context.trace.append(f"{name}: {e}")
                continue
            logger.info(
                f"Strategy '{name}' extracted {len(result.line_items)} line items "
                f"for '{result.supplier}'"
            )
            return result

        logger.warning(f"All text strategies failed for '{context.supplier}'")
        return ExtractionResult(
            method=ExtractionMethod.TEXT_AI,
            supplier=context.supplier,
            invoice_metadata=context.metadata,
            raw_trace="\n".join(context.trace),
        )

    async def _apply_learned(self, context: ExtractionContext) -> ExtractionResult:
        result = self.learning.apply_algorithm(context.supplier, context.text)
        if not result.line_items:
            raise StrategyFailure("learned-algorithm", "pattern matched no line items")
        return result

    async def _apply_profile(self, context: ExtractionContext) -> ExtractionResult:
        if context.profile is None:
            raise StrategyFailure("pattern-library", "no built-in profile for supplier")
        items = self.pattern_library.extract(context.text, context.profile)
        if not items:
            raise StrategyFailure(
                "pattern-library", f"profile '{context.profile.code}' matched nothing"
            )
        return ExtractionResult(
            method=ExtractionMethod.TEXT_PATTERN,
            supplier=context.supplier,
            invoice_metadata=context.metadata,
            line_items=items,
            raw_trace=f"profile {context.profile.code}",
        )

    async def _scan_generic(self, context: ExtractionContext) -> ExtractionResult:
        items = scan_generic_line_items(
            context.text,
            tax_rate=self.settings.default_tax_rate,
            currency=context.metadata.currency,
        )
        if not items:
            raise StrategyFailure("generic-scan", "no price-bearing lines")
        items = reconcile_with_total(
            items,
            context.metadata.total_amount,
            self.settings.reconciliation_tolerance_percent,
            self.settings.reconciliation_tolerance_floor,
        )
        return ExtractionResult(
            method=ExtractionMethod.TEXT_PATTERN,
            supplier=context.supplier,
            invoice_metadata=context.metadata,
            line_items=items,
            raw_trace="generic line scan",
        )

    async def _extract_with_ai(self, context: ExtractionContext) -> ExtractionResult:
        if self.ai_extractor is None or not await self.ai_extractor.is_available():
            raise StrategyFailure("ai-text", "text model not available")
        items = await self.ai_extractor.extract(context.text, context.supplier, context.metadata)
        return ExtractionResult(
            method=ExtractionMethod.TEXT_AI,
            supplier=context.supplier,
            invoice_metadata=context.metadata,
            line_items=items,
            raw_trace=f"ai-text via {self.ai_extractor.provider.provider_name}",
        )

    async def match_products(self, result: ExtractionResult) -> ExtractionResult:
        if self.matcher is None or not result.line_items:
            return result
        items = await self.matcher.match_items(result.line_items)
        return result.model_copy(update={"line_items": items})

    async def complete_training(
        self, session: TrainingSession, annotations: TrainingAnnotations
    ) -> TrainingOutcome:
        """Persist an algorithm from annotations and run it on the training text.

        Raises:
            TrainingIncomplete: Session abandoned or annotations unusable
        """
        outcome = await self.learning.process_annotations(
            annotations, session.raw_invoice_text, session
        )
        result = self.learning.apply_algorithm(session.supplier, session.raw_invoice_text)
        result = await self.match_products(result)
        return outcome.model_copy(update={"result": result})

    async def auto_fill_training(
        self, document: InvoiceDocument, supplier: str
    ) -> TrainingAnnotations:
        """Vision-suggested annotations for a training form.

        Raises:
            StrategyFailure: Vision is not configured or not reachable
        """
        if self.vision is None or not await self.vision.is_available():
            raise StrategyFailure("vision", "vision model not available for auto-fill")
        return await self.vision.auto_fill_training(document, supplier)

    def _record_fallback(self, strategy: str, error: Exception) -> None:
        logger.warning(f"Strategy '{strategy}' failed, falling back: {error}")
        if self.on_fallback is not None:
            self.on_fallback(strategy, error)


def create_orchestrator(
    settings: Settings,
    catalog: ProductCatalog | None = None,
    repository: AlgorithmRepository | None = None,
    on_fallback: FallbackHook | None = None,
) -> ExtractionOrchestrator:
    """Wire the default collaborators from settings.

    Args:
        settings: Application settings
        catalog: Host product catalog; an empty in-memory one when None
        repository: Algorithm store; the JSON file at algorithm_store_path when None
        on_fallback: Called with (strategy, error) on every fallback

    Returns:
        Ready-to-use ExtractionOrchestrator
    """
    text_provider = create_text_model_provider(settings)
    learning = SupplierLearningManager(
        settings,
        repository or JsonFileAlgorithmRepository(settings.algorithm_store_path),
        text_provider,
    )
    return ExtractionOrchestrator(
        settings,
        acquisition=TextAcquisitionService(settings, create_ocr_service(settings)),
        learning=learning,
        ai_extractor=AITextExtractor(settings, text_provider),
        vision=GeminiVisionExtractor(settings) if settings.vision_enabled else None,
        matcher=ProductMatcher(settings, catalog or InMemoryProductCatalog()),
        on_fallback=on_fallback,
    )
