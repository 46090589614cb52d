"""FastAPI application for invoice line-item extraction and supplier training.

Endpoints:
- Health, readiness and Prometheus metrics
- Invoice extraction through the strategy cascade
- Supplier training: annotations, vision auto-fill, algorithm management

FastAPI reference:
https://fastapi.tiangolo.com/
"""

import logging
import time
from datetime import datetime

from fastapi import FastAPI, File, Form, HTTPException, Request, Response, UploadFile, status
from pydantic import BaseModel

from invoice_pipeline.api import metrics
from invoice_pipeline.extraction.schema import PDF_MIME_TYPE, ExtractionResult, InvoiceDocument
from invoice_pipeline.learning.schema import (
    AlgorithmDebugReport,
    NeedsTrainingResponse,
    TrainingAnnotations,
    TrainingOutcome,
    TrainingSession,
)
from invoice_pipeline.orchestrator.service import create_orchestrator
from invoice_pipeline.shared.config import get_settings
from invoice_pipeline.shared.errors import (
    AcquisitionError,
    AlgorithmNotFound,
    ModelFormatError,
    ModelTransportError,
    StrategyFailure,
    TrainingIncomplete,
)

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Invoice Extraction Pipeline",
    description="Adaptive multi-strategy invoice line-item extraction with supplier training",
    version=settings.service_version,
)

orchestrator = create_orchestrator(settings, on_fallback=metrics.record_fallback)


@app.middleware("http")
async def metrics_middleware(request: Request, call_next):  # type: ignore[no-untyped-def]
    """Record request count and duration for every endpoint except /metrics."""
    if request.url.path == "/metrics":
        return await call_next(request)

    start_time = time.time()
    response = await call_next(request)
    duration = time.time() - start_time

    metrics.http_requests_total.labels(
        method=request.method,
        endpoint=request.url.path,
        status=response.status_code,
    ).inc()
    metrics.http_request_duration_seconds.labels(
        method=request.method,
        endpoint=request.url.path,
    ).observe(duration)
    return response


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    service: str


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool


class TrainingRequest(BaseModel):
    """Annotations for an open training session."""

    session: TrainingSession
    annotations: TrainingAnnotations


class DebugRequest(BaseModel):
    supplier: str
    text: str


class TrainedSupplier(BaseModel):
    """Summary of one stored algorithm."""

    supplier: str
    key: str
    version: str
    generated_by: str
    training_count: int
    created_at: datetime
    updated_at: datetime
    accuracy: float | None = None


class DeleteResponse(BaseModel):
    deleted: int


@app.get("/health", response_model=HealthResponse, tags=["Health"])
def health_check() -> HealthResponse:
    """Liveness probe."""
    return HealthResponse(
        status="healthy", version=settings.service_version, service=settings.service_name
    )


@app.get("/ready", response_model=ReadinessResponse, tags=["Health"])
def readiness_check() -> ReadinessResponse:
    """Readiness probe."""
    return ReadinessResponse(ready=True)


@app.get("/metrics", tags=["Monitoring"])
def get_metrics() -> Response:
    """Prometheus metrics in text format."""
    metrics_data, content_type = metrics.get_metrics()
    return Response(content=metrics_data, media_type=content_type)


async def read_document(file: UploadFile, supplier_hint: str | None) -> InvoiceDocument:
    """Validate an upload and wrap it as an InvoiceDocument.

    Raises:
        HTTPException: 400 for a missing name, unsupported type or empty file
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No filename provided")

    content_type = file.content_type or ""
    if not (content_type.startswith("image/") or content_type == PDF_MIME_TYPE):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid file type: {content_type}. Only images and PDFs are supported.",
        )

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty file")

    return InvoiceDocument(
        file_name=file.filename,
        file_type=content_type,
        file_bytes=content,
        supplier_hint=supplier_hint or None,
    )


@app.post("/api/v1/invoices/extract", tags=["Invoices"])
async def extract_invoice(
    file: UploadFile = File(..., description="Invoice image or PDF"),  # noqa: B008
    supplier_hint: str | None = Form(None, description="Supplier name, if known"),  # noqa: B008
) -> ExtractionResult | NeedsTrainingResponse:
    """Extract line items from an uploaded invoice.

    Returns either an ExtractionResult or, for a supplier with no known
    layout, a NeedsTrainingResponse carrying a training session.

    ## Error Handling

    - 400 if the file is missing, empty or not an image/PDF
    - 422 if no text could be read from the file
    """
    document = await read_document(file, supplier_hint)

    start_time = time.time()
    try:
        result = await orchestrator.process_file(document)
    except AcquisitionError as e:
        metrics.invoices_processed_total.labels(method="none", status="failed").inc()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Could not read invoice: {e}",
        ) from e
    metrics.extraction_duration_seconds.observe(time.time() - start_time)

    if isinstance(result, NeedsTrainingResponse):
        metrics.invoices_processed_total.labels(method="none", status="needs_training").inc()
        return result

    outcome = "success" if result.line_items else "empty"
    metrics.invoices_processed_total.labels(method=result.method.value, status=outcome).inc()
    metrics.line_items_extracted.observe(len(result.line_items))
    return result


@app.post("/api/v1/training/annotations", response_model=TrainingOutcome, tags=["Training"])
async def submit_annotations(request: TrainingRequest) -> TrainingOutcome:
    """Train a supplier algorithm from annotations and apply it to the training text.

    Returns 422 when the annotations are incomplete or the session was abandoned.
    """
    try:
        return await orchestrator.complete_training(request.session, request.annotations)
    except TrainingIncomplete as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e)) from e


@app.post("/api/v1/training/autofill", response_model=TrainingAnnotations, tags=["Training"])
async def autofill_training(
    file: UploadFile = File(..., description="Invoice image or PDF"),  # noqa: B008
    supplier: str = Form(..., description="Supplier being trained"),  # noqa: B008
) -> TrainingAnnotations:
    """Pre-fill training annotations with the vision model for the user to review."""
    document = await read_document(file, supplier)
    try:
        return await orchestrator.auto_fill_training(document, supplier)
    except StrategyFailure as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.reason
        ) from e
    except (ModelTransportError, ModelFormatError) as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e)) from e


@app.get("/api/v1/training/suppliers", response_model=list[TrainedSupplier], tags=["Training"])
def list_trained_suppliers() -> list[TrainedSupplier]:
    return [
        TrainedSupplier(
            supplier=algorithm.supplier,
            key=algorithm.supplier_key,
            version=algorithm.version,
            generated_by=algorithm.generated_by,
            training_count=algorithm.training_count,
            created_at=algorithm.created_at,
            updated_at=algorithm.updated_at,
            accuracy=algorithm.validation.accuracy if algorithm.validation else None,
        )
        for algorithm in orchestrator.learning.get_trained_suppliers()
    ]


@app.delete(
    "/api/v1/training/suppliers/{supplier}", response_model=DeleteResponse, tags=["Training"]
)
def delete_trained_supplier(supplier: str) -> DeleteResponse:
    if not orchestrator.learning.delete_algorithm(supplier):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No algorithm found for supplier: {supplier}",
        )
    return DeleteResponse(deleted=1)


@app.delete("/api/v1/training/suppliers", response_model=DeleteResponse, tags=["Training"])
def clear_trained_suppliers() -> DeleteResponse:
    return DeleteResponse(deleted=orchestrator.learning.clear_all_algorithms())


@app.post("/api/v1/training/debug", response_model=AlgorithmDebugReport, tags=["Training"])
def debug_algorithm(request: DebugRequest) -> AlgorithmDebugReport:
    """Show how a stored algorithm's patterns behave against some text."""
    try:
        return orchestrator.learning.debug_algorithm(request.supplier, request.text)
    except AlgorithmNotFound as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
