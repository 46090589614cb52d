"""Exception taxonomy for the extraction pipeline.

Only AcquisitionError reaches callers of the orchestrator. Every other error
is caught by the strategy cascade and turned into a fallback to the next tier.
Numeric cross-check mismatches are never raised; they are recorded as strings
in LineItem.validation_errors.
"""


class InvoicePipelineError(Exception):
    """Base class for all pipeline errors."""


class AcquisitionError(InvoicePipelineError):
    """No text or image could be read from the uploaded file."""


class NoTextDetected(AcquisitionError):
    """OCR ran but produced nothing but whitespace."""


class PdfExtractionFailed(AcquisitionError):
    """Neither the PDF text layer nor OCR of rendered pages produced text."""


class UnsupportedFileType(AcquisitionError):
    """The file is neither an image nor a PDF."""


class ModelTransportError(InvoicePipelineError):
    """Network failure or timeout talking to an external model, after retries."""


class ModelFormatError(InvoicePipelineError):
    """External model output (or a stored pattern) could not be interpreted."""


class TrainingIncomplete(InvoicePipelineError):
    """Training was abandoned or the annotations are not usable."""


class StrategyFailure(InvoicePipelineError):
    """A cascade strategy produced nothing usable; the next tier should run."""

    def __init__(self, strategy: str, reason: str) -> None:
        super().__init__(f"{strategy}: {reason}")
        self.strategy = strategy
        self.reason = reason


class AlgorithmNotFound(InvoicePipelineError):
    """No learned algorithm is stored for the supplier."""
