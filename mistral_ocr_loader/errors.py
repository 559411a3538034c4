"""Custom exception hierarchy for the Mistral OCR loader.

These errors provide typed failure modes across the loader so callers can tell
configuration problems, unsupported input, transport failures and batch job
failures apart. Page-local problems (rasterisation, a single failed OCR page)
are recorded in document metadata instead of being raised; the page-scoped
classes below exist so the cause can be carried with its original text.
"""
from __future__ import annotations

OCR_FAILURE_PREFIX = "OCR processing failed"
BATCH_FAILURE_PREFIX = "Batch processing failed"


class OCRLoaderError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(OCRLoaderError, ValueError):
    """Raised when a required setting (e.g. the API key) is missing or empty."""


class ValidationError(OCRLoaderError, ValueError):
    """Raised when caller supplied input (metadata, parameters) is invalid."""


class UnsupportedFileType(OCRLoaderError, ValueError):
    """Raised when a file extension is outside the configured allow-list."""


class FileNotFound(OCRLoaderError, FileNotFoundError):
    """Raised when the file to load does not exist."""

    def __init__(self, path: str) -> None:
        super().__init__(f"File not found: {path}")
        self.path = path

    def __str__(self) -> str:
        return self.args[0]


class LocalMetadataExtractionError(OCRLoaderError):
    """Raised when pypdf cannot read page count or document info."""


class PageConversionError(OCRLoaderError):
    """Raised when a single PDF page cannot be rendered to an image."""

    def __init__(self, message: str, *, page_number: int | None = None) -> None:
        super().__init__(message)
        self.page_number = page_number


class OCRServiceError(OCRLoaderError):
    """Raised when the Mistral OCR service fails permanently."""


class OCRTransportError(OCRServiceError):
    """Raised when the OCR request itself fails (HTTP error, timeout, SDK error)."""

    def __init__(self, cause: str) -> None:
        super().__init__(f"{OCR_FAILURE_PREFIX}: {cause}")
        self.cause = cause


class MalformedResponseError(OCRServiceError):
    """Raised when the OCR service answers without a usable ``pages`` array."""

    def __init__(self, detail: str = "Malformed response structure") -> None:
        super().__init__(f"{OCR_FAILURE_PREFIX}: {detail}")
        self.cause = detail


class BatchProcessingError(OCRServiceError):
    """Raised when a batch OCR job cannot produce results for the whole batch."""

    def __init__(self, cause: str) -> None:
        super().__init__(f"{BATCH_FAILURE_PREFIX}: {cause}")
        self.cause = cause


class BatchJobFailed(BatchProcessingError):
    """Raised when the batch job ends in FAILED, CANCELED or EXPIRED."""

    def __init__(self, job_id: str, status: str, errors: list[str] | None = None) -> None:
        self.job_id = job_id
        self.status = status
        self.errors = list(errors or [])
        detail = "; ".join(self.errors) if self.errors else "no error details reported"
        super().__init__(f"Batch job {job_id} ended with status {status}: {detail}")


class BatchJobTimeout(BatchProcessingError):
    """Raised when a batch job never reaches a terminal status while polling."""

    def __init__(self, job_id: str, attempts: int, last_status: str) -> None:
        self.job_id = job_id
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Batch job {job_id} did not complete after {attempts} polls (last status {last_status})"
        )


class CleanupError(OCRLoaderError):
    """Raised internally when temporary batch files cannot be removed.

    Never escapes the batch manager; it is logged as a warning.
    """


__all__ = [
    "OCR_FAILURE_PREFIX",
    "BATCH_FAILURE_PREFIX",
    "OCRLoaderError",
    "ConfigurationError",
    "ValidationError",
    "UnsupportedFileType",
    "FileNotFound",
    "LocalMetadataExtractionError",
    "PageConversionError",
    "OCRServiceError",
    "OCRTransportError",
    "MalformedResponseError",
    "BatchProcessingError",
    "BatchJobFailed",
    "BatchJobTimeout",
    "CleanupError",
]
