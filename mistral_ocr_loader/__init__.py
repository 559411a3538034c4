"""Mistral OCR document loader for LangChain."""

from mistral_ocr_loader.config import OCRLoaderConfig, get_config
from mistral_ocr_loader.errors import (
    BatchJobFailed,
    BatchJobTimeout,
    BatchProcessingError,
    ConfigurationError,
    FileNotFound,
    MalformedResponseError,
    OCRLoaderError,
    OCRServiceError,
    OCRTransportError,
    UnsupportedFileType,
    ValidationError,
)
from mistral_ocr_loader.loader import MistralOCRLoader
from mistral_ocr_loader.utils.file_types import FileKind, detect_file_type

__all__ = [
    "BatchJobFailed",
    "BatchJobTimeout",
    "BatchProcessingError",
    "ConfigurationError",
    "FileKind",
    "FileNotFound",
    "MalformedResponseError",
    "MistralOCRLoader",
    "OCRLoaderConfig",
    "OCRLoaderError",
    "OCRServiceError",
    "OCRTransportError",
    "UnsupportedFileType",
    "ValidationError",
    "detect_file_type",
    "get_config",
]
