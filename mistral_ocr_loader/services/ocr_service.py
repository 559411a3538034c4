"""OCR service: turns single Mistral OCR calls into LangChain documents.

Whole-file calls (`process_pdf`, `process_image`) are atomic and raise on
failure. Page calls made on behalf of a multi-page document
(`process_single`, `process_pages_sequentially`) isolate failures: a page
whose OCR fails comes back as a document with empty content and the error in
``metadata["pdf"]["error"]``.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Dict, List, Mapping, Sequence

from langchain_core.documents import Document

from mistral_ocr_loader.errors import MalformedResponseError, OCRServiceError
from mistral_ocr_loader.models.ocr import OcrResult, PageImage
from mistral_ocr_loader.services.normaliser import normalise_response, result_metadata
from mistral_ocr_loader.services.transport import PDF_MIME_TYPE, MistralTransport
from mistral_ocr_loader.utils.file_types import FileKind, detect_file_type
from mistral_ocr_loader.utils.image_encoding import (
    DEFAULT_TIFF_JPEG_QUALITY,
    OriginalFallback,
    prepare_image_payload,
)

LOG = logging.getLogger(__name__)


def page_metadata(
    metadata: Mapping[str, Any],
    page_number: int,
    *,
    error: str | None = None,
) -> Dict[str, Any]:
    """Copy ``metadata`` and annotate ``pdf.loc.pageNumber`` (1-based)."""
    merged = copy.deepcopy(dict(metadata))
    pdf = dict(merged.get("pdf") or {})
    pdf["loc"] = {"pageNumber": page_number}
    if error is not None:
        pdf["error"] = error
    merged["pdf"] = pdf
    return merged


def build_page_document(
    result: OcrResult, metadata: Mapping[str, Any], page_number: int
) -> Document:
    if result.failed:
        return build_error_document(metadata, page_number, result.error or "")
    meta = page_metadata(metadata, page_number)
    meta.update(result_metadata(result))
    return Document(page_content=result.text, metadata=meta)


def build_error_document(
    metadata: Mapping[str, Any], page_number: int, error: str
) -> Document:
    return Document(page_content="", metadata=page_metadata(metadata, page_number, error=error))


class MistralOCRService:
    """Coordinates single OCR requests and maps results onto documents."""

    def __init__(
        self,
        transport: MistralTransport,
        *,
        tiff_jpeg_quality: int = DEFAULT_TIFF_JPEG_QUALITY,
    ) -> None:
        self.transport = transport
        self.tiff_jpeg_quality = tiff_jpeg_quality

    def ocr_page(self, data: bytes, mime_type: str) -> OcrResult:
        """OCR one page image and return the first normalised page."""
        response = self.transport.submit_single(data, mime_type)
        results = normalise_response(response)
        if not results:  # pragma: no cover - decode_ocr_response guarantees pages
            raise MalformedResponseError()
        return results[0]

    def process_image(
        self,
        data: bytes,
        metadata: Mapping[str, Any],
        *,
        kind: FileKind | None = None,
    ) -> Document:
        kind = kind or detect_file_type(data)
        if not kind.is_image:
            raise OCRServiceError(f"Buffer is not a supported image (detected {kind.value})")
        payload = prepare_image_payload(data, kind, quality=self.tiff_jpeg_quality)
        if isinstance(payload, OriginalFallback):
            LOG.warning(
                "ocr_image_submitted_without_reencode",
                extra={"source": metadata.get("source"), "reason": payload.reason},
            )
        result = self.ocr_page(payload.data, payload.mime_type)
        meta = dict(metadata)
        meta.update(result_metadata(result))
        return Document(page_content=result.text, metadata=meta)

    def process_pdf(self, data: bytes, metadata: Mapping[str, Any]) -> List[Document]:
        """Send the whole PDF as one document payload; one document per page."""
        response = self.transport.submit_single(data, PDF_MIME_TYPE)
        results = normalise_response(response)
        LOG.info(
            "ocr_pdf_processed",
            extra={"source": metadata.get("source"), "pages": len(results)},
        )
        return [
            build_page_document(result, metadata, page_number)
            for page_number, result in enumerate(results, start=1)
        ]

    def process_single(self, page: PageImage, metadata: Mapping[str, Any]) -> Document:
        try:
            result = self.ocr_page(page.data, page.mime_type)
        except OCRServiceError as exc:
            LOG.warning(
                "ocr_page_failed",
                extra={
                    "source": metadata.get("source"),
                    "page_number": page.page_number,
                    "error": str(exc),
                },
            )
            return build_error_document(metadata, page.page_number, str(exc))
        return build_page_document(result, metadata, page.page_number)

    def process_pages_sequentially(
        self, pages: Sequence[PageImage], metadata: Mapping[str, Any]
    ) -> List[Document]:
        """One outstanding request at a time; a failed page never stops the rest."""
        return [self.process_single(page, metadata) for page in pages]


__all__ = [
    "MistralOCRService",
    "build_error_document",
    "build_page_document",
    "page_metadata",
]
