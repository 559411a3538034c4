"""Local PDF metadata extraction (no OCR) backed by pypdf."""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pypdf import PdfReader
from pypdf.errors import PyPdfError

from mistral_ocr_loader.errors import LocalMetadataExtractionError

_LOG = logging.getLogger("mistral_ocr.pdf_metadata")

_XMP_FIELDS = (
    "dc_title",
    "dc_creator",
    "dc_description",
    "pdf_producer",
    "xmp_creator_tool",
)


@dataclass(slots=True)
class PdfMetadata:
    version: str | None
    info: Dict[str, Any]
    metadata: Dict[str, Any] | None
    total_pages: int
    page_texts: List[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n\n".join(self.page_texts)

    def page_text(self, page_number: int) -> str:
        if 1 <= page_number <= len(self.page_texts):
            return self.page_texts[page_number - 1]
        return ""

    def to_pdf_metadata(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "info": dict(self.info),
            "metadata": self.metadata,
            "totalPages": self.total_pages,
        }


def _pdf_version(reader: PdfReader) -> str | None:
    header = getattr(reader, "pdf_header", "") or ""
    if header.startswith("%PDF-"):
        return header[len("%PDF-") :]
    return header or None


def _document_info(reader: PdfReader) -> Dict[str, Any]:
    raw = reader.metadata
    if not raw:
        return {}
    return {str(key).lstrip("/"): str(value) for key, value in raw.items()}


def _xmp_metadata(reader: PdfReader) -> Optional[Dict[str, Any]]:
    try:
        xmp = reader.xmp_metadata
    except (PyPdfError, ValueError, KeyError) as exc:
        _LOG.debug("pdf_xmp_unreadable", extra={"error": str(exc)})
        return None
    if xmp is None:
        return None
    payload: Dict[str, Any] = {}
    for name in _XMP_FIELDS:
        value = getattr(xmp, name, None)
        if value:
            payload[name] = value if isinstance(value, (str, list)) else str(value)
    return payload or None


def _page_texts(reader: PdfReader) -> List[str]:
    texts: List[str] = []
    for number, page in enumerate(reader.pages, start=1):
        try:
            texts.append(page.extract_text() or "")
        except (PyPdfError, ValueError, KeyError, TypeError) as exc:
            _LOG.debug("pdf_page_text_failed", extra={"pages": number, "error": str(exc)})
            texts.append("")
    return texts


def extract_pdf_metadata(pdf_bytes: bytes, *, include_text: bool = False) -> PdfMetadata:
    """Read version, document info, XMP summary and page count.

    Args:
        pdf_bytes: Raw PDF file contents.
        include_text: Also extract the embedded text layer per page.
    Raises:
        LocalMetadataExtractionError when pypdf cannot parse the buffer.
    """
    if not pdf_bytes:
        raise LocalMetadataExtractionError("PDF buffer is empty")
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        total_pages = len(reader.pages)
        info = _document_info(reader)
    except Exception as exc:  # pypdf raises a wide range of types on corrupt input
        raise LocalMetadataExtractionError(f"Failed to read PDF metadata: {exc}") from exc
    return PdfMetadata(
        version=_pdf_version(reader),
        info=info,
        metadata=_xmp_metadata(reader),
        total_pages=total_pages,
        page_texts=_page_texts(reader) if include_text else [],
    )


__all__ = ["PdfMetadata", "extract_pdf_metadata"]
