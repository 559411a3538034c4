"""LangChain document loader backed by Mistral OCR.

Routing, per file:
 - PDF: sent whole to the OCR service as a document payload (one Document per
   page), or, with ``force_image_conversion``, rasterised page by page and
   sent through the batch job manager (or sequential single calls when
   ``force_single_mode`` is set);
 - PNG/JPEG/WebP/TIFF: one OCR call, one Document.

Local PDF metadata (pypdf) is best effort: when it cannot be read the loader
logs a warning and carries on without ``pdf.version``/``info``/``totalPages``.
"""
from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

from langchain_core.document_loaders import BaseLoader
from langchain_core.documents import Document

from mistral_ocr_loader.config import OCRLoaderConfig, get_config
from mistral_ocr_loader.errors import (
    FileNotFound,
    LocalMetadataExtractionError,
    PageConversionError,
    UnsupportedFileType,
    ValidationError,
)
from mistral_ocr_loader.logging_setup import load_context
from mistral_ocr_loader.models.ocr import PageImage
from mistral_ocr_loader.services.batch_jobs import BatchJobManager, PollPolicy
from mistral_ocr_loader.services.ocr_service import MistralOCRService, build_error_document
from mistral_ocr_loader.services.transport import MistralTransport, default_client
from mistral_ocr_loader.utils.file_types import (
    FileKind,
    detect_file_type,
    ensure_supported_extension,
    file_extension,
    kind_from_extension,
)
from mistral_ocr_loader.utils.logging_utils import stage_marker, structured_log
from mistral_ocr_loader.utils.pdf_metadata import PdfMetadata, extract_pdf_metadata
from mistral_ocr_loader.utils.pdf_to_image import (
    convert_pdf_to_image,
    count_pdf_pages,
    image_mime_type,
)

LOG = logging.getLogger("mistral_ocr.loader")

PAGE_SEPARATOR = "\n\n"


class MistralOCRLoader(BaseLoader):
    """Load a PDF or image file as LangChain documents via Mistral OCR.

    Settings come from `OCRLoaderConfig` (environment / ``.env``); keyword
    arguments override individual fields, e.g.
    ``MistralOCRLoader("scan.pdf", force_image_conversion=True, batch_size=20)``.
    """

    def __init__(
        self,
        file_path: str | Path,
        *,
        config: Optional[OCRLoaderConfig] = None,
        client: Any = None,
        pdf_metadata_extractor: Callable[..., PdfMetadata] = extract_pdf_metadata,
        page_rasterizer: Callable[..., bytes] = convert_pdf_to_image,
        page_counter: Callable[[bytes], int] = count_pdf_pages,
        sleep_fn: Callable[[float], None] = time.sleep,
        workspace_dir: Optional[Path] = None,
        **overrides: Any,
    ) -> None:
        self.config = (config or get_config()).with_overrides(**overrides)
        self.config.validate_required()
        self.file_path = str(file_path)
        self._extract_metadata = pdf_metadata_extractor
        self._rasterize_page = page_rasterizer
        self._count_pages = page_counter

        cfg = self.config
        self.transport = MistralTransport(
            client if client is not None else default_client(cfg.api_key or ""),
            model_name=cfg.model_name,
            include_image_base64=cfg.include_image_base64,
            retry_attempts=cfg.retry_attempts,
            retry_backoff_seconds=cfg.retry_backoff_seconds,
        )
        self.ocr_service = MistralOCRService(
            self.transport, tiff_jpeg_quality=cfg.tiff_jpeg_quality
        )
        self.batch_manager = BatchJobManager(
            self.transport,
            self.ocr_service,
            poll_policy=PollPolicy(
                interval_seconds=cfg.batch_poll_interval_seconds,
                max_attempts=cfg.batch_max_poll_attempts,
            ),
            sleep_fn=sleep_fn,
            batch_size=cfg.batch_size,
            workspace_dir=workspace_dir,
        )

    def lazy_load(self) -> Iterator[Document]:
        ensure_supported_extension(self.file_path, self.config.allowed_extensions)
        try:
            raw = Path(self.file_path).read_bytes()
        except FileNotFoundError as exc:
            raise FileNotFound(self.file_path) from exc
        yield from self.parse(raw, {"source": self.file_path})

    def parse(self, raw: bytes, metadata: Mapping[str, Any]) -> List[Document]:
        """OCR an in-memory file; ``metadata["source"]`` names the original path."""
        source = (metadata or {}).get("source")
        if not source:
            raise ValidationError("File path is required in metadata.source")
        ensure_supported_extension(source, self.config.allowed_extensions)
        kind = self._route(raw, str(source))
        with load_context(), stage_marker(
            LOG, stage="ocr_load", source=str(source), file_kind=kind.value
        ) as stage:
            if kind is FileKind.PDF:
                documents = self._load_pdf(raw, dict(metadata))
            elif kind.is_image:
                documents = [self.ocr_service.process_image(raw, dict(metadata), kind=kind)]
            else:
                raise UnsupportedFileType(f"Unsupported file type: {file_extension(source)}")
            stage.add_completion_fields(documents=len(documents))
        return documents

    def _route(self, raw: bytes, source: str) -> FileKind:
        kind = detect_file_type(raw)
        if kind is not FileKind.UNKNOWN:
            return kind
        fallback = kind_from_extension(source)
        LOG.warning(
            "unknown_magic_bytes",
            extra={"source": source, "file_kind": fallback.value, "bytes": len(raw)},
        )
        return fallback

    def _local_metadata(self, raw: bytes, source: str) -> Optional[PdfMetadata]:
        try:
            return self._extract_metadata(
                raw, include_text=self.config.local_text_fallback
            )
        except LocalMetadataExtractionError as exc:
            LOG.warning(
                "pdf_metadata_extraction_failed",
                extra={"source": source, "error": str(exc)},
            )
            return None

    def _load_pdf(self, raw: bytes, metadata: Dict[str, Any]) -> List[Document]:
        source = str(metadata["source"])
        pdf_info = self._local_metadata(raw, source)
        base = dict(metadata)
        if pdf_info is not None:
            base["pdf"] = pdf_info.to_pdf_metadata()

        if self.config.force_image_conversion:
            documents = self._load_rasterised(raw, base, pdf_info)
        else:
            documents = self.ocr_service.process_pdf(raw, base)

        if self.config.local_text_fallback and pdf_info is not None:
            documents = [_with_local_text(doc, pdf_info) for doc in documents]
        if not self.config.split_pages:
            return [
                Document(
                    page_content=PAGE_SEPARATOR.join(doc.page_content for doc in documents),
                    metadata=base,
                )
            ]
        return documents

    def _load_rasterised(
        self,
        raw: bytes,
        base: Dict[str, Any],
        pdf_info: Optional[PdfMetadata],
    ) -> List[Document]:
        cfg = self.config
        total_pages = pdf_info.total_pages if pdf_info is not None else self._count_pages(raw)
        mime_type = image_mime_type(cfg.pdf_image_format)
        pages: List[PageImage] = []
        by_page: Dict[int, Document] = {}
        for page_number in range(1, total_pages + 1):
            try:
                data = self._rasterize_page(
                    raw,
                    page_number=page_number,
                    scale=cfg.pdf_image_scale,
                    output_format=cfg.pdf_image_format,
                    quality=cfg.pdf_image_quality,
                )
            except Exception as exc:
                error = exc
                if not isinstance(error, PageConversionError):
                    error = PageConversionError(
                        f"Failed to convert PDF to image: {exc}", page_number=page_number
                    )
                LOG.warning(
                    "pdf_page_conversion_failed",
                    extra={
                        "source": base.get("source"),
                        "page_number": page_number,
                        "error": str(error),
                    },
                )
                by_page[page_number] = build_error_document(base, page_number, str(error))
                continue
            pages.append(PageImage(page_number=page_number, data=data, mime_type=mime_type))

        mode = "single" if cfg.force_single_mode else "batch"
        structured_log(
            LOG,
            logging.INFO,
            "ocr_pages_submit",
            source=base.get("source"),
            mode=mode,
            pages=len(pages),
            failed_pages=len(by_page),
            batch_size=cfg.batch_size,
        )
        if cfg.force_single_mode:
            ocr_documents = self.ocr_service.process_pages_sequentially(pages, base)
        else:
            ocr_documents = self.batch_manager.process_pages(pages, base)
        for page, document in zip(pages, ocr_documents):
            by_page[page.page_number] = document
        return [by_page[number] for number in sorted(by_page)]


def _with_local_text(document: Document, pdf_info: PdfMetadata) -> Document:
    """Swap an empty OCR page for the embedded text layer when there is one."""
    if document.page_content.strip():
        return document
    loc = (document.metadata.get("pdf") or {}).get("loc") or {}
    text = pdf_info.page_text(int(loc.get("pageNumber") or 0))
    if not text.strip():
        return document
    return Document(page_content=text, metadata=document.metadata)


__all__ = ["MistralOCRLoader", "PAGE_SEPARATOR"]
