"""Render PDF pages to raster images with PyMuPDF.

PNG comes straight from the PyMuPDF pixmap; JPEG and WebP go through Pillow
so the ``quality`` setting applies.
"""
from __future__ import annotations

import io
import logging
from typing import Literal

import fitz  # PyMuPDF
from PIL import Image

from mistral_ocr_loader.errors import PageConversionError

_LOG = logging.getLogger("mistral_ocr.pdf_to_image")

ImageFormat = Literal["png", "jpeg", "webp"]
_PIL_FORMATS = {"jpeg": "JPEG", "webp": "WEBP"}
_MIME_TYPES = {"png": "image/png", "jpeg": "image/jpeg", "webp": "image/webp"}


def image_mime_type(output_format: str) -> str:
    return _MIME_TYPES.get(output_format, "image/png")


def _encode(pix: "fitz.Pixmap", output_format: str, quality: int) -> bytes:
    png = pix.tobytes("png")
    if output_format == "png":
        return png
    pil_format = _PIL_FORMATS.get(output_format)
    if pil_format is None:
        raise ValueError(f"Unsupported output format: {output_format}")
    with Image.open(io.BytesIO(png)) as img:
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format=pil_format, quality=quality)
    return out.getvalue()


def count_pdf_pages(pdf_bytes: bytes) -> int:
    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            return doc.page_count
    except Exception as exc:  # PyMuPDF raises its own FileDataError/RuntimeError
        raise PageConversionError(f"Failed to open PDF: {exc}") from exc


def convert_pdf_to_image(
    pdf_bytes: bytes,
    *,
    page_number: int = 1,
    scale: float = 2.0,
    output_format: ImageFormat = "png",
    quality: int = 100,
) -> bytes:
    """Render one 1-based page of ``pdf_bytes`` and return the encoded image."""
    try:
        with fitz.open(stream=pdf_bytes, filetype="pdf") as doc:
            if page_number < 1 or page_number > doc.page_count:
                raise ValueError(
                    f"Invalid page number: {page_number}. PDF has {doc.page_count} pages."
                )
            page = doc.load_page(page_number - 1)
            pix = page.get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
            encoded = _encode(pix, output_format, quality)
    except Exception as exc:
        raise PageConversionError(
            f"Failed to convert PDF to image: {exc}", page_number=page_number
        ) from exc
    _LOG.debug(
        "pdf_page_rendered",
        extra={"page_number": page_number, "bytes": len(encoded), "image_format": output_format},
    )
    return encoded


__all__ = [
    "ImageFormat",
    "convert_pdf_to_image",
    "count_pdf_pages",
    "image_mime_type",
]
