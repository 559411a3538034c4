"""Prepare image bytes for submission to the OCR service.

The service does not reliably accept TIFF, so TIFF input is re-encoded to
JPEG first. When re-encoding fails the original bytes are submitted with the
TIFF MIME type; that degraded branch is a value (`OriginalFallback`), not an
exception.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from typing import Union

from PIL import Image, UnidentifiedImageError

from mistral_ocr_loader.utils.file_types import FileKind

_LOG = logging.getLogger("mistral_ocr.image_encoding")

DEFAULT_TIFF_JPEG_QUALITY = 90


@dataclass(frozen=True, slots=True)
class Passthrough:
    data: bytes = field(repr=False)
    mime_type: str


@dataclass(frozen=True, slots=True)
class Reencoded:
    data: bytes = field(repr=False)
    mime_type: str
    source_mime_type: str


@dataclass(frozen=True, slots=True)
class OriginalFallback:
    data: bytes = field(repr=False)
    mime_type: str
    reason: str


ImagePayload = Union[Passthrough, Reencoded, OriginalFallback]


def tiff_to_jpeg(data: bytes, *, quality: int = DEFAULT_TIFF_JPEG_QUALITY) -> bytes:
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        # JPEG has no alpha or palette modes.
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=quality)
    return out.getvalue()


def prepare_image_payload(
    data: bytes,
    kind: FileKind,
    *,
    quality: int = DEFAULT_TIFF_JPEG_QUALITY,
) -> ImagePayload:
    mime_type = kind.mime_type or "application/octet-stream"
    if kind is not FileKind.TIFF:
        return Passthrough(data=data, mime_type=mime_type)
    try:
        jpeg = tiff_to_jpeg(data, quality=quality)
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        _LOG.warning(
            "tiff_reencode_failed",
            extra={"error": str(exc), "bytes": len(data)},
        )
        return OriginalFallback(data=data, mime_type=mime_type, reason=str(exc))
    return Reencoded(data=jpeg, mime_type="image/jpeg", source_mime_type=mime_type)


__all__ = [
    "DEFAULT_TIFF_JPEG_QUALITY",
    "ImagePayload",
    "OriginalFallback",
    "Passthrough",
    "Reencoded",
    "prepare_image_payload",
    "tiff_to_jpeg",
]
