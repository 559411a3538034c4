"""Content based file type detection.

Routing decisions use the leading magic bytes of the buffer, never the file
name. The extension is only used as a cheap allow-list gate before any bytes
are read.
"""
from __future__ import annotations

import enum
from pathlib import PurePath
from typing import Iterable

from mistral_ocr_loader.config import normalise_extension
from mistral_ocr_loader.errors import UnsupportedFileType


class FileKind(str, enum.Enum):
    PDF = "pdf"
    PNG = "png"
    JPEG = "jpeg"
    WEBP = "webp"
    TIFF = "tiff"
    UNKNOWN = "unknown"

    @property
    def mime_type(self) -> str | None:
        return _MIME_TYPES.get(self)

    @property
    def is_image(self) -> bool:
        return self in (FileKind.PNG, FileKind.JPEG, FileKind.WEBP, FileKind.TIFF)


_MIME_TYPES = {
    FileKind.PDF: "application/pdf",
    FileKind.PNG: "image/png",
    FileKind.JPEG: "image/jpeg",
    FileKind.WEBP: "image/webp",
    FileKind.TIFF: "image/tiff",
}

_EXTENSION_KINDS = {
    ".pdf": FileKind.PDF,
    ".png": FileKind.PNG,
    ".jpg": FileKind.JPEG,
    ".jpeg": FileKind.JPEG,
    ".webp": FileKind.WEBP,
    ".tif": FileKind.TIFF,
    ".tiff": FileKind.TIFF,
}

_PDF_MAGIC = b"%PDF"
_PNG_MAGIC = b"\x89PNG"
_JPEG_MAGIC = b"\xff\xd8\xff"
_RIFF_MAGIC = b"RIFF"
_WEBP_TAG = b"WEBP"
_TIFF_LE_MAGIC = b"II*\x00"
_TIFF_BE_MAGIC = b"MM\x00*"


def detect_file_type(buffer: bytes) -> FileKind:
    """Classify ``buffer`` by its first four bytes."""
    head = bytes(buffer[:4])
    if len(head) < 3:
        return FileKind.UNKNOWN
    if head == _PDF_MAGIC:
        return FileKind.PDF
    if head == _PNG_MAGIC:
        return FileKind.PNG
    if head.startswith(_JPEG_MAGIC):
        return FileKind.JPEG
    if head == _RIFF_MAGIC:
        # RIFF is shared with WAV/AVI; check the form type when it is present.
        if len(buffer) >= 12 and bytes(buffer[8:12]) != _WEBP_TAG:
            return FileKind.UNKNOWN
        return FileKind.WEBP
    if head in (_TIFF_LE_MAGIC, _TIFF_BE_MAGIC):
        return FileKind.TIFF
    return FileKind.UNKNOWN


def file_extension(path: str | PurePath) -> str:
    return PurePath(str(path)).suffix.lower()


def kind_from_extension(path: str | PurePath) -> FileKind:
    return _EXTENSION_KINDS.get(file_extension(path), FileKind.UNKNOWN)


def ensure_supported_extension(
    path: str | PurePath, allowed_extensions: Iterable[str]
) -> str:
    """Return the lower-cased extension or raise `UnsupportedFileType`."""
    ext = file_extension(path)
    allowed = {normalise_extension(item) for item in allowed_extensions}
    if not ext or ext not in allowed:
        raise UnsupportedFileType(f"Unsupported file type: {ext or str(path)}")
    return ext


def mime_type_for(buffer: bytes) -> str | None:
    return detect_file_type(buffer).mime_type


__all__ = [
    "FileKind",
    "detect_file_type",
    "ensure_supported_extension",
    "file_extension",
    "kind_from_extension",
    "mime_type_for",
]
