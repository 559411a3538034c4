from __future__ import annotations

from typing import Callable, Iterable

import fitz
import pytest

from mistral_ocr_loader.config import OCRLoaderConfig, get_config

_ENV_KEYS = (
    "MISTRAL_API_KEY",
    "MISTRAL_OCR_MODEL",
    "OCR_SPLIT_PAGES",
    "OCR_FORCE_IMAGE_CONVERSION",
    "OCR_FORCE_SINGLE_MODE",
    "OCR_BATCH_SIZE",
    "PDF_IMAGE_SCALE",
    "PDF_IMAGE_QUALITY",
    "PDF_IMAGE_FORMAT",
    "OCR_ALLOWED_EXTENSIONS",
    "OCR_BATCH_POLL_INTERVAL_SECONDS",
    "OCR_BATCH_MAX_POLL_ATTEMPTS",
    "OCR_INCLUDE_IMAGE_BASE64",
    "OCR_RETRY_ATTEMPTS",
    "OCR_RETRY_BACKOFF_SECONDS",
    "TIFF_JPEG_QUALITY",
    "OCR_LOCAL_TEXT_FALLBACK",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch, tmp_path):
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    # Keep a developer's .env out of the tests.
    monkeypatch.chdir(tmp_path)
    get_config.cache_clear()
    yield
    get_config.cache_clear()


@pytest.fixture
def make_config() -> Callable[..., OCRLoaderConfig]:
    def _factory(**overrides) -> OCRLoaderConfig:
        values = {
            "api_key": "test-key",
            "retry_backoff_seconds": 0.0,
            "batch_poll_interval_seconds": 0.0,
        }
        values.update(overrides)
        return OCRLoaderConfig(**values)

    return _factory


@pytest.fixture
def make_pdf() -> Callable[[Iterable[str]], bytes]:
    """Build a real PDF with one page of text per entry."""

    def _factory(texts: Iterable[str], **info: str) -> bytes:
        doc = fitz.open()
        try:
            for text in texts:
                page = doc.new_page(width=300, height=200)
                page.insert_text((36, 72), text)
            if info:
                doc.set_metadata(info)
            return doc.tobytes()
        finally:
            doc.close()

    return _factory
