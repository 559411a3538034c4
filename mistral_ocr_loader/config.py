"""Loader configuration.

Every setting can come from the environment (or a ``.env`` file) and every
setting can be overridden per loader through keyword arguments.

Environment variables (defaults in parentheses):
 - MISTRAL_API_KEY (required, no default)
 - MISTRAL_OCR_MODEL (mistral-ocr-latest)
 - OCR_SPLIT_PAGES (true)
 - OCR_FORCE_IMAGE_CONVERSION (false)
 - OCR_FORCE_SINGLE_MODE (false)
 - OCR_BATCH_SIZE (unset: one batch job for the whole document)
 - PDF_IMAGE_SCALE / PDF_IMAGE_QUALITY / PDF_IMAGE_FORMAT (2.0 / 100 / png)
 - OCR_ALLOWED_EXTENSIONS (pdf,png,jpg,jpeg,webp,tif,tiff)
 - OCR_BATCH_POLL_INTERVAL_SECONDS / OCR_BATCH_MAX_POLL_ATTEMPTS (5 / 30)
"""
from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from mistral_ocr_loader.errors import ConfigurationError

DEFAULT_MODEL_NAME = "mistral-ocr-latest"
DEFAULT_ALLOWED_EXTENSIONS: tuple[str, ...] = (
    ".pdf",
    ".png",
    ".jpg",
    ".jpeg",
    ".webp",
    ".tif",
    ".tiff",
)


def normalise_extension(ext: str) -> str:
    ext = ext.strip().lower()
    if ext and not ext.startswith("."):
        ext = f".{ext}"
    return ext


class OCRLoaderConfig(BaseSettings):
    api_key: str | None = Field(
        None, validation_alias=AliasChoices("MISTRAL_API_KEY", "api_key")
    )
    model_name: str = Field(
        DEFAULT_MODEL_NAME,
        validation_alias=AliasChoices("MISTRAL_OCR_MODEL", "model_name"),
    )
    split_pages: bool = Field(
        True, validation_alias=AliasChoices("OCR_SPLIT_PAGES", "split_pages")
    )
    force_image_conversion: bool = Field(
        False,
        validation_alias=AliasChoices(
            "OCR_FORCE_IMAGE_CONVERSION", "force_image_conversion"
        ),
    )
    force_single_mode: bool = Field(
        False,
        validation_alias=AliasChoices("OCR_FORCE_SINGLE_MODE", "force_single_mode"),
    )
    batch_size: int | None = Field(
        None, validation_alias=AliasChoices("OCR_BATCH_SIZE", "batch_size")
    )
    pdf_image_scale: float = Field(
        2.0, validation_alias=AliasChoices("PDF_IMAGE_SCALE", "pdf_image_scale")
    )
    pdf_image_quality: int = Field(
        100, validation_alias=AliasChoices("PDF_IMAGE_QUALITY", "pdf_image_quality")
    )
    pdf_image_format: Literal["png", "jpeg", "webp"] = Field(
        "png", validation_alias=AliasChoices("PDF_IMAGE_FORMAT", "pdf_image_format")
    )
    allowed_extensions: Annotated[tuple[str, ...], NoDecode] = Field(
        DEFAULT_ALLOWED_EXTENSIONS,
        validation_alias=AliasChoices("OCR_ALLOWED_EXTENSIONS", "allowed_extensions"),
    )
    batch_poll_interval_seconds: float = Field(
        5.0,
        validation_alias=AliasChoices(
            "OCR_BATCH_POLL_INTERVAL_SECONDS", "batch_poll_interval_seconds"
        ),
    )
    batch_max_poll_attempts: int = Field(
        30,
        validation_alias=AliasChoices(
            "OCR_BATCH_MAX_POLL_ATTEMPTS", "batch_max_poll_attempts"
        ),
    )
    include_image_base64: bool = Field(
        True,
        validation_alias=AliasChoices("OCR_INCLUDE_IMAGE_BASE64", "include_image_base64"),
    )
    retry_attempts: int = Field(
        3, validation_alias=AliasChoices("OCR_RETRY_ATTEMPTS", "retry_attempts")
    )
    retry_backoff_seconds: float = Field(
        1.0,
        validation_alias=AliasChoices("OCR_RETRY_BACKOFF_SECONDS", "retry_backoff_seconds"),
    )
    tiff_jpeg_quality: int = Field(
        90, validation_alias=AliasChoices("TIFF_JPEG_QUALITY", "tiff_jpeg_quality")
    )
    local_text_fallback: bool = Field(
        False,
        validation_alias=AliasChoices("OCR_LOCAL_TEXT_FALLBACK", "local_text_fallback"),
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
        populate_by_name=True,
        protected_namespaces=(),
    )

    @field_validator("allowed_extensions", mode="before")
    @classmethod
    def _split_extensions(cls, value: Any) -> Any:
        # Env values arrive as "pdf,png" strings.
        if isinstance(value, str):
            value = [part for part in value.split(",") if part.strip()]
        if isinstance(value, (list, tuple, set, frozenset)):
            return tuple(normalise_extension(str(ext)) for ext in value)
        return value

    @field_validator("batch_size", mode="before")
    @classmethod
    def _blank_batch_size(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def validate_required(self) -> None:
        if not (self.api_key or "").strip():
            raise ConfigurationError("Mistral API key is required")
        if self.batch_size is not None and self.batch_size <= 0:
            raise ConfigurationError("batch_size must be positive when set")
        if self.batch_poll_interval_seconds < 0:
            raise ConfigurationError("batch_poll_interval_seconds must not be negative")
        if self.batch_max_poll_attempts <= 0:
            raise ConfigurationError("batch_max_poll_attempts must be positive")
        if self.retry_attempts <= 0:
            raise ConfigurationError("retry_attempts must be positive")
        if not 1 <= self.pdf_image_quality <= 100:
            raise ConfigurationError("pdf_image_quality must be between 1 and 100")
        if self.pdf_image_scale <= 0:
            raise ConfigurationError("pdf_image_scale must be positive")

    def with_overrides(self, **overrides: Any) -> "OCRLoaderConfig":
        """Return a validated copy with non-None keyword overrides applied."""
        updates = {key: value for key, value in overrides.items() if value is not None}
        if not updates:
            return self
        unknown = sorted(set(updates) - set(type(self).model_fields))
        if unknown:
            raise ConfigurationError("Unknown loader options: " + ", ".join(unknown))
        payload = self.model_dump()
        payload.update(updates)
        return type(self).model_validate(payload)


@lru_cache
def get_config() -> OCRLoaderConfig:
    return OCRLoaderConfig()  # type: ignore[call-arg]


__all__ = [
    "DEFAULT_ALLOWED_EXTENSIONS",
    "DEFAULT_MODEL_NAME",
    "OCRLoaderConfig",
    "get_config",
    "normalise_extension",
]
