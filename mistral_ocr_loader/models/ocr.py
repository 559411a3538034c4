"""Typed OCR payloads shared by the transport, normaliser and batch manager.

Raw service responses are decoded once, at the transport boundary, into the
pydantic ``RawOcr*`` models. Everything past the normaliser works with the
frozen dataclasses (`OcrResult`, `ImageRegion`, `PageDimensions`).
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

_LOG = logging.getLogger("mistral_ocr.models")


class _RawModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True, from_attributes=True)


class RawOcrImage(_RawModel):
    id: str = ""
    top_left_x: Optional[Union[int, float]] = Field(
        None, validation_alias=AliasChoices("top_left_x", "topLeftX")
    )
    top_left_y: Optional[Union[int, float]] = Field(
        None, validation_alias=AliasChoices("top_left_y", "topLeftY")
    )
    bottom_right_x: Optional[Union[int, float]] = Field(
        None, validation_alias=AliasChoices("bottom_right_x", "bottomRightX")
    )
    bottom_right_y: Optional[Union[int, float]] = Field(
        None, validation_alias=AliasChoices("bottom_right_y", "bottomRightY")
    )
    image_base64: Optional[str] = Field(
        None, validation_alias=AliasChoices("image_base64", "imageBase64")
    )


class RawOcrDimensions(_RawModel):
    width: Optional[int] = None
    height: Optional[int] = None
    dpi: Optional[int] = None


class RawOcrPage(_RawModel):
    index: Optional[int] = None
    markdown: Optional[str] = None
    images: Optional[List[RawOcrImage]] = None
    dimensions: Optional[RawOcrDimensions] = None


class RawOcrResponse(_RawModel):
    pages: Optional[List[RawOcrPage]] = None
    model: Optional[str] = None

    @property
    def has_pages(self) -> bool:
        return bool(self.pages)


@dataclass(frozen=True, slots=True)
class ImageRegion:
    id: str
    top_left_x: float = 0
    top_left_y: float = 0
    bottom_right_x: float = 0
    bottom_right_y: float = 0
    image_base64: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "top_left_x": self.top_left_x,
            "top_left_y": self.top_left_y,
            "bottom_right_x": self.bottom_right_x,
            "bottom_right_y": self.bottom_right_y,
        }
        if self.image_base64 is not None:
            payload["image_base64"] = self.image_base64
        return payload


@dataclass(frozen=True, slots=True)
class PageDimensions:
    width: int | None = None
    height: int | None = None
    dpi: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"width": self.width, "height": self.height, "dpi": self.dpi}


@dataclass(frozen=True, slots=True)
class OcrResult:
    """Normalised OCR output for one page."""

    text: str = ""
    images: tuple[ImageRegion, ...] = ()
    dimensions: PageDimensions | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class PageImage:
    """One rasterised PDF page waiting for OCR."""

    page_number: int
    data: bytes = field(repr=False)
    mime_type: str = "image/png"


class BatchJobStatus(str, enum.Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATUSES

    @property
    def rank(self) -> int:
        if self is BatchJobStatus.QUEUED:
            return 0
        if self is BatchJobStatus.RUNNING:
            return 1
        return 2

    @classmethod
    def from_service(cls, value: Any) -> "BatchJobStatus":
        raw = getattr(value, "value", value)
        key = str(raw or "").strip().upper()
        try:
            return _SERVICE_STATUS_MAP[key]
        except KeyError:
            raise ValueError(f"Unknown batch job status: {raw!r}") from None


_TERMINAL_STATUSES = frozenset(
    {
        BatchJobStatus.SUCCESS,
        BatchJobStatus.FAILED,
        BatchJobStatus.CANCELED,
        BatchJobStatus.EXPIRED,
    }
)

_SERVICE_STATUS_MAP = {
    "QUEUED": BatchJobStatus.QUEUED,
    "RUNNING": BatchJobStatus.RUNNING,
    # Cancellation is still in flight until the service reports CANCELLED.
    "CANCELLATION_REQUESTED": BatchJobStatus.RUNNING,
    "SUCCESS": BatchJobStatus.SUCCESS,
    "FAILED": BatchJobStatus.FAILED,
    "CANCELED": BatchJobStatus.CANCELED,
    "CANCELLED": BatchJobStatus.CANCELED,
    "EXPIRED": BatchJobStatus.EXPIRED,
    "TIMEOUT_EXCEEDED": BatchJobStatus.EXPIRED,
}


@dataclass(slots=True)
class BatchJobSnapshot:
    """Job state as reported by one ``get`` call."""

    job_id: str
    status: BatchJobStatus
    output_file_id: str | None = None
    error_file_id: str | None = None
    errors: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchJob:
    """Lifecycle of one submitted batch job; status only moves forward."""

    job_id: str
    input_file_id: str
    status: BatchJobStatus = BatchJobStatus.QUEUED
    output_file_id: str | None = None
    error_file_id: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def advance(self, snapshot: BatchJobSnapshot) -> BatchJobStatus:
        if self.is_terminal:
            return self.status
        if snapshot.status.rank < self.status.rank:
            _LOG.debug(
                "batch_status_regression_ignored",
                extra={
                    "job_id": self.job_id,
                    "status": self.status.value,
                    "reported": snapshot.status.value,
                },
            )
            return self.status
        self.status = snapshot.status
        if snapshot.output_file_id:
            self.output_file_id = snapshot.output_file_id
        if snapshot.error_file_id:
            self.error_file_id = snapshot.error_file_id
        if snapshot.errors:
            self.errors = list(snapshot.errors)
        return self.status


__all__ = [
    "BatchJob",
    "BatchJobSnapshot",
    "BatchJobStatus",
    "ImageRegion",
    "OcrResult",
    "PageDimensions",
    "PageImage",
    "RawOcrDimensions",
    "RawOcrImage",
    "RawOcrPage",
    "RawOcrResponse",
]
