"""Map raw Mistral OCR pages onto the uniform `OcrResult` shape.

Both the single-call transport and the batch download path go through
`normalise_response`, so the two never diverge in output shape.
"""
from __future__ import annotations

from typing import Any, Dict, List

from mistral_ocr_loader.models.ocr import (
    ImageRegion,
    OcrResult,
    PageDimensions,
    RawOcrImage,
    RawOcrPage,
    RawOcrResponse,
)


def _coordinate(value: float | int | None) -> float | int:
    return 0 if value is None else value


def normalise_image(image: RawOcrImage) -> ImageRegion:
    return ImageRegion(
        id=image.id,
        top_left_x=_coordinate(image.top_left_x),
        top_left_y=_coordinate(image.top_left_y),
        bottom_right_x=_coordinate(image.bottom_right_x),
        bottom_right_y=_coordinate(image.bottom_right_y),
        image_base64=image.image_base64 or None,
    )


def normalise_page(page: RawOcrPage) -> OcrResult:
    dimensions = None
    if page.dimensions is not None:
        dimensions = PageDimensions(
            width=page.dimensions.width,
            height=page.dimensions.height,
            dpi=page.dimensions.dpi,
        )
    return OcrResult(
        text=page.markdown or "",
        images=tuple(normalise_image(image) for image in page.images or ()),
        dimensions=dimensions,
    )


def normalise_response(response: RawOcrResponse) -> List[OcrResult]:
    return [normalise_page(page) for page in response.pages or ()]


def result_metadata(result: OcrResult) -> Dict[str, Any]:
    """Layout metadata merged into each page `Document`."""
    return {
        "images": [image.to_dict() for image in result.images],
        "dimensions": result.dimensions.to_dict() if result.dimensions else None,
    }


__all__ = ["normalise_image", "normalise_page", "normalise_response", "result_metadata"]
