import io

import pytest
from PIL import Image

from mistral_ocr_loader.errors import PageConversionError
from mistral_ocr_loader.utils.pdf_to_image import (
    convert_pdf_to_image,
    count_pdf_pages,
    image_mime_type,
)


def test_renders_png_at_requested_scale(make_pdf):
    pdf = make_pdf(["one", "two"])
    data = convert_pdf_to_image(pdf, page_number=2, scale=2.0)
    assert data.startswith(b"\x89PNG")
    with Image.open(io.BytesIO(data)) as img:
        assert img.size == (600, 400)


def test_renders_jpeg_and_webp(make_pdf):
    pdf = make_pdf(["one"])
    assert convert_pdf_to_image(pdf, output_format="jpeg", quality=80, scale=1.0).startswith(b"\xff\xd8\xff")
    webp = convert_pdf_to_image(pdf, output_format="webp", scale=1.0)
    assert webp[:4] == b"RIFF" and webp[8:12] == b"WEBP"


@pytest.mark.parametrize("page_number", [0, 3])
def test_out_of_range_page_raises(make_pdf, page_number):
    with pytest.raises(PageConversionError) as exc:
        convert_pdf_to_image(make_pdf(["one", "two"]), page_number=page_number)
    assert exc.value.page_number == page_number
    assert "Invalid page number" in str(exc.value)


def test_unreadable_pdf_raises_conversion_error():
    with pytest.raises(PageConversionError) as exc:
        convert_pdf_to_image(b"%PDF-1.4 broken", page_number=1)
    assert str(exc.value).startswith("Failed to convert PDF to image: ")


def test_count_pages(make_pdf):
    assert count_pdf_pages(make_pdf(["a", "b", "c", "d"])) == 4
    with pytest.raises(PageConversionError):
        count_pdf_pages(b"")


def test_mime_types():
    assert image_mime_type("png") == "image/png"
    assert image_mime_type("jpeg") == "image/jpeg"
    assert image_mime_type("webp") == "image/webp"
