import base64
import io
import shutil

import cv2
import numpy as np
import pytest
from PIL import Image

from app.services import image_utils
from app.services.image_utils import (
    InvalidImageError,
    decode_uploaded_file,
    image_to_data_url,
    parse_data_url,
    shrink_data_url,
    to_data_url,
)


def _png_bytes(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


def test_parse_data_url_roundtrips_payload():
    mime, raw = parse_data_url(to_data_url(b"\x89PNG-bytes", "image/png"))
    assert mime == "image/png"
    assert raw == b"\x89PNG-bytes"


@pytest.mark.parametrize(
    "value",
    [
        "",
        "not a data url",
        "data:text/plain;base64,aGVsbG8=",
        "data:image/png,rawdata",
        "data:image/png;base64,",
    ],
)
def test_parse_data_url_rejects_bad_input(value):
    with pytest.raises(InvalidImageError):
        parse_data_url(value)


def test_shrink_data_url_keeps_small_images():
    url = to_data_url(_png_bytes(np.zeros((20, 20, 3), dtype=np.uint8)), "image/png")
    assert shrink_data_url(url, max_bytes=1_000_000) == url


def test_shrink_data_url_passes_pdf_through():
    url = "data:application/pdf;base64," + base64.b64encode(b"%PDF-1.4" * 2000).decode()
    assert shrink_data_url(url, max_bytes=10_000) == url


def test_shrink_data_url_reencodes_large_images_as_jpeg():
    noise = np.random.default_rng(0).integers(0, 256, (1200, 1200, 3), dtype=np.uint8)
    url = to_data_url(_png_bytes(noise), "image/png")

    shrunk = shrink_data_url(url, max_bytes=200_000)

    assert shrunk.startswith("data:image/jpeg;base64,")
    assert len(shrunk) <= 200_000
    assert len(shrunk) < len(url)


def test_decode_uploaded_file_reads_png():
    image = np.full((30, 40, 3), 255, dtype=np.uint8)
    decoded = decode_uploaded_file(_png_bytes(image), "image/png")
    assert decoded.shape == (30, 40, 3)


def test_decode_uploaded_file_rejects_empty_and_garbage():
    with pytest.raises(InvalidImageError):
        decode_uploaded_file(b"", "image/png")
    with pytest.raises(InvalidImageError):
        decode_uploaded_file(b"definitely not an image", "image/png")


def test_image_to_data_url_encodes_jpeg():
    url = image_to_data_url(np.zeros((10, 10, 3), dtype=np.uint8), max_bytes=1_000_000)
    mime, raw = parse_data_url(url)
    assert mime == "image/jpeg"
    assert raw[:2] == b"\xff\xd8"


def test_shrink_data_url_gives_up_on_impossible_budget():
    noise = np.random.default_rng(1).integers(0, 256, (800, 800, 3), dtype=np.uint8)
    url = to_data_url(_png_bytes(noise), "image/png")

    with pytest.raises(InvalidImageError):
        shrink_data_url(url, max_bytes=1000)


def _pillow_bytes(fmt: str) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (24, 16), (0, 0, 255)).save(buffer, format=fmt)
    return buffer.getvalue()


def test_decode_uploaded_file_falls_back_to_pillow_for_webp(monkeypatch):
    monkeypatch.setattr(image_utils.cv2, "imdecode", lambda *args: None)

    decoded = decode_uploaded_file(_pillow_bytes("WEBP"), "image/webp")

    assert decoded.shape == (16, 24, 3)
    blue, green, red = decoded[8, 12]
    assert blue > 200 and red < 60


def test_decode_uploaded_file_reads_heic(monkeypatch):
    try:
        raw = _pillow_bytes("HEIF")
    except (KeyError, OSError, ValueError):
        pytest.skip("no HEIF encoder available")
    monkeypatch.setattr(image_utils.cv2, "imdecode", lambda *args: None)

    decoded = decode_uploaded_file(raw, "image/heic")

    assert decoded.shape[:2] == (16, 24)


def test_decode_uploaded_file_rejects_broken_pdf():
    with pytest.raises(InvalidImageError):
        decode_uploaded_file(b"not a pdf at all", "application/pdf")


needs_poppler = pytest.mark.skipif(
    shutil.which("pdfinfo") is None or shutil.which("pdftoppm") is None,
    reason="poppler is not installed",
)


def _two_page_pdf() -> bytes:
    buffer = io.BytesIO()
    first = Image.new("RGB", (40, 40), (255, 0, 0))
    second = Image.new("RGB", (40, 40), (0, 0, 255))
    first.save(buffer, format="PDF", save_all=True, append_images=[second])
    return buffer.getvalue()


@needs_poppler
def test_decode_uploaded_file_renders_requested_pdf_page():
    decoded = decode_uploaded_file(_two_page_pdf(), "application/pdf", page=2)

    height, width = decoded.shape[:2]
    blue, green, red = decoded[height // 2, width // 2]
    assert blue > 200 and red < 60


@needs_poppler
def test_decode_uploaded_file_rejects_page_past_the_end():
    with pytest.raises(InvalidImageError, match="no page 3"):
        decode_uploaded_file(_two_page_pdf(), "application/pdf", page=3)
