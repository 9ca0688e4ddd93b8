from __future__ import annotations

import base64
import binascii
import io
import re

import cv2
import numpy as np
from pdf2image import convert_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from PIL import Image

# Register HEIF/HEIC opener with Pillow (must be done before first use)
import pillow_heif  # noqa: F401
pillow_heif.register_heif_opener()

DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?P<params>(?:;[^;,]*)*),(?P<payload>.*)$", re.DOTALL)
ACCEPTED_MIME_PREFIXES = ("image/", "application/pdf")
MIN_LONG_SIDE = 160


class InvalidImageError(ValueError):
    """Raised when an upload or data URL cannot be used as an OCR input."""


def parse_data_url(data_url: str) -> tuple[str, bytes]:
    """Split a base64 data URL into its mime type and decoded bytes."""
    match = DATA_URL_RE.match(data_url.strip())
    if match is None:
        raise InvalidImageError(
            "Missing image (expected data URL in JSON body: { image: 'data:image/...;base64,...' })"
        )

    mime = match.group("mime").lower()
    if not mime.startswith(ACCEPTED_MIME_PREFIXES):
        raise InvalidImageError(f"Unsupported data URL type: {mime}")
    if ";base64" not in match.group("params").lower():
        raise InvalidImageError("Data URL must be base64 encoded.")

    try:
        raw = base64.b64decode(match.group("payload"), validate=False)
    except (binascii.Error, ValueError) as exc:
        raise InvalidImageError("Data URL payload is not valid base64.") from exc
    if not raw:
        raise InvalidImageError("Data URL payload is empty.")
    return mime, raw


def to_data_url(raw_bytes: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(raw_bytes).decode('ascii')}"


def _pil_to_bgr(pil_image: Image.Image) -> np.ndarray:
    """Convert a PIL Image to a BGR numpy array for OpenCV."""
    rgb = pil_image.convert("RGB")
    return cv2.cvtColor(np.array(rgb), cv2.COLOR_RGB2BGR)


def decode_uploaded_file(raw_bytes: bytes, content_type: str | None, page: int = 1) -> np.ndarray:
    if not raw_bytes:
        raise InvalidImageError("Uploaded file is empty.")

    if content_type == "application/pdf":
        page = max(1, int(page))
        try:
            pages = convert_from_bytes(raw_bytes, dpi=300, first_page=page, last_page=page)
        except (
            PDFInfoNotInstalledError,
            PDFPageCountError,
            PDFPopplerTimeoutError,
            PDFSyntaxError,
        ) as exc:
            raise InvalidImageError(f"PDF could not be rendered: {exc}") from exc
        if not pages:
            raise InvalidImageError(f"PDF has no page {page}.")
        return _pil_to_bgr(pages[0])

    # Try OpenCV first (fast path for JPEG, PNG, etc.)
    image = cv2.imdecode(np.frombuffer(raw_bytes, np.uint8), cv2.IMREAD_COLOR)
    if image is not None:
        return image

    # Fallback to Pillow for formats OpenCV can't handle (HEIF, HEIC, WEBP, TIFF, BMP, …)
    try:
        pil_img = Image.open(io.BytesIO(raw_bytes))
        pil_img.load()  # force decode
        return _pil_to_bgr(pil_img)
    except Exception as exc:
        raise InvalidImageError(
            "Unsupported image file or decode failed. "
            "Supported formats: JPEG, PNG, HEIF/HEIC, WEBP, TIFF, BMP, PDF."
        ) from exc


def encode_jpeg(image: np.ndarray, quality: int = 90) -> bytes:
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        raise InvalidImageError("Failed to encode image as JPEG.")
    return buffer.tobytes()


def image_to_data_url(image: np.ndarray, max_bytes: int) -> str:
    return shrink_data_url(to_data_url(encode_jpeg(image), "image/jpeg"), max_bytes)


def shrink_data_url(data_url: str, max_bytes: int) -> str:
    """Re-encode an oversized image data URL as a smaller JPEG.

    PDFs and images already under ``max_bytes`` are returned untouched. Each
    round lowers JPEG quality first, then scales the page down until the
    payload fits. Raises ``InvalidImageError`` if it still does not fit once
    the long side would drop below ``MIN_LONG_SIDE``.
    """
    if len(data_url) <= max_bytes:
        return data_url

    mime, raw = parse_data_url(data_url)
    if mime == "application/pdf":
        return data_url

    image = cv2.imdecode(np.frombuffer(raw, np.uint8), cv2.IMREAD_COLOR)
    if image is None:
        try:
            image = _pil_to_bgr(Image.open(io.BytesIO(raw)))
        except Exception as exc:
            raise InvalidImageError("Image payload could not be decoded.") from exc

    for quality in (85, 75, 65):
        candidate = to_data_url(encode_jpeg(image, quality), "image/jpeg")
        if len(candidate) <= max_bytes:
            return candidate

    scaled = image
    while max(scaled.shape[:2]) * 0.8 >= MIN_LONG_SIDE:
        scaled = cv2.resize(scaled, None, fx=0.8, fy=0.8, interpolation=cv2.INTER_AREA)
        candidate = to_data_url(encode_jpeg(scaled, 75), "image/jpeg")
        if len(candidate) <= max_bytes:
            return candidate

    raise InvalidImageError(f"Image could not be compressed below {max_bytes} bytes.")
