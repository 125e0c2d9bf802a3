"""Image decoding, JPEG encoding and scan verification helpers."""

import io
import os
from enum import Enum

from PIL import Image, ImageOps

from uvify import JPEG_QUALITY


class VerifyResult(Enum):
    """Result of QR scannability verification."""
    SCANNABLE = "scannable"
    NOT_SCANNABLE = "not_scannable"
    SKIPPED = "skipped"  # pyzbar not installed


def load_background(path: str) -> Image.Image:
    """Load and fully decode a background image from disk.

    The pixels are materialized before returning, so the image can be shared
    read-only between worker threads.

    Args:
        path: Path to the background image file.

    Returns:
        Decoded PIL Image, RGB or RGBA.

    Raises:
        FileNotFoundError: If the image file doesn't exist.
        ValueError: If the file is not a valid image.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Image not found: {path}")

    try:
        with Image.open(path) as img:
            img.load()
            mode = "RGBA" if img.mode in ("RGBA", "LA", "PA") or "transparency" in img.info else "RGB"
            # Phone photos store the sensor image plus an EXIF rotation tag.
            return ImageOps.exif_transpose(img).convert(mode)
    except (OSError, SyntaxError) as e:
        raise ValueError(f"Could not open image '{path}': {e}")


def encode_jpeg(image: Image.Image, quality: int = JPEG_QUALITY) -> bytes:
    """Encode an image as baseline JPEG bytes."""
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, "JPEG", quality=quality)
    return buffer.getvalue()


def verify_qr_scannable(image_data: bytes) -> tuple[VerifyResult, list[str]]:
    """Attempt to decode every QR code in an encoded image.

    Uses pyzbar if available, otherwise returns SKIPPED.

    Args:
        image_data: Encoded image bytes (e.g. a produced JPEG).

    Returns:
        Tuple of (VerifyResult, decoded strings).
    """
    try:
        from pyzbar.pyzbar import decode as pyzbar_decode
    except ImportError:
        return VerifyResult.SKIPPED, []

    try:
        with Image.open(io.BytesIO(image_data)) as img:
            results = pyzbar_decode(img)
    except (OSError, ValueError):
        return VerifyResult.NOT_SCANNABLE, []

    decoded = [r.data.decode("utf-8", errors="replace") for r in results]
    if decoded:
        return VerifyResult.SCANNABLE, decoded
    return VerifyResult.NOT_SCANNABLE, []
