"""Render links as oversampled, transparent-background QR rasters."""

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image, ImageOps

from uvify import QR_OVERSAMPLE
from uvify.errors import QrEncodeError


def render_qr(data: str, oversample: int = QR_OVERSAMPLE, min_size: int = 0) -> Image.Image:
    """Render a QR code for compositing onto a photo.

    Uses error correction level H (30% redundancy) so printed codes survive
    smudges and partial cover. Each module is at least ``oversample`` pixels
    wide, and wider when needed to make the raster larger than ``min_size``,
    so it is only ever downscaled to its placement. Light modules are fully
    transparent and dark modules opaque black; no quiet zone is drawn, the
    compositor paints a white backing instead.

    Args:
        data: The link or text to encode.
        oversample: Minimum pixels per module in the returned raster.
        min_size: Placement size in pixels the raster must exceed.

    Returns:
        Square RGBA PIL Image.

    Raises:
        QrEncodeError: If the data is empty or exceeds QR code capacity.
    """
    if not data or not data.strip():
        raise QrEncodeError("QR data cannot be empty.")

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=oversample,
        border=0,
    )
    qr.add_data(data)
    try:
        qr.make(fit=True)
    # Newer qrcode releases raise a plain ValueError past version 40.
    except (DataOverflowError, ValueError) as e:
        raise QrEncodeError(
            f"QR data too long ({len(data)} chars) for error correction level H."
        ) from e

    qr.box_size = max(oversample, min_size // qr.modules_count + 1)
    modules = qr.make_image(fill_color="black", back_color="white").convert("L")

    # Dark modules become opaque, light modules transparent.
    qr_image = Image.new("RGBA", modules.size, (0, 0, 0, 255))
    qr_image.putalpha(ImageOps.invert(modules))
    return qr_image


def scale_qr(qr_image: Image.Image, size_px: int) -> Image.Image:
    """Downscale an oversampled QR raster to its placement size."""
    if qr_image.size == (size_px, size_px):
        return qr_image
    return qr_image.resize((size_px, size_px), Image.LANCZOS)
