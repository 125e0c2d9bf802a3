"""Uvify — batch QR codes composited onto a background image, packaged as ZIP shards."""

__version__ = "1.0.0"

# Shared constants
DPI = 300  # Print density used for layout, QR raster size and JPEG metadata
CM_PER_INCH = 2.54
JPEG_QUALITY = 90  # Pillow quality scale, 0.9 of maximum
QR_OVERSAMPLE = 10  # Pixels per QR module before downscaling to the placement
BATCH_SIZE = 4  # Rows in flight at once
SHARD_CAPACITY = 2000  # Max entries per archive
ARCHIVE_PREFIX = "uvify_outputs"
IMAGE_EXTENSION = ".jpg"
