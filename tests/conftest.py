"""
pytest configuration and shared fixtures

Usage:
    def test_something(background, scenario_layout):
        assert background.size == (1600, 900)
"""

from __future__ import annotations

import pytest
from PIL import Image

from uvify.image_utils import encode_jpeg
from uvify.layout import LayoutConfig, QrPlacement
from uvify.packer import PipelineSettings
from uvify.rows import SourceRow

BACKGROUND_COLOR = (200, 30, 30)


# ============================================================================
# Image fixtures
# ============================================================================

@pytest.fixture
def background() -> Image.Image:
    """1600x900 solid background, same aspect ratio as the 16x9 cm layout"""
    return Image.new("RGB", (1600, 900), BACKGROUND_COLOR)


@pytest.fixture
def square_background() -> Image.Image:
    """Square background, pillarboxed inside a 16x9 cm layout"""
    return Image.new("RGB", (1000, 1000), BACKGROUND_COLOR)


@pytest.fixture
def small_background() -> Image.Image:
    """Tiny background for runs with many rows"""
    return Image.new("RGB", (120, 120), BACKGROUND_COLOR)


@pytest.fixture
def jpeg_bytes() -> bytes:
    """A real JPEG as produced by the encoder, with some structure in it"""
    img = Image.new("RGB", (64, 48), (255, 255, 255))
    for x in range(0, 64, 8):
        for y in range(48):
            img.putpixel((x, y), (x * 3, 80, 255 - x * 3))
    return encode_jpeg(img)


# ============================================================================
# Layout / settings fixtures
# ============================================================================

@pytest.fixture
def scenario_layout() -> LayoutConfig:
    """16x9 cm, one QR of 3 cm, 2.4 cm from the top, 0.9 cm from the right"""
    return LayoutConfig(
        width_cm=16.0,
        height_cm=9.0,
        placements=(QrPlacement(size_cm=3.0, margin_top_cm=2.4, margin_right_cm=0.9),),
    )


@pytest.fixture
def small_layout() -> LayoutConfig:
    """3x3 cm background with a 1 cm QR, cheap to render"""
    return LayoutConfig(
        width_cm=3.0,
        height_cm=3.0,
        placements=(QrPlacement(size_cm=1.0, margin_top_cm=0.5, margin_right_cm=0.5),),
    )


@pytest.fixture
def small_settings() -> PipelineSettings:
    """Low density settings for fast runs"""
    return PipelineSettings(dpi=72, shard_capacity=10, batch_size=4)


# ============================================================================
# Row fixtures
# ============================================================================

@pytest.fixture
def make_rows():
    """Factory for single-link rows: make_rows(3) -> ids 1, 2, 3"""
    def _make(count: int, template: str = "https://x.example/a?id={n}") -> list[SourceRow]:
        return [SourceRow(index=i, links=(template.format(n=i + 1),)) for i in range(count)]
    return _make


@pytest.fixture
def scenario_rows() -> list[SourceRow]:
    return [SourceRow(index=0, links=("https://x.example/a?id=42",))]
