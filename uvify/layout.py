"""Physical-unit layout: centimeters to pixels, background fit and QR placement.

All geometry is computed in floating-point pixels and rounded once per output
coordinate (round-half-up), so neighbouring edges never drift apart by a pixel.
QR margins are measured from the content box of the scaled background, not
from the canvas edges, so a QR code follows the photo when it is letterboxed.
"""

import math
from dataclasses import dataclass, replace

from uvify import CM_PER_INCH, DPI
from uvify.errors import LayoutError


@dataclass(frozen=True)
class QrPlacement:
    """One configured QR position, in centimeters."""

    size_cm: float
    margin_top_cm: float
    margin_right_cm: float


# Defaults of the original tool: QR 1 near the right edge, QR 2 further left.
DEFAULT_PLACEMENTS = (
    QrPlacement(size_cm=3.0, margin_top_cm=2.4, margin_right_cm=0.9),
    QrPlacement(size_cm=3.0, margin_top_cm=2.4, margin_right_cm=5.0),
)


@dataclass(frozen=True)
class LayoutConfig:
    """Background size and one or two QR placements, in centimeters."""

    width_cm: float = 16.0
    height_cm: float = 9.0
    placements: tuple[QrPlacement, ...] = DEFAULT_PLACEMENTS[:1]

    def __post_init__(self) -> None:
        placements = tuple(self.placements)
        if not 1 <= len(placements) <= 2:
            raise LayoutError(
                f"Layout needs one or two QR placements, got {len(placements)}."
            )
        object.__setattr__(self, "placements", placements)

    @classmethod
    def default(cls, qr_count: int = 1) -> "LayoutConfig":
        return cls(placements=DEFAULT_PLACEMENTS[:qr_count])

    @property
    def qr_count(self) -> int:
        return len(self.placements)

    def resized(
        self,
        width_cm: float | None = None,
        height_cm: float | None = None,
    ) -> "LayoutConfig":
        """Return a copy with a new background size and margins clamped to fit.

        Margins larger than ``dimension - size`` are pulled in rather than
        rejected, matching how the layout controls behave when the
        background shrinks underneath existing placements.
        """
        width = self.width_cm if width_cm is None else width_cm
        height = self.height_cm if height_cm is None else height_cm
        placements = tuple(
            replace(
                placement,
                margin_top_cm=_clamp_margin(placement.margin_top_cm, height - placement.size_cm),
                margin_right_cm=_clamp_margin(placement.margin_right_cm, width - placement.size_cm),
            )
            for placement in self.placements
        )
        return LayoutConfig(width_cm=width, height_cm=height, placements=placements)


@dataclass(frozen=True)
class PixelRect:
    """Integer pixel rectangle, origin at the canvas top-left."""

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def box(self) -> tuple[int, int, int, int]:
        """(left, top, right, bottom) as Pillow expects it."""
        return (self.x, self.y, self.right, self.bottom)

    def contains(self, other: "PixelRect") -> bool:
        return (
            other.x >= self.x
            and other.y >= self.y
            and other.right <= self.right
            and other.bottom <= self.bottom
        )


@dataclass(frozen=True)
class ResolvedLayout:
    """Pixel geometry of one run: canvas, background content box, QR rectangles."""

    canvas_size: tuple[int, int]
    content_box: PixelRect
    qr_rects: tuple[PixelRect, ...]


def cm_to_px(cm: float, dpi: int = DPI) -> float:
    return cm / CM_PER_INCH * dpi


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _clamp_margin(margin: float, limit: float) -> float:
    return max(0.0, min(margin, limit))


def _fit(
    bg_width: float,
    bg_height: float,
    canvas_width: float,
    canvas_height: float,
) -> tuple[float, float, float, float]:
    scale = min(canvas_width / bg_width, canvas_height / bg_height)
    width = bg_width * scale
    height = bg_height * scale
    return (canvas_width - width) / 2, (canvas_height - height) / 2, width, height


def _round_rect(x: float, y: float, width: float, height: float) -> PixelRect:
    left = round_half_up(x)
    top = round_half_up(y)
    return PixelRect(left, top, round_half_up(x + width) - left, round_half_up(y + height) - top)


def fit_background(
    bg_width_px: int,
    bg_height_px: int,
    canvas_width_px: float,
    canvas_height_px: float,
) -> PixelRect:
    """Contain-fit a background into the canvas, centered.

    The dimension that is relatively longer fills the canvas; the other one
    is centered with equal padding on both sides (letterbox or pillarbox).
    """
    if bg_width_px <= 0 or bg_height_px <= 0:
        raise LayoutError(f"Background has no pixels ({bg_width_px}x{bg_height_px}).")
    return _round_rect(*_fit(bg_width_px, bg_height_px, canvas_width_px, canvas_height_px))


def resolve_layout(
    bg_width_px: int,
    bg_height_px: int,
    config: LayoutConfig,
    dpi: int = DPI,
) -> ResolvedLayout:
    """Compute canvas size, content box and QR rectangles for a run.

    Args:
        bg_width_px: Decoded background width in pixels.
        bg_height_px: Decoded background height in pixels.
        config: Background size and QR placements in centimeters.
        dpi: Pixel density for every cm to px conversion.

    Returns:
        ResolvedLayout with integer pixel coordinates.

    Raises:
        LayoutError: If the canvas or a QR code resolves to no pixels, or a
            QR code is larger than the visible background.
    """
    if bg_width_px <= 0 or bg_height_px <= 0:
        raise LayoutError(f"Background has no pixels ({bg_width_px}x{bg_height_px}).")

    canvas_width = cm_to_px(config.width_cm, dpi)
    canvas_height = cm_to_px(config.height_cm, dpi)
    canvas_size = (round_half_up(canvas_width), round_half_up(canvas_height))
    if canvas_size[0] <= 0 or canvas_size[1] <= 0:
        raise LayoutError(
            f"Background size {config.width_cm}x{config.height_cm} cm "
            f"resolves to {canvas_size[0]}x{canvas_size[1]} px."
        )

    content_x, content_y, content_width, content_height = _fit(
        bg_width_px, bg_height_px, canvas_width, canvas_height
    )
    content = _round_rect(content_x, content_y, content_width, content_height)

    rects = []
    for number, placement in enumerate(config.placements, start=1):
        size = cm_to_px(placement.size_cm, dpi)
        size_px = round_half_up(size)
        if size_px <= 0:
            raise LayoutError(
                f"QR {number} size {placement.size_cm} cm resolves to {size_px} px."
            )
        if size_px > min(content.width, content.height):
            raise LayoutError(
                f"QR {number} ({size_px} px) does not fit inside the background "
                f"({content.width}x{content.height} px)."
            )

        top = cm_to_px(max(0.0, placement.margin_top_cm), dpi)
        right = cm_to_px(max(0.0, placement.margin_right_cm), dpi)
        x = round_half_up(content_x + content_width - right - size)
        y = round_half_up(content_y + top)

        # Oversized margins pin the QR to the content edge instead of spilling out.
        x = min(max(x, content.x), content.right - size_px)
        y = min(max(y, content.y), content.bottom - size_px)
        rects.append(PixelRect(x, y, size_px, size_px))

    return ResolvedLayout(canvas_size=canvas_size, content_box=content, qr_rects=tuple(rects))
