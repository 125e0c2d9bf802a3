"""Draw the background and QR rasters into one final image per row."""

from collections.abc import Sequence

from PIL import Image, ImageDraw

from uvify.layout import LayoutConfig, ResolvedLayout, resolve_layout
from uvify.qr_generator import scale_qr

WHITE = (255, 255, 255)


class Compositor:
    """Compose rows onto a shared, pre-scaled background.

    The background is resized and flattened onto a white canvas once. Each
    call to :meth:`compose` works on a private copy of that base, so one
    instance can be shared by concurrent workers.
    """

    def __init__(self, background: Image.Image, layout: ResolvedLayout):
        self.layout = layout
        self._base = self._prepare_base(background, layout)

    @classmethod
    def from_config(cls, background: Image.Image, config: LayoutConfig, dpi: int) -> "Compositor":
        return cls(background, resolve_layout(background.width, background.height, config, dpi))

    @staticmethod
    def _prepare_base(background: Image.Image, layout: ResolvedLayout) -> Image.Image:
        content = layout.content_box
        base = Image.new("RGB", layout.canvas_size, WHITE)

        scaled = background.convert("RGBA")
        if scaled.size != (content.width, content.height):
            scaled = scaled.resize((content.width, content.height), Image.LANCZOS)

        # Translucent photo pixels blend into white rather than black.
        base.paste(scaled, (content.x, content.y), scaled)
        base.load()
        return base

    def compose(self, qr_images: Sequence[Image.Image | None]) -> Image.Image:
        """Return a new RGB image with each rendered QR drawn at its placement.

        Args:
            qr_images: One entry per placement; ``None`` leaves that placement
                empty for this row.

        Raises:
            ValueError: If the number of entries does not match the layout.
        """
        if len(qr_images) != len(self.layout.qr_rects):
            raise ValueError(
                f"Expected {len(self.layout.qr_rects)} QR images, got {len(qr_images)}."
            )

        surface = self._base.copy()
        draw = ImageDraw.Draw(surface)
        for rect, qr_image in zip(self.layout.qr_rects, qr_images):
            if qr_image is None:
                continue
            draw.rectangle((rect.x, rect.y, rect.right - 1, rect.bottom - 1), fill=WHITE)
            scaled = scale_qr(qr_image, rect.width)
            surface.paste(scaled, (rect.x, rect.y), scaled)
        return surface
