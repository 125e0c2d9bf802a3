"""CLI entry point for Uvify."""

import argparse
import io
import logging
import math
import sys

from uvify import ARCHIVE_PREFIX, BATCH_SIZE, JPEG_QUALITY, SHARD_CAPACITY, __version__
from uvify.layout import DEFAULT_PLACEMENTS, LayoutConfig, QrPlacement


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="uvify",
        description="Batch-create images with QR codes placed on a shared background.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # One QR code per image, links in a 'links' column
  python -m uvify --background poster.jpg --csv links.csv

  # Two QR codes per image, links in 'links1' and 'links2' columns
  python -m uvify --background poster.jpg --csv links.csv --qr-count 2 \\
    --qr2-right 5.5

  # A4 landscape background, archives written to ./out
  python -m uvify --background a4.png --csv links.csv \\
    --width-cm 29.7 --height-cm 21 --output-dir out
        """,
    )

    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )

    # Required
    parser.add_argument(
        "--background",
        required=True,
        help="Background image shared by every output (JPG, PNG, ...)",
    )
    parser.add_argument(
        "--csv",
        required=True,
        help="CSV with a 'links' column, or 'links1' and 'links2' with --qr-count 2",
    )

    # Layout
    parser.add_argument(
        "--qr-count",
        type=int,
        default=1,
        choices=[1, 2],
        help="Number of QR codes per image. Default: 1",
    )
    parser.add_argument(
        "--width-cm",
        type=float,
        default=16.0,
        help="Printed background width in cm. Default: 16",
    )
    parser.add_argument(
        "--height-cm",
        type=float,
        default=9.0,
        help="Printed background height in cm. Default: 9",
    )
    for number, placement in enumerate(DEFAULT_PLACEMENTS, start=1):
        parser.add_argument(
            f"--qr{number}-size",
            type=float,
            default=placement.size_cm,
            help=f"QR {number} size in cm. Default: {placement.size_cm}",
        )
        parser.add_argument(
            f"--qr{number}-top",
            type=float,
            default=placement.margin_top_cm,
            help=f"QR {number} top margin in cm. Default: {placement.margin_top_cm}",
        )
        parser.add_argument(
            f"--qr{number}-right",
            type=float,
            default=placement.margin_right_cm,
            help=f"QR {number} right margin in cm. Default: {placement.margin_right_cm}",
        )

    # Output
    parser.add_argument(
        "--output-dir", "-o",
        default=".",
        help="Directory for the ZIP archives. Default: current directory",
    )
    parser.add_argument(
        "--prefix",
        default=ARCHIVE_PREFIX,
        help=f"Archive name prefix; archives are named <prefix>_1.zip, ... Default: {ARCHIVE_PREFIX}",
    )
    parser.add_argument(
        "--quality",
        type=int,
        default=JPEG_QUALITY,
        help=f"JPEG quality (1-95). Default: {JPEG_QUALITY}",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=BATCH_SIZE,
        help=f"Rows processed concurrently. Default: {BATCH_SIZE}",
    )
    parser.add_argument(
        "--shard-size",
        type=int,
        default=SHARD_CAPACITY,
        help=f"Maximum images per archive. Default: {SHARD_CAPACITY}",
    )

    # Flags
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Check that the QR codes of the first image decode (requires pyzbar)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite existing archives without prompting",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging",
    )

    return parser


class ProgressLine:
    """Single terminal line showing run progress."""

    FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]

    def __init__(self, total: int, stream=None):
        self._total = total
        self._stream = stream or sys.stderr
        self._frame = 0

    def update(self, fraction: float) -> None:
        frame = self.FRAMES[self._frame % len(self.FRAMES)]
        self._frame += 1
        done = round(fraction * self._total)
        self._stream.write(f"\r\033[K  {frame} {fraction * 100:5.1f}%  ({done}/{self._total} rows)")
        self._stream.flush()

    def finish(self, final_message: str = "") -> None:
        self._stream.write("\r\033[K")
        if final_message:
            self._stream.write(f"  {final_message}\n")
        self._stream.flush()


def build_layout(args: argparse.Namespace) -> LayoutConfig:
    """Map the layout flags onto a LayoutConfig."""
    placements = tuple(
        QrPlacement(
            size_cm=getattr(args, f"qr{number}_size"),
            margin_top_cm=getattr(args, f"qr{number}_top"),
            margin_right_cm=getattr(args, f"qr{number}_right"),
        )
        for number in range(1, args.qr_count + 1)
    )
    return LayoutConfig(width_cm=args.width_cm, height_cm=args.height_cm, placements=placements)


def main(argv: list[str] | None = None) -> int:
    import os
    import zipfile

    parser = create_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    # Lazy imports for faster --help
    from uvify.errors import FatalInputError
    from uvify.image_utils import VerifyResult, load_background, verify_qr_scannable
    from uvify.packer import BatchScheduler, PipelineSettings
    from uvify.rows import load_rows_csv

    print(f"Uvify v{__version__}")
    print("=" * 50)

    try:
        settings = PipelineSettings(
            jpeg_quality=args.quality,
            batch_size=args.batch_size,
            shard_capacity=args.shard_size,
            archive_prefix=args.prefix,
        )

        # Step 1: Background
        print(f"\n[1/3] Loading background image: {args.background}")
        background = load_background(args.background)
        print(f"  ✓ {background.width}x{background.height} px")

        # Step 2: Links
        print(f"\n[2/3] Reading links: {args.csv}")
        rows = load_rows_csv(args.csv, args.qr_count)
        print(f"  ✓ Found {len(rows)} row(s) with links")

        layout = build_layout(args)
        scheduler = BatchScheduler(background, layout, rows, settings)
    except (FatalInputError, ValueError, FileNotFoundError) as e:
        print(f"\n  ERROR: {e}", file=sys.stderr)
        return 1

    # ------------------------------------------------------------------
    # Check output overwrite
    # ------------------------------------------------------------------
    os.makedirs(args.output_dir, exist_ok=True)
    expected = math.ceil(len(rows) / settings.shard_capacity)
    existing = [
        path for path in (
            os.path.join(args.output_dir, f"{settings.archive_prefix}_{i}.zip")
            for i in range(1, expected + 1)
        )
        if os.path.exists(path)
    ]
    if existing and not args.overwrite:
        response = input(f"  {len(existing)} archive(s) already exist in '{args.output_dir}'. Overwrite? [y/N] ")
        if response.lower() not in ("y", "yes"):
            print("  Aborted.")
            return 0

    # Step 3: Generate
    resolved = scheduler.compositor.layout
    content = resolved.content_box
    canvas_width, canvas_height = resolved.canvas_size
    print(f"\n[3/3] Generating {len(rows)} image(s)...")
    print(f"  Canvas:          {canvas_width}x{canvas_height} px @ {settings.dpi} DPI")
    print(f"  Background:      {content.width}x{content.height} px at ({content.x}, {content.y})")
    for number, rect in enumerate(resolved.qr_rects, start=1):
        print(f"  QR {number}:            {rect.width} px at ({rect.x}, {rect.y})")
    print()

    progress = ProgressLine(len(rows))
    written: list[str] = []
    images = 0
    first_archive = None
    try:
        for archive in scheduler.run(on_progress=progress.update):
            path = os.path.join(args.output_dir, archive.name)
            with open(path, "wb") as f:
                f.write(archive.data)
            written.append(path)
            images += archive.entry_count
            if first_archive is None:
                first_archive = archive
    except KeyboardInterrupt:
        progress.finish("Interrupted.")
        return 130
    progress.finish(f"✓ {images} of {len(rows)} image(s) packaged")

    for path in written:
        print(f"  ✓ Saved: {path}")

    if args.verify and first_archive is not None and first_archive.entry_names:
        print(f"\n  Verifying QR code scannability...")
        with zipfile.ZipFile(io.BytesIO(first_archive.data)) as zf:
            entry = first_archive.entry_names[0]
            result, decoded = verify_qr_scannable(zf.read(entry))
        if result == VerifyResult.SCANNABLE:
            print(f"  ✓ {entry} is SCANNABLE! Decoded: {', '.join(decoded)}")
        elif result == VerifyResult.SKIPPED:
            print(f"  ⊘ Verification skipped (pyzbar not installed)")
            print(f"    Install with: pip install pyzbar")
        else:
            print(f"  ⚠️  WARNING: QR codes in {entry} may not be scannable.")
            print(f"     Try a larger --qr1-size.")

    if not written:
        print(f"\n  ERROR: no images could be produced, see warnings above.", file=sys.stderr)
        return 1

    print(f"\n✅ Done! {len(written)} archive(s) written to: {args.output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
