"""Batch scheduling and size-capped ZIP packaging.

Rows run in fixed-size batches on a thread pool. The controlling thread waits
for every row of a batch, then files the results into archive shards in row
order, so shard contents never depend on which worker finished first. Only
the controlling thread touches shard state.
"""

import io
import logging
import os
import zipfile
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum

from PIL import Image

from uvify import (
    ARCHIVE_PREFIX,
    BATCH_SIZE,
    DPI,
    IMAGE_EXTENSION,
    JPEG_QUALITY,
    QR_OVERSAMPLE,
    SHARD_CAPACITY,
)
from uvify.compositor import Compositor
from uvify.errors import FatalInputError, QrEncodeError, RunCancelledError, ShardClosedError
from uvify.image_utils import encode_jpeg
from uvify.jpeg_density import patch_density
from uvify.layout import LayoutConfig
from uvify.naming import resolve_filename
from uvify.qr_generator import render_qr
from uvify.rows import SourceRow

logger = logging.getLogger(__name__)

ZIP_DATE_TIME = (1980, 1, 1, 0, 0, 0)


# ---------------------------------------------------------------------------
# Settings and results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for one run. Defaults reproduce the print setup (300 DPI, q=90)."""

    dpi: int = DPI
    jpeg_quality: int = JPEG_QUALITY
    batch_size: int = BATCH_SIZE
    shard_capacity: int = SHARD_CAPACITY
    qr_oversample: int = QR_OVERSAMPLE
    archive_prefix: str = ARCHIVE_PREFIX

    def __post_init__(self) -> None:
        for name in ("dpi", "batch_size", "shard_capacity", "qr_oversample"):
            value = getattr(self, name)
            if value < 1:
                raise ValueError(f"{name} must be a positive integer, got {value}.")
        if self.dpi > 0xFFFF:
            raise ValueError(f"dpi must be at most 65535, got {self.dpi}.")
        if not 1 <= self.jpeg_quality <= 95:
            raise ValueError(f"jpeg_quality must be between 1 and 95, got {self.jpeg_quality}.")
        if not self.archive_prefix:
            raise ValueError("archive_prefix cannot be empty.")


@dataclass(frozen=True)
class OutputArtifact:
    """One encoded image and its entry name."""

    name: str
    data: bytes


@dataclass(frozen=True)
class ArchiveBuffer:
    """A finalized ZIP shard, numbered from 1."""

    index: int
    name: str
    data: bytes
    entry_names: tuple[str, ...]

    @property
    def entry_count(self) -> int:
        return len(self.entry_names)


# ---------------------------------------------------------------------------
# Archive shards
# ---------------------------------------------------------------------------

class ShardState(Enum):
    OPEN = "open"
    FLUSHING = "flushing"
    CLOSED = "closed"


class ArchiveShard:
    """In-memory ZIP accumulator holding at most ``capacity`` entries.

    Goes ``OPEN -> FLUSHING -> CLOSED`` exactly once; a finalized shard
    rejects further entries. Duplicate entry names get a ``_2``, ``_3``...
    suffix so no image in a shard is shadowed by another.
    """

    def __init__(self, index: int, capacity: int = SHARD_CAPACITY, prefix: str = ARCHIVE_PREFIX):
        self.index = index
        self.capacity = capacity
        self.prefix = prefix
        self.state = ShardState.OPEN
        self._buffer = io.BytesIO()
        # JPEG data is already compressed; store entries as-is.
        self._zip = zipfile.ZipFile(self._buffer, "w", zipfile.ZIP_STORED)
        self._names: list[str] = []
        self._taken: set[str] = set()

    def __len__(self) -> int:
        return len(self._names)

    @property
    def name(self) -> str:
        return f"{self.prefix}_{self.index + 1}.zip"

    @property
    def is_full(self) -> bool:
        return len(self._names) >= self.capacity

    def add(self, artifact: OutputArtifact) -> str:
        """Write an artifact into the archive and return its entry name."""
        if self.state is not ShardState.OPEN:
            raise ShardClosedError(f"Archive {self.name} is {self.state.value}.")
        if self.is_full:
            raise ShardClosedError(f"Archive {self.name} is full ({self.capacity} entries).")

        name = self._unique_name(artifact.name)
        # Fixed timestamp and mode so the same input gives the same archive bytes.
        info = zipfile.ZipInfo(filename=name, date_time=ZIP_DATE_TIME)
        info.external_attr = 0o644 << 16
        self._zip.writestr(info, artifact.data, compress_type=zipfile.ZIP_STORED)
        self._names.append(name)
        return name

    def finalize(self) -> ArchiveBuffer:
        """Close the archive and return its bytes."""
        if self.state is not ShardState.OPEN:
            raise ShardClosedError(f"Archive {self.name} is already {self.state.value}.")
        self.state = ShardState.FLUSHING
        self._zip.close()
        data = self._buffer.getvalue()
        self._buffer.close()
        self.state = ShardState.CLOSED
        return ArchiveBuffer(
            index=self.index + 1,
            name=self.name,
            data=data,
            entry_names=tuple(self._names),
        )

    def _unique_name(self, name: str) -> str:
        stem, ext = os.path.splitext(name)
        candidate = name
        counter = 2
        while candidate in self._taken:
            candidate = f"{stem}_{counter}{ext}"
            counter += 1
        self._taken.add(candidate)
        return candidate


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class BatchScheduler:
    """Drive a full run: render, compose, encode and package every row.

    Construction validates the inputs and resolves the layout, so every
    fatal problem surfaces before any row is processed.

    Args:
        background: Decoded background image.
        layout: Background size and QR placements in centimeters.
        rows: Validated rows, in output order.
        settings: Run tunables; defaults to :class:`PipelineSettings`.

    Raises:
        FatalInputError: Missing background, no rows, a row whose link count
            does not match the layout, or a layout that cannot be placed.
    """

    def __init__(
        self,
        background: Image.Image | None,
        layout: LayoutConfig,
        rows: Sequence[SourceRow],
        settings: PipelineSettings | None = None,
    ):
        if background is None:
            raise FatalInputError("A background image is required.")
        if not rows:
            raise FatalInputError("No rows with links to process.")
        for row in rows:
            if len(row.links) != layout.qr_count:
                raise FatalInputError(
                    f"Row {row.index + 1} has {len(row.links)} link slot(s), "
                    f"layout has {layout.qr_count} QR placement(s)."
                )

        self.settings = settings or PipelineSettings()
        self.layout = layout
        self.rows = list(rows)
        self.compositor = Compositor.from_config(background, layout, self.settings.dpi)

    @property
    def total(self) -> int:
        return len(self.rows)

    def process_row(self, position: int, row: SourceRow) -> OutputArtifact | None:
        """Produce one row's image, or ``None`` if the row has to be skipped.

        Never raises: every failure is logged and isolated to this row.
        """
        number = position + 1
        try:
            qr_images = []
            rects = self.compositor.layout.qr_rects
            for slot, link in enumerate(row.links, start=1):
                if not link:
                    logger.warning(f"Row {number}: no link for QR {slot}, placement left empty")
                    qr_images.append(None)
                    continue
                try:
                    qr_images.append(render_qr(
                        link, self.settings.qr_oversample, min_size=rects[slot - 1].width
                    ))
                except QrEncodeError as e:
                    logger.warning(f"Row {number}: QR {slot} skipped: {e}")
                    qr_images.append(None)

            if all(image is None for image in qr_images):
                logger.warning(f"Row {number}: no QR code could be rendered, row skipped")
                return None

            surface = self.compositor.compose(qr_images)
            data = patch_density(
                encode_jpeg(surface, self.settings.jpeg_quality), self.settings.dpi
            )
            name = resolve_filename(row.primary_link, number) + IMAGE_EXTENSION
            return OutputArtifact(name=name, data=data)
        except Exception:
            logger.exception(f"Row {number}: failed to produce image, row skipped")
            return None

    def run(
        self,
        on_progress: Callable[[float], None] | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> Iterator[ArchiveBuffer]:
        """Process every row and yield archives as soon as they are complete.

        Args:
            on_progress: Called with ``rows_done / total`` after each batch.
            should_cancel: Checked before each batch; returning True stops the
                run with :class:`RunCancelledError`. Unfinished archives are
                discarded.

        Yields:
            ArchiveBuffer for each full shard, then each remaining open shard.
        """
        settings = self.settings
        total = self.total
        shards: dict[int, ArchiveShard] = {}
        produced = 0
        done = 0

        with ThreadPoolExecutor(
            max_workers=settings.batch_size, thread_name_prefix="uvify-row"
        ) as pool:
            for start in range(0, total, settings.batch_size):
                if should_cancel is not None and should_cancel():
                    logger.info(f"Run cancelled after {done}/{total} rows")
                    raise RunCancelledError(f"Cancelled after {done} of {total} rows.")

                batch = self.rows[start:start + settings.batch_size]
                futures = [
                    pool.submit(self.process_row, start + offset, row)
                    for offset, row in enumerate(batch)
                ]
                # Results stay in row order regardless of completion order.
                artifacts = [future.result() for future in futures]

                for artifact in artifacts:
                    if artifact is None:
                        continue
                    shard_index = produced // settings.shard_capacity
                    shard = shards.get(shard_index)
                    if shard is None:
                        shard = ArchiveShard(shard_index, settings.shard_capacity, settings.archive_prefix)
                        shards[shard_index] = shard
                    shard.add(artifact)
                    produced += 1
                    if shard.is_full:
                        del shards[shard_index]
                        yield self._flush(shard)

                done += len(batch)
                if on_progress is not None:
                    on_progress(done / total)

        for shard_index in sorted(shards):
            yield self._flush(shards.pop(shard_index))

        skipped = total - produced
        if produced == 0:
            logger.warning(f"No images were produced from {total} rows")
        elif skipped:
            logger.warning(f"{skipped} of {total} rows were skipped")

    @staticmethod
    def _flush(shard: ArchiveShard) -> ArchiveBuffer:
        archive = shard.finalize()
        logger.info(f"Archive {archive.name} finalized with {archive.entry_count} images")
        return archive


def generate_archives(
    background: Image.Image | None,
    layout: LayoutConfig,
    rows: Sequence[SourceRow],
    settings: PipelineSettings | None = None,
    on_progress: Callable[[float], None] | None = None,
    should_cancel: Callable[[], bool] | None = None,
) -> Iterator[ArchiveBuffer]:
    """Validate inputs now and return an iterator over the finished archives.

    Raises:
        FatalInputError: See :class:`BatchScheduler`.
    """
    scheduler = BatchScheduler(background, layout, rows, settings)
    return scheduler.run(on_progress=on_progress, should_cancel=should_cancel)
