"""
Batch scheduler and archive shard tests
"""

import io
import logging
import threading
import time
import zipfile

import pytest
from PIL import Image

from uvify import packer
from uvify.errors import FatalInputError, LayoutError, RunCancelledError, ShardClosedError
from uvify.jpeg_density import read_density
from uvify.layout import LayoutConfig, QrPlacement
from uvify.packer import (
    ArchiveShard,
    BatchScheduler,
    OutputArtifact,
    PipelineSettings,
    ShardState,
    generate_archives,
)
from uvify.rows import SourceRow


def zip_names(data: bytes) -> list[str]:
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        return zf.namelist()


def fake_artifact(position: int, row: SourceRow) -> OutputArtifact:
    return OutputArtifact(name=f"row_{position + 1}.jpg", data=b"\xff\xd8\xff\xd9")


class TestArchiveShard:
    """Capacity-bounded ZIP accumulator"""

    def test_lifecycle(self):
        shard = ArchiveShard(0, capacity=2, prefix="out")
        assert shard.state is ShardState.OPEN

        shard.add(OutputArtifact("a.jpg", b"1"))
        archive = shard.finalize()

        assert shard.state is ShardState.CLOSED
        assert archive.index == 1
        assert archive.name == "out_1.zip"
        assert archive.entry_names == ("a.jpg",)
        assert zip_names(archive.data) == ["a.jpg"]

    def test_rejects_entries_after_finalize(self):
        shard = ArchiveShard(0, capacity=2)
        shard.finalize()
        with pytest.raises(ShardClosedError):
            shard.add(OutputArtifact("a.jpg", b"1"))
        with pytest.raises(ShardClosedError):
            shard.finalize()

    def test_rejects_entries_past_capacity(self):
        shard = ArchiveShard(4, capacity=1)
        shard.add(OutputArtifact("a.jpg", b"1"))
        assert shard.is_full
        with pytest.raises(ShardClosedError, match="full"):
            shard.add(OutputArtifact("b.jpg", b"2"))

    def test_duplicate_names_suffixed(self):
        shard = ArchiveShard(0, capacity=10)
        names = [shard.add(OutputArtifact(n, b"x")) for n in ("5.jpg", "5.jpg", "5_2.jpg", "5.jpg")]
        assert names == ["5.jpg", "5_2.jpg", "5_2_2.jpg", "5_3.jpg"]
        assert len(set(zip_names(shard.finalize().data))) == 4

    def test_entries_stored_uncompressed(self):
        shard = ArchiveShard(0, capacity=1)
        shard.add(OutputArtifact("a.jpg", b"abc" * 100))
        with zipfile.ZipFile(io.BytesIO(shard.finalize().data)) as zf:
            info = zf.getinfo("a.jpg")
            assert info.compress_type == zipfile.ZIP_STORED
            assert zf.read("a.jpg") == b"abc" * 100

    def test_same_entries_give_same_bytes(self):
        archives = []
        for _ in range(2):
            shard = ArchiveShard(0, capacity=2)
            shard.add(OutputArtifact("a.jpg", b"1"))
            shard.add(OutputArtifact("b.jpg", b"2"))
            archives.append(shard.finalize().data)

        assert archives[0] == archives[1]
        with zipfile.ZipFile(io.BytesIO(archives[0])) as zf:
            assert zf.getinfo("a.jpg").date_time == (1980, 1, 1, 0, 0, 0)


class TestPipelineSettings:

    def test_defaults(self):
        settings = PipelineSettings()
        assert (settings.dpi, settings.jpeg_quality) == (300, 90)
        assert (settings.batch_size, settings.shard_capacity) == (4, 2000)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"dpi": 0},
            {"dpi": 70000},
            {"batch_size": 0},
            {"shard_capacity": -1},
            {"qr_oversample": 0},
            {"jpeg_quality": 0},
            {"jpeg_quality": 100},
            {"archive_prefix": ""},
        ],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            PipelineSettings(**kwargs)


class TestFatalInput:
    """Problems that stop a run before any row is processed"""

    def test_missing_background(self, scenario_layout, scenario_rows):
        with pytest.raises(FatalInputError, match="background"):
            BatchScheduler(None, scenario_layout, scenario_rows)

    def test_no_rows(self, background, scenario_layout):
        with pytest.raises(FatalInputError, match="No rows"):
            generate_archives(background, scenario_layout, [])

    def test_link_count_mismatch(self, background, scenario_rows):
        with pytest.raises(FatalInputError, match="placement"):
            BatchScheduler(background, LayoutConfig.default(qr_count=2), scenario_rows)

    def test_layout_error_before_processing(self, background, scenario_rows):
        layout = LayoutConfig(placements=(QrPlacement(0.0, 1.0, 1.0),))
        with pytest.raises(LayoutError):
            generate_archives(background, layout, scenario_rows)


class TestBatchScheduler:
    """End-to-end runs"""

    def test_reference_scenario(self, background, scenario_layout, scenario_rows):
        archives = list(generate_archives(background, scenario_layout, scenario_rows))

        assert len(archives) == 1
        archive = archives[0]
        assert archive.name == "uvify_outputs_1.zip"
        assert archive.entry_names == ("42.jpg",)

        with zipfile.ZipFile(io.BytesIO(archive.data)) as zf:
            data = zf.read("42.jpg")
        assert read_density(data) == (1, 300, 300)
        with Image.open(io.BytesIO(data)) as img:
            assert img.format == "JPEG"
            assert img.size == (1890, 1063)

    def test_shards_fill_to_capacity(self, small_background, small_layout, small_settings, make_rows):
        progress = []
        archives = list(
            generate_archives(
                small_background, small_layout, make_rows(25), small_settings,
                on_progress=progress.append,
            )
        )

        assert [a.entry_count for a in archives] == [10, 10, 5]
        assert [a.name for a in archives] == [
            "uvify_outputs_1.zip",
            "uvify_outputs_2.zip",
            "uvify_outputs_3.zip",
        ]
        assert archives[0].entry_names[0] == "1.jpg"
        assert archives[2].entry_names[-1] == "25.jpg"

        assert len(progress) == 7
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        assert all(p < 1.0 for p in progress[:-1])

    def test_exact_multiple_emits_no_empty_shard(self, small_background, small_layout, small_settings, make_rows):
        archives = list(generate_archives(small_background, small_layout, make_rows(20), small_settings))
        assert [a.entry_count for a in archives] == [10, 10]

    def test_2500_rows_two_shards(self, small_background, small_layout, make_rows, monkeypatch):
        scheduler = BatchScheduler(small_background, small_layout, make_rows(2500))
        monkeypatch.setattr(scheduler, "process_row", fake_artifact)

        archives = list(scheduler.run())

        assert [a.entry_count for a in archives] == [2000, 500]
        assert archives[0].entry_names[0] == "row_1.jpg"
        assert archives[1].entry_names[0] == "row_2001.jpg"

    def test_full_shard_emitted_before_run_ends(self, small_background, small_layout, make_rows, monkeypatch):
        settings = PipelineSettings(shard_capacity=4, batch_size=4)
        scheduler = BatchScheduler(small_background, small_layout, make_rows(12), settings)
        monkeypatch.setattr(scheduler, "process_row", fake_artifact)

        progress = []
        run = scheduler.run(on_progress=progress.append)
        first = next(run)

        assert first.entry_count == 4
        # Nothing beyond the first batch has been processed yet
        assert progress == []
        assert [a.index for a in run] == [2, 3]

    def test_order_independent_of_completion(self, small_background, small_layout, make_rows, monkeypatch):
        settings = PipelineSettings(batch_size=4, shard_capacity=100)
        scheduler = BatchScheduler(small_background, small_layout, make_rows(8), settings)

        def slow_first(position, row):
            # Earlier rows of a batch finish last
            time.sleep((3 - position % 4) * 0.02)
            return fake_artifact(position, row)

        monkeypatch.setattr(scheduler, "process_row", slow_first)
        (archive,) = list(scheduler.run())
        assert archive.entry_names == tuple(f"row_{i}.jpg" for i in range(1, 9))

    def test_batch_size_bounds_concurrency(self, small_background, small_layout, make_rows, monkeypatch):
        settings = PipelineSettings(batch_size=3)
        scheduler = BatchScheduler(small_background, small_layout, make_rows(10), settings)
        lock = threading.Lock()
        active = 0
        peak = 0

        def tracked(position, row):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return fake_artifact(position, row)

        monkeypatch.setattr(scheduler, "process_row", tracked)
        list(scheduler.run())
        assert peak <= 3

    def test_failing_rows_are_isolated(self, small_background, small_layout, small_settings, make_rows, caplog):
        rows = make_rows(6)
        rows[2] = SourceRow(index=2, links=("https://x.example/?q=" + "x" * 3000,))
        rows[4] = SourceRow(index=4, links=(None,))

        with caplog.at_level(logging.WARNING, logger="uvify.packer"):
            archives = list(generate_archives(small_background, small_layout, rows, small_settings))

        names = [n for a in archives for n in a.entry_names]
        assert names == ["1.jpg", "2.jpg", "4.jpg", "6.jpg"]
        assert "Row 3" in caplog.text
        assert "Row 5" in caplog.text
        assert "2 of 6 rows were skipped" in caplog.text

    def test_unexpected_row_error_is_isolated(
        self, small_background, small_layout, small_settings, make_rows, monkeypatch, caplog
    ):
        real_render = packer.render_qr

        def flaky_render(data, oversample, min_size=0):
            if "id=2" in data:
                raise RuntimeError("raster allocation failed")
            return real_render(data, oversample, min_size)

        monkeypatch.setattr(packer, "render_qr", flaky_render)
        with caplog.at_level(logging.ERROR, logger="uvify.packer"):
            archives = list(generate_archives(small_background, small_layout, make_rows(3), small_settings))

        assert [n for a in archives for n in a.entry_names] == ["1.jpg", "3.jpg"]
        assert "raster allocation failed" in caplog.text

    def test_two_placements_one_missing(self, small_background, small_settings):
        layout = LayoutConfig(
            width_cm=3.0,
            height_cm=3.0,
            placements=(QrPlacement(1.0, 0.2, 0.2), QrPlacement(1.0, 1.5, 1.5)),
        )
        rows = [
            SourceRow(index=0, links=("https://a.example/?id=a1", "https://b.example/?id=b1")),
            SourceRow(index=1, links=(None, "https://b.example/?id=b2")),
        ]
        archives = list(generate_archives(small_background, layout, rows, small_settings))

        # The name follows the first link the row actually has
        assert archives[0].entry_names == ("a1.jpg", "b2.jpg")

    def test_overflowing_placement_keeps_the_row(self, small_background, small_settings, caplog):
        layout = LayoutConfig(
            width_cm=3.0,
            height_cm=3.0,
            placements=(QrPlacement(1.0, 0.2, 0.2), QrPlacement(1.0, 1.5, 1.5)),
        )
        rows = [SourceRow(index=0, links=("https://a.example/?id=a1", "https://b.example/?q=" + "x" * 3000))]

        with caplog.at_level(logging.WARNING, logger="uvify.packer"):
            archives = list(generate_archives(small_background, layout, rows, small_settings))

        assert [n for a in archives for n in a.entry_names] == ["a1.jpg"]
        assert "QR 2 skipped" in caplog.text
        assert not [r for r in caplog.records if r.levelno >= logging.ERROR]

    def test_qr_raster_larger_than_placement(self, background, scenario_layout, scenario_rows, monkeypatch):
        real_render = packer.render_qr
        widths = []

        def recording_render(data, oversample, min_size=0):
            image = real_render(data, oversample, min_size)
            widths.append(image.width)
            return image

        monkeypatch.setattr(packer, "render_qr", recording_render)
        scheduler = BatchScheduler(background, scenario_layout, scenario_rows)
        list(scheduler.run())

        placement = scheduler.compositor.layout.qr_rects[0].width
        assert placement == 354
        assert widths and widths[0] > placement

    def test_all_rows_failing_emits_nothing(self, small_background, small_layout, small_settings, caplog):
        rows = [SourceRow(index=0, links=(None,))]
        with caplog.at_level(logging.WARNING, logger="uvify.packer"):
            assert list(generate_archives(small_background, small_layout, rows, small_settings)) == []
        assert "No images were produced" in caplog.text

    def test_fallback_names_use_row_position(self, small_background, small_layout, small_settings):
        rows = [SourceRow(index=i, links=("https://x.example/landing",)) for i in range(7)]
        (archive,) = list(generate_archives(small_background, small_layout, rows, small_settings))
        assert archive.entry_names[6] == "qr_image_0007.jpg"

    def test_cancel_at_batch_boundary(self, small_background, small_layout, make_rows, monkeypatch):
        settings = PipelineSettings(batch_size=2, shard_capacity=100)
        scheduler = BatchScheduler(small_background, small_layout, make_rows(10), settings)
        monkeypatch.setattr(scheduler, "process_row", fake_artifact)
        progress = []

        with pytest.raises(RunCancelledError):
            list(scheduler.run(on_progress=progress.append, should_cancel=lambda: len(progress) >= 2))

        assert progress == [0.2, 0.4]
