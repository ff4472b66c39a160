import asyncio
import io
import zipfile
from datetime import datetime

import numpy as np
import pytest
from PIL import Image

from conftest import FakeSequence, step_color
from rectlapse.core.config import TimelineConfig
from rectlapse.core.errors import EncodingFailure, RasterizationFailure, StaleSequenceError
from rectlapse.visualization import export, progress_gif
from rectlapse.visualization.export import ExportJob, ExportKind
from rectlapse.visualization.progress_gif import GifEncoder
from rectlapse.visualization.raster import Surface, rasterize


def test_sample_steps_always_ends_on_last_frame():
    assert export.sample_steps(7, 3) == [1, 4, 7]
    assert export.sample_steps(10, 3) == [1, 4, 7, 10]
    assert export.sample_steps(8, 3) == [1, 4, 7, 8]
    assert export.sample_steps(1, 5) == [1]
    assert export.sample_steps(4, 1) == [1, 2, 3, 4]


def test_animation_timing_matches_live_rate():
    assert export.animation_timing(100, 100) == (10, 100)
    assert export.animation_timing(30, 100) == (3, 100)
    assert export.animation_timing(1, 100) == (1, 1000)
    slow, _ = export.animation_timing(20, 100)
    fast, _ = export.animation_timing(400, 100)
    assert fast > slow
    with pytest.raises(ValueError):
        export.animation_timing(0)


def test_make_filename():
    when = datetime(2024, 3, 5, 7, 8, 9)
    assert export.make_filename("photos/parrot.jpg", "gif", when) == "parrot_20240305_070809.gif"
    assert export.make_filename(None, "zip", when) == "rectangle-fitting_20240305_070809.zip"


def test_snapshot_matches_direct_rasterization():
    seq = FakeSequence(5)
    data = asyncio.run(export.export_snapshot(seq, 3))
    assert data[:8] == b"\x89PNG\r\n\x1a\n"

    surface = Surface.for_scene(seq.frame_at(3))
    rasterize(seq.frame_at(3), surface, background="#ffffff")
    decoded = np.asarray(Image.open(io.BytesIO(data)).convert("RGB"))
    assert np.array_equal(decoded, surface.rgb())


def test_snapshot_out_of_range():
    with pytest.raises(ValueError):
        asyncio.run(export.export_snapshot(FakeSequence(5), 6))


def test_animated_samples_and_delays():
    seq = FakeSequence(7)
    config = TimelineConfig(target_delay_ms=100, final_delay_ms=3000)
    seen = []
    data = asyncio.run(export.export_animated(seq, 30, config, progress=seen.append))

    gif = Image.open(io.BytesIO(data))
    assert gif.n_frames == 3
    colors, durations = [], []
    for i in range(gif.n_frames):
        gif.seek(i)
        durations.append(gif.info["duration"])
        colors.append(tuple(gif.convert("RGB").getpixel((0, 0))))
    assert durations == [100, 100, 3000]
    assert colors == [step_color(1), step_color(4), step_color(7)]

    assert seen == sorted(seen)
    assert seen[-1] == 1.0


def test_animated_aborts_on_bad_frame():
    seq = FakeSequence(7, broken_step=4)
    with pytest.raises(RasterizationFailure):
        asyncio.run(export.export_animated(seq, 30, TimelineConfig(target_delay_ms=100)))


def test_archive_names_every_frame_with_padding():
    seq = FakeSequence(120, width=2, height=2)
    data = asyncio.run(export.export_archive(seq))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = zf.namelist()
        assert len(names) == 120
        assert names[0] == "frames/frame_001.png"
        assert names[6] == "frames/frame_007.png"
        assert names[-1] == "frames/frame_120.png"
        first = Image.open(io.BytesIO(zf.read(names[0]))).convert("RGB")
        assert first.getpixel((0, 0)) == step_color(1)


def test_archive_padding_follows_frame_count():
    data = asyncio.run(export.export_archive(FakeSequence(7, width=2, height=2)))
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert zf.namelist() == [f"frames/frame_{i}.png" for i in range(1, 8)]


def _reset_soon(seq):
    async def reset():
        await asyncio.sleep(0)
        seq.reset()
    return reset()


@pytest.mark.parametrize("kind", ["animated", "archive"])
def test_reset_mid_export_discards_output(kind):
    seq = FakeSequence(40, width=2, height=2)

    async def main():
        if kind == "animated":
            work = export.export_animated(seq, 10)
        else:
            work = export.export_archive(seq)
        return await asyncio.gather(work, _reset_soon(seq), return_exceptions=True)

    result, _ = asyncio.run(main())
    assert isinstance(result, StaleSequenceError)


def test_cancelled_job_is_stale():
    seq = FakeSequence(3)
    job = ExportJob.start(ExportKind.SNAPSHOT, seq)
    job.cancel()
    with pytest.raises(StaleSequenceError):
        asyncio.run(export.export_snapshot(seq, 1, job=job))


def test_job_needs_frames():
    with pytest.raises(StaleSequenceError):
        ExportJob.start(ExportKind.ARCHIVE, FakeSequence(0))


class FrozenTailSequence(FakeSequence):
    """Every step from `frozen_from` on draws the same scene."""

    def __init__(self, count, frozen_from, **kwargs):
        super().__init__(count, **kwargs)
        self.frozen_from = frozen_from

    def frame_at(self, step):
        if 1 <= step <= self.count:
            step = min(step, self.frozen_from)
        return super().frame_at(step)


def _gif_frames(data):
    gif = Image.open(io.BytesIO(data))
    colors, durations = [], []
    for i in range(gif.n_frames):
        gif.seek(i)
        durations.append(gif.info["duration"])
        colors.append(tuple(gif.convert("RGB").getpixel((0, 0))))
    return colors, durations


def test_animated_keeps_final_hold_when_last_frames_repeat():
    seq = FrozenTailSequence(7, frozen_from=4)
    data = asyncio.run(export.export_animated(seq, 30, TimelineConfig(target_delay_ms=100, final_delay_ms=3000)))

    colors, durations = _gif_frames(data)
    assert durations == [100, 100, 3000]
    assert colors == [step_color(1), step_color(4), step_color(4)]


def test_gif_encoder_keeps_runs_of_identical_frames():
    frame = np.zeros((3, 4, 3), dtype=np.uint8)
    frame[..., 0] = 200
    frame[1, 2] = (0, 0, 255)
    encoder = GifEncoder(workers=2)
    for delay in (20, 30, 40, 50):
        encoder.add_frame(frame, delay)

    data = asyncio.run(encoder.render())
    colors, durations = _gif_frames(data)
    assert durations == [20, 30, 40, 50]
    assert colors == [(200, 0, 0)] * 4
    gif = Image.open(io.BytesIO(data))
    for i in range(4):
        gif.seek(i)
        assert np.array_equal(np.asarray(gif.convert("RGB")), frame)


def test_gif_chunk_failure_is_an_encoding_failure(monkeypatch):
    calls = []

    def out_of_memory(frames, colors):
        calls.append(len(frames))
        raise MemoryError("palette table")

    monkeypatch.setattr(progress_gif, "_quantize_chunk", out_of_memory)
    encoder = GifEncoder(workers=2)
    for step in range(1, 5):
        encoder.add_frame(np.full((2, 2, 3), step * 40, dtype=np.uint8), 100)

    with pytest.raises(EncodingFailure) as info:
        asyncio.run(encoder.render())
    assert isinstance(info.value.__cause__, MemoryError)
    assert calls == [2, 2]


def test_png_writer_errors_become_encoding_failures(monkeypatch):
    def broken(*args, **kwargs):
        raise OSError("no space left")

    monkeypatch.setattr(export.iio, "imwrite", broken)
    with pytest.raises(EncodingFailure):
        asyncio.run(export.export_snapshot(FakeSequence(3), 2))


def test_archive_yields_once_per_twentieth_of_frames(monkeypatch):
    real_sleep = asyncio.sleep
    yields = []

    async def counting_sleep(delay, *args, **kwargs):
        yields.append(delay)
        return await real_sleep(delay, *args, **kwargs)

    monkeypatch.setattr(export.asyncio, "sleep", counting_sleep)

    async def main():
        data = await export.export_archive(FakeSequence(40, width=2, height=2))
        return data, len(yields)

    data, count = asyncio.run(main())
    assert count == 20
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert len(zf.namelist()) == 40
