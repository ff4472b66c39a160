"""
export.py

Snapshot (PNG), animated (GIF) and archive (ZIP of PNGs) exports of a frame sequence.

Each exporter is one coroutine that owns its ExportJob and its Surface for its
whole lifetime. Frames are drawn strictly in increasing step order onto one
reused surface. The job is checked against the live sequence at every yield
point and once more before bytes are handed back; a reset or a new run in
between raises StaleSequenceError and the partial output is dropped.
"""

from __future__ import annotations
import asyncio
import io
import logging
import math
import os
import zipfile
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Protocol, Tuple

import imageio.v3 as iio
import numpy as np

from rectlapse.core.config import TimelineConfig
from rectlapse.core.errors import EncodingFailure, StaleSequenceError, TimelineError
from .progress_gif import GifEncoder
from .raster import SceneDescription, Size, Surface, rasterize

log = logging.getLogger(__name__)

ProgressCallback = Optional[Callable[[float], None]]


class FrameSource(Protocol):
    generation: int

    def frame_count(self) -> int: ...

    def frame_at(self, step: int) -> SceneDescription: ...


class ExportKind(str, Enum):
    SNAPSHOT = "snapshot"
    ANIMATED = "animated"
    ARCHIVE = "archive"


EXTENSIONS = {
    ExportKind.SNAPSHOT: "png",
    ExportKind.ANIMATED: "gif",
    ExportKind.ARCHIVE: "zip",
}


@dataclass
class ExportJob:
    kind: ExportKind
    generation: int
    frame_count: int
    progress: float = 0.0
    cancelled: bool = False

    @classmethod
    def start(cls, kind: ExportKind, sequence: FrameSource) -> "ExportJob":
        count = sequence.frame_count()
        if count < 1:
            raise StaleSequenceError("There are no frames to export.")
        return cls(kind, sequence.generation, count)

    def cancel(self) -> None:
        self.cancelled = True

    def ensure_current(self, sequence: FrameSource) -> None:
        if self.cancelled:
            raise StaleSequenceError(f"{self.kind.value} export was cancelled")
        if sequence.generation != self.generation or sequence.frame_count() != self.frame_count:
            raise StaleSequenceError(f"{self.kind.value} export: frame sequence changed while exporting")

    def report(self, fraction: float, callback: ProgressCallback = None) -> None:
        self.progress = max(self.progress, min(1.0, max(0.0, fraction)))
        if callback is not None:
            callback(self.progress)


@dataclass
class ExportResult:
    kind: ExportKind
    filename: str
    data: Optional[bytes] = None
    error: Optional[TimelineError] = None

    @property
    def ok(self) -> bool:
        return self.data is not None and self.error is None


def make_filename(basename: Optional[str], ext: str, now: Optional[datetime] = None) -> str:
    stem = os.path.splitext(os.path.basename(basename or ""))[0] or TimelineConfig.basename
    stamp = (now or datetime.now()).strftime("%Y%m%d_%H%M%S")
    return f"{stem}_{stamp}.{ext}"


def encode_png(rgb: np.ndarray) -> bytes:
    try:
        return iio.imwrite("<bytes>", rgb, extension=".png")
    except (OSError, ValueError, TypeError, RuntimeError) as e:
        raise EncodingFailure(f"png encoding failed: {e}") from e


def animation_timing(speed: float, target_delay_ms: int = 100) -> Tuple[int, int]:
    """
    (stride, delay_ms) for a gif that plays about as fast as live playback at `speed`.

    A live step lasts 1000 / speed ms. Steps are sampled every `stride` so that
    each gif frame holds for roughly target_delay_ms, and the delay is derived
    from the stride so stride * step_time == delay (up to rounding).
    """
    if speed <= 0:
        raise ValueError("speed must be positive")
    step_ms = 1000.0 / speed
    stride = max(1, int(round(target_delay_ms / step_ms)))
    delay = max(1, int(round(stride * step_ms)))
    return stride, delay


def sample_steps(frame_count: int, stride: int) -> List[int]:
    """1, 1+stride, ... below frame_count, then frame_count itself."""
    if frame_count < 1:
        return []
    return list(range(1, frame_count, max(1, stride))) + [frame_count]


def _fallback_size(sequence: FrameSource) -> Optional[Size]:
    w, h = getattr(sequence, "width", 0), getattr(sequence, "height", 0)
    return (w, h) if w > 0 and h > 0 else None


def _zip_entries(entries: List[Tuple[str, bytes]], compresslevel: int) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=compresslevel) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


async def export_snapshot(
    sequence: FrameSource,
    step: int,
    config: TimelineConfig = TimelineConfig(),
    job: Optional[ExportJob] = None,
) -> bytes:
    job = job or ExportJob.start(ExportKind.SNAPSHOT, sequence)
    job.ensure_current(sequence)
    if not (1 <= step <= job.frame_count):
        raise ValueError(f"step {step} out of range 1..{job.frame_count}")

    scene = sequence.frame_at(step)
    surface = Surface.for_scene(scene, _fallback_size(sequence), config.default_size)
    rasterize(scene, surface, config.background)

    data = await asyncio.get_running_loop().run_in_executor(None, encode_png, surface.rgb())
    job.ensure_current(sequence)
    job.report(1.0)
    return data


async def export_animated(
    sequence: FrameSource,
    speed_hint: float,
    config: TimelineConfig = TimelineConfig(),
    progress: ProgressCallback = None,
    job: Optional[ExportJob] = None,
) -> bytes:
    job = job or ExportJob.start(ExportKind.ANIMATED, sequence)
    job.ensure_current(sequence)
    stride, delay = animation_timing(speed_hint, config.target_delay_ms)
    steps = sample_steps(job.frame_count, stride)

    surface = Surface.for_scene(sequence.frame_at(1), _fallback_size(sequence), config.default_size)
    encoder = GifEncoder(workers=config.gif_workers, colors=config.gif_colors)

    for i, step in enumerate(steps):
        rasterize(sequence.frame_at(step), surface, config.background)
        last = i == len(steps) - 1
        encoder.add_frame(surface.rgb(), config.final_delay_ms if last else delay)
        job.report(0.5 * (i + 1) / len(steps), progress)
        await asyncio.sleep(0)
        job.ensure_current(sequence)

    data = await encoder.render(lambda f: job.report(0.5 + 0.5 * f, progress))
    job.ensure_current(sequence)
    log.info("gif export: %d frames (stride %d, %d ms)", len(encoder), stride, delay)
    return data


async def export_archive(
    sequence: FrameSource,
    config: TimelineConfig = TimelineConfig(),
    progress: ProgressCallback = None,
    job: Optional[ExportJob] = None,
) -> bytes:
    job = job or ExportJob.start(ExportKind.ARCHIVE, sequence)
    job.ensure_current(sequence)
    count = job.frame_count
    pad = len(str(count))
    yield_every = max(1, math.ceil(count * config.archive_yield_fraction))

    surface = Surface.for_scene(sequence.frame_at(1), _fallback_size(sequence), config.default_size)
    entries: List[Tuple[str, bytes]] = []

    for step in range(1, count + 1):
        rasterize(sequence.frame_at(step), surface, config.background)
        entries.append((f"frames/frame_{step:0{pad}d}.{EXTENSIONS[ExportKind.SNAPSHOT]}", encode_png(surface.rgb())))
        job.report(0.95 * step / count, progress)
        if step % yield_every == 0 or step == count:
            await asyncio.sleep(0)
            job.ensure_current(sequence)

    try:
        data = await asyncio.get_running_loop().run_in_executor(None, _zip_entries, entries, config.zip_compresslevel)
    except (OSError, ValueError, zipfile.BadZipFile) as e:
        raise EncodingFailure(f"zip compression failed: {e}") from e
    job.ensure_current(sequence)
    job.report(1.0, progress)
    log.info("archive export: %d frames", count)
    return data
