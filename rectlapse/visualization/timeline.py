from __future__ import annotations
import logging
from typing import Awaitable, Callable, Dict, Optional

from rectlapse.core.config import TimelineConfig
from rectlapse.core.errors import AlgorithmFailure, ExportBusyError, StaleSequenceError, TimelineError
from rectlapse.core.playback import PlaybackController, clamp_step
from rectlapse.core.sequence import FrameSequence
from . import export
from .export import EXTENSIONS, ExportJob, ExportKind, ExportResult, ProgressCallback
from .raster import Surface, rasterize, resolve_size

log = logging.getLogger(__name__)

FrameCallback = Callable[[int, Surface], None]


class Timeline:
    """
    What a host UI talks to: one frame sequence, its playback and its exports.

    The host calls tick(now) once per paint cycle and gets each newly visible
    frame through `on_frame`. Starting a run or resetting cancels in-flight
    exports; they notice at their next yield point and fail as stale.
    """

    def __init__(
        self,
        config: TimelineConfig = TimelineConfig(),
        sequence: Optional[FrameSequence] = None,
        on_frame: Optional[FrameCallback] = None,
    ):
        self.config = config
        self.sequence = sequence if sequence is not None else FrameSequence()
        self.source_name = config.basename
        self.display: Optional[Surface] = None
        self.on_frame = on_frame
        self.playback = PlaybackController(render=self._render_step, speed=config.default_speed)
        self.jobs: Dict[ExportKind, ExportJob] = {}
        self._runs = 0

    @property
    def frame_count(self) -> int:
        return self.playback.frame_count

    @property
    def has_result(self) -> bool:
        return self.frame_count > 0

    # ---- engine ---------------------------------------------------------

    async def run(self, algorithm_id: int, target_count: int, pixel_buffer: bytes, width: int, height: int, source_name: Optional[str] = None) -> int:
        self.reset()
        token = self._runs
        if source_name:
            self.source_name = source_name
        self.sequence.initialize(width, height)
        try:
            await self.sequence.run(algorithm_id, target_count, pixel_buffer)
        except AlgorithmFailure:
            # a newer run or a reset owns the state now
            if token == self._runs:
                self.reset()
            raise
        if token != self._runs:
            raise AlgorithmFailure("run was superseded before it finished")
        self.playback.load(self.sequence.frame_count())
        self.playback.seek(self.frame_count)
        return self.frame_count

    def reset(self) -> None:
        self._runs += 1
        self.cancel_exports()
        self.sequence.reset()
        self.playback.clear()
        self.display = None

    def cancel_exports(self) -> None:
        for job in self.jobs.values():
            job.cancel()
        # cancelled jobs still unwind on their own; they no longer block new ones
        self.jobs.clear()

    # ---- playback -------------------------------------------------------

    def _render_step(self, step: int) -> None:
        scene = self.sequence.frame_at(step)
        width, height = getattr(self.sequence, "width", 0), getattr(self.sequence, "height", 0)
        fallback = (width, height) if width > 0 and height > 0 else None
        size = resolve_size(scene, fallback, self.config.default_size)
        if self.display is None or (self.display.width, self.display.height) != size:
            self.display = Surface.blank(*size)
        rasterize(scene, self.display)
        if self.on_frame is not None:
            self.on_frame(step, self.display)

    def seek(self, step: int) -> int:
        return self.playback.seek(step)

    def toggle_play(self, now: float) -> bool:
        return self.playback.toggle_play(now)

    def tick(self, now: float) -> int:
        return self.playback.tick(now)

    def set_speed(self, speed: float) -> None:
        self.playback.set_speed(speed)

    # ---- exports --------------------------------------------------------

    def progress(self, kind: ExportKind) -> Optional[float]:
        job = self.jobs.get(kind)
        return None if job is None else job.progress

    async def _export(self, kind: ExportKind, work: Callable[[ExportJob], Awaitable[bytes]]) -> ExportResult:
        filename = export.make_filename(self.source_name, EXTENSIONS[kind])
        if kind in self.jobs:
            return ExportResult(kind, filename, error=ExportBusyError(f"a {kind.value} export is already running"))
        try:
            job = ExportJob.start(kind, self.sequence)
        except StaleSequenceError as e:
            return ExportResult(kind, filename, error=e)

        self.jobs[kind] = job
        try:
            data = await work(job)
        except TimelineError as e:
            log.warning("%s export failed: %s", kind.value, e)
            return ExportResult(kind, filename, error=e)
        finally:
            if self.jobs.get(kind) is job:
                del self.jobs[kind]
        return ExportResult(kind, filename, data=data)

    async def export_snapshot(self, step: Optional[int] = None) -> ExportResult:
        target = self.playback.current_step if step is None else clamp_step(step, self.frame_count)
        return await self._export(
            ExportKind.SNAPSHOT,
            lambda job: export.export_snapshot(self.sequence, target, self.config, job=job),
        )

    async def export_animated(self, speed_hint: Optional[float] = None, progress: ProgressCallback = None) -> ExportResult:
        self.playback.stop()
        speed = self.playback.state.speed if speed_hint is None else speed_hint
        if speed <= 0:
            filename = export.make_filename(self.source_name, EXTENSIONS[ExportKind.ANIMATED])
            return ExportResult(ExportKind.ANIMATED, filename, error=TimelineError(f"speed must be positive, got {speed}"))
        return await self._export(
            ExportKind.ANIMATED,
            lambda job: export.export_animated(self.sequence, speed, self.config, progress, job=job),
        )

    async def export_archive(self, progress: ProgressCallback = None) -> ExportResult:
        self.playback.stop()
        return await self._export(
            ExportKind.ARCHIVE,
            lambda job: export.export_archive(self.sequence, self.config, progress, job=job),
        )
