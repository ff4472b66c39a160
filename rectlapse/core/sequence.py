"""
sequence.py

FrameSequence wraps one run of a rectangle-fitting algorithm and exposes its
output as a 1-indexed, read-only list of SVG scene descriptions.

Every run() and reset() bumps `generation`; exporters capture it when they
start and treat any change as invalidation of what they were reading.
"""

from __future__ import annotations
import asyncio
import logging
from functools import partial
from typing import Callable, Dict, Iterable, Optional

import numpy as np

from . import anneal, greedy, utils
from .errors import AlgorithmFailure
from .greedy import FitResult, Rect

log = logging.getLogger(__name__)

GREEDY = 1
ANNEAL = 2

SVG_NS = "http://www.w3.org/2000/svg"


def scene_svg(width: int, height: int, rects: Iterable[Rect]) -> str:
    parts = [
        f'<svg xmlns="{SVG_NS}" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}" shape-rendering="crispEdges">'
    ]
    for r in rects:
        red, green, blue = r.color
        parts.append(
            f'<rect x="{r.left}" y="{r.top}" width="{r.width}" height="{r.height}" '
            f'fill="#{red:02x}{green:02x}{blue:02x}"/>'
        )
    parts.append("</svg>")
    return "".join(parts)


class FrameSequence:

    def __init__(self, seed: Optional[int] = None):
        self.seed = seed
        self.width = 0
        self.height = 0
        self.generation = 0
        self._fit: Optional[FitResult] = None

    def _solver(self, algorithm_id: int) -> Callable[[np.ndarray, int], FitResult]:
        solvers: Dict[int, Callable[[np.ndarray, int], FitResult]] = {
            GREEDY: greedy.run_greedy,
            ANNEAL: partial(anneal.run_annealed, seed=self.seed),
        }
        try:
            return solvers[algorithm_id]
        except KeyError:
            raise AlgorithmFailure(f"Unknown algorithm id: {algorithm_id}") from None

    def initialize(self, width: int, height: int) -> None:
        self.reset()
        self.width = int(width)
        self.height = int(height)

    async def run(self, algorithm_id: int, target_count: int, pixel_buffer: bytes) -> None:
        self.reset()
        generation = self.generation
        if self.width <= 0 or self.height <= 0:
            raise AlgorithmFailure("initialize(width, height) must be called before run()")
        if target_count < 1:
            raise AlgorithmFailure("target_count must be >= 1")
        solver = self._solver(algorithm_id)
        try:
            rgb = utils.rgba_to_rgb(pixel_buffer, self.width, self.height)
        except ValueError as e:
            raise AlgorithmFailure(str(e)) from e

        loop = asyncio.get_running_loop()
        try:
            fit = await loop.run_in_executor(None, solver, rgb, int(target_count))
        except Exception as e:
            raise AlgorithmFailure(f"algorithm {algorithm_id} failed: {e}") from e

        if generation != self.generation:
            raise AlgorithmFailure("run was reset before it finished")
        self._fit = fit
        log.info("algorithm %d produced %d steps for %dx%d", algorithm_id, fit.step_count, self.width, self.height)

    def frame_count(self) -> int:
        return 0 if self._fit is None else self._fit.step_count

    def frame_at(self, step: int) -> str:
        if self._fit is None:
            raise IndexError("no frames: run() has not completed")
        return scene_svg(self._fit.width, self._fit.height, self._fit.leaves_at(step))

    def reset(self) -> None:
        self._fit = None
        self.generation += 1
