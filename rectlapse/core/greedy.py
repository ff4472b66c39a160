from __future__ import annotations
import heapq
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
from tqdm import trange

# Gains below this are float noise from uniform regions.
_MIN_GAIN = 1e-6


@dataclass(frozen=True)
class Rect:
    top: int
    left: int
    bottom: int
    right: int
    color: Tuple[int, int, int]

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top


@dataclass(frozen=True)
class Split:
    axis: str  # "h" cuts at row `at`, "v" cuts at column `at`
    at: int
    gain: float


@dataclass
class FitResult:
    """
    Output of one fitting run.

    `rects` holds every rectangle in creation order (rects[0] is the whole image),
    `splits` holds (parent, child_a, child_b) index triples in the order they happened.
    Step k of the animation shows the k rectangles alive after k - 1 splits.
    """
    width: int
    height: int
    rects: List[Rect] = field(default_factory=list)
    splits: List[Tuple[int, int, int]] = field(default_factory=list)

    @property
    def step_count(self) -> int:
        return len(self.splits) + 1

    def leaves_at(self, step: int) -> List[Rect]:
        if not (1 <= step <= self.step_count):
            raise IndexError(f"step {step} out of range 1..{self.step_count}")
        alive = {0}
        for parent, a, b in self.splits[: step - 1]:
            alive.discard(parent)
            alive.update((a, b))
        return [self.rects[i] for i in sorted(alive)]


def integral_image(values: np.ndarray) -> np.ndarray:
    """(H,W,C) -> (H+1,W+1,C) int64 summed-area table with a zero border."""
    h, w, c = values.shape
    out = np.zeros((h + 1, w + 1, c), dtype=np.int64)
    out[1:, 1:] = values.astype(np.int64).cumsum(axis=0).cumsum(axis=1)
    return out


def region_sum(grid: np.ndarray, top, left, bottom, right) -> np.ndarray:
    # any of the bounds may be an index array; the result broadcasts to (k, C)
    return grid[bottom, right] - grid[bottom, left] - grid[top, right] + grid[top, left]


def squared_error(sums: np.ndarray, squares: np.ndarray, area) -> np.ndarray:
    """
    Sum over channels of  sum(x^2) - sum(x)^2 / area,
    i.e. the squared error of filling a region with its mean colour.
    """
    area = np.asarray(area, dtype=np.float64)[..., None]
    sums = sums.astype(np.float64)
    return np.sum(squares.astype(np.float64) - sums * sums / area, axis=-1)


class RectangleFitter:
    """Bookkeeping shared by the greedy and annealed split orders."""

    def __init__(self, rgb: np.ndarray):
        if rgb.ndim != 3 or rgb.shape[2] != 3:
            raise ValueError("rgb must have shape (H, W, 3)")
        self.height, self.width = int(rgb.shape[0]), int(rgb.shape[1])
        if self.height == 0 or self.width == 0:
            raise ValueError("image must not be empty")
        values = rgb.astype(np.int64)
        self.sums = integral_image(values)
        self.squares = integral_image(values * values)
        self.rects: List[Rect] = []
        self.splits: List[Tuple[int, int, int]] = []
        self.pending: Dict[int, Split] = {}
        self._add(0, 0, self.height, self.width)

    def find_best_split(self, top: int, left: int, bottom: int, right: int) -> Optional[Split]:
        g, q = self.sums, self.squares
        whole = float(squared_error(region_sum(g, top, left, bottom, right),
                                    region_sum(q, top, left, bottom, right),
                                    (bottom - top) * (right - left)))
        best: Optional[Split] = None

        if bottom - top > 1:
            ys = np.arange(top + 1, bottom)
            width = right - left
            upper = squared_error(region_sum(g, top, left, ys, right), region_sum(q, top, left, ys, right), (ys - top) * width)
            lower = squared_error(region_sum(g, ys, left, bottom, right), region_sum(q, ys, left, bottom, right), (bottom - ys) * width)
            gains = whole - (upper + lower)
            i = int(np.argmax(gains))
            if gains[i] > _MIN_GAIN:
                best = Split("h", int(ys[i]), float(gains[i]))

        if right - left > 1:
            xs = np.arange(left + 1, right)
            height = bottom - top
            lhs = squared_error(region_sum(g, top, left, bottom, xs), region_sum(q, top, left, bottom, xs), (xs - left) * height)
            rhs = squared_error(region_sum(g, top, xs, bottom, right), region_sum(q, top, xs, bottom, right), (right - xs) * height)
            gains = whole - (lhs + rhs)
            i = int(np.argmax(gains))
            if gains[i] > _MIN_GAIN and (best is None or gains[i] > best.gain):
                best = Split("v", int(xs[i]), float(gains[i]))

        return best

    def _add(self, top: int, left: int, bottom: int, right: int) -> int:
        area = (bottom - top) * (right - left)
        total = region_sum(self.sums, top, left, bottom, right)
        color = tuple(int(c) for c in total // area)
        idx = len(self.rects)
        self.rects.append(Rect(top, left, bottom, right, color))
        split = self.find_best_split(top, left, bottom, right)
        if split is not None:
            self.pending[idx] = split
        return idx

    def split(self, idx: int) -> Tuple[int, int]:
        s = self.pending.pop(idx)
        r = self.rects[idx]
        if s.axis == "h":
            a = self._add(r.top, r.left, s.at, r.right)
            b = self._add(s.at, r.left, r.bottom, r.right)
        else:
            a = self._add(r.top, r.left, r.bottom, s.at)
            b = self._add(r.top, s.at, r.bottom, r.right)
        self.splits.append((idx, a, b))
        return a, b

    def result(self) -> FitResult:
        return FitResult(self.width, self.height, list(self.rects), list(self.splits))


def run_greedy(rgb: np.ndarray, target_count: int, *, verbose: bool = False) -> FitResult:
    """Always split the rectangle whose best cut removes the most squared error."""
    if target_count < 1:
        raise ValueError("target_count must be >= 1")
    fitter = RectangleFitter(rgb)
    heap = [(-s.gain, idx) for idx, s in fitter.pending.items()]
    heapq.heapify(heap)

    step_iter = trange(target_count - 1, desc="greedy") if verbose else range(target_count - 1)
    for _ in step_iter:
        if not heap:
            break
        _, idx = heapq.heappop(heap)
        for child in fitter.split(idx):
            if child in fitter.pending:
                heapq.heappush(heap, (-fitter.pending[child].gain, child))

    return fitter.result()
