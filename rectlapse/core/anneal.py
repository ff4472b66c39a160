from __future__ import annotations
from typing import Dict, Optional

import numpy as np
from tqdm import trange

from .greedy import FitResult, RectangleFitter, Split


def _pick_candidate(pending: Dict[int, Split], temperature: float, rng: np.random.Generator) -> int:
    # weights are exp((gain - best) / (T * best)), so T is independent of image scale
    indices = np.fromiter(sorted(pending), dtype=np.int64)
    gains = np.array([pending[int(i)].gain for i in indices], dtype=np.float64)
    best = float(gains.max())
    if temperature <= 0.0:
        return int(indices[int(np.argmax(gains))])
    weights = np.exp((gains - best) / (temperature * best))
    return int(rng.choice(indices, p=weights / weights.sum()))


def run_annealed(
    rgb: np.ndarray,
    target_count: int,
    *,
    seed: Optional[int] = None,
    initial_temperature: float = 0.5,
    cooling: float = 0.99,
    min_temperature: float = 1e-3,
    verbose: bool = False,
) -> FitResult:
    """
    Greedy splitting with a stochastic choice of which rectangle to cut next.

    Early on, rectangles with a smaller error reduction still get picked now and then;
    as the temperature decays the order converges to the greedy one.
    """
    if target_count < 1:
        raise ValueError("target_count must be >= 1")
    rng = np.random.default_rng(seed)
    fitter = RectangleFitter(rgb)
    temperature = float(initial_temperature)

    step_iter = trange(target_count - 1, desc="anneal") if verbose else range(target_count - 1)
    for _ in step_iter:
        if not fitter.pending:
            break
        idx = _pick_candidate(fitter.pending, temperature, rng)
        fitter.split(idx)
        temperature = max(min_temperature, temperature * cooling)

        if verbose:
            step_iter.set_postfix({"rects": len(fitter.splits) + 1, "T": round(temperature, 4)})

    return fitter.result()
