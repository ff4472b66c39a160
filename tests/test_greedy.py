import numpy as np
import pytest

from rectlapse.core import anneal, greedy


def _halves():
    img = np.zeros((4, 4, 3), dtype=np.uint8)
    img[:, :2] = [255, 0, 0]
    img[:, 2:] = [0, 0, 255]
    return img


def test_integral_image_region_sum():
    rng = np.random.default_rng(0)
    img = rng.integers(0, 256, size=(5, 7, 3))
    ii = greedy.integral_image(img)
    got = greedy.region_sum(ii, 1, 2, 4, 6)
    assert got.tolist() == img[1:4, 2:6].sum(axis=(0, 1)).tolist()


def test_best_split_separates_halves():
    fitter = greedy.RectangleFitter(_halves())
    split = fitter.pending[0]
    assert split.axis == "v"
    assert split.at == 2
    assert fitter.rects[0].color == (127, 0, 127)


def test_greedy_stops_when_nothing_left_to_split():
    fit = greedy.run_greedy(_halves(), 10)
    assert fit.step_count == 2
    left, right = fit.leaves_at(2)
    assert (left.left, left.right, left.color) == (0, 2, (255, 0, 0))
    assert (right.left, right.right, right.color) == (2, 4, (0, 0, 255))


def test_single_rectangle():
    fit = greedy.run_greedy(_halves(), 1)
    assert fit.step_count == 1
    (only,) = fit.leaves_at(1)
    assert (only.top, only.left, only.bottom, only.right) == (0, 0, 4, 4)


def test_leaves_tile_the_image():
    rng = np.random.default_rng(1)
    img = rng.integers(0, 256, size=(12, 9, 3)).astype(np.uint8)
    fit = greedy.run_greedy(img, 30)
    assert fit.step_count == 30
    for step in (1, 7, 30):
        leaves = fit.leaves_at(step)
        assert len(leaves) == step
        covered = np.zeros((12, 9), dtype=int)
        for r in leaves:
            covered[r.top:r.bottom, r.left:r.right] += 1
        assert (covered == 1).all()


def test_leaves_at_out_of_range():
    fit = greedy.run_greedy(_halves(), 2)
    with pytest.raises(IndexError):
        fit.leaves_at(0)
    with pytest.raises(IndexError):
        fit.leaves_at(3)


def test_annealed_is_reproducible_with_seed():
    rng = np.random.default_rng(2)
    img = rng.integers(0, 256, size=(10, 10, 3)).astype(np.uint8)
    a = anneal.run_annealed(img, 25, seed=7)
    b = anneal.run_annealed(img, 25, seed=7)
    assert a.splits == b.splits
    assert a.step_count == 25
    assert sum(r.width * r.height for r in a.leaves_at(25)) == 100
