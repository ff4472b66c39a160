import numpy as np
import pytest

from rectlapse.core.greedy import Rect
from rectlapse.core.sequence import scene_svg


class FakeSequence:
    """Frame step k is one solid rectangle in a colour unique to k."""

    def __init__(self, count, width=8, height=6, broken_step=None):
        self.count = count
        self.width = width
        self.height = height
        self.broken_step = broken_step
        self.generation = 1

    def frame_count(self):
        return self.count

    def frame_at(self, step):
        if not 1 <= step <= self.count:
            raise IndexError(step)
        if step == self.broken_step:
            return "<svg><rect"
        return scene_svg(self.width, self.height, [Rect(0, 0, self.height, self.width, step_color(step))])

    def reset(self):
        self.count = 0
        self.generation += 1


def step_color(step):
    return (step * 37 % 256, step * 91 % 256, step * 53 % 256)


@pytest.fixture
def gradient_rgba():
    h, w = 8, 8
    ys, xs = np.mgrid[0:h, 0:w]
    img = np.zeros((h, w, 4), dtype=np.uint8)
    img[..., 0] = xs * 30
    img[..., 1] = ys * 30
    img[..., 2] = (xs * ys) % 256
    img[..., 3] = 255
    return w, h, img.tobytes()
