from __future__ import annotations
import os
from typing import Tuple

from PIL import Image
import numpy as np

from .config import SourceLimits


def load_source(path: str, limits: SourceLimits = SourceLimits()) -> Tuple[int, int, bytes]:
    """Decode a photo into (width, height, RGBA bytes), refusing inputs beyond `limits`."""
    size = os.path.getsize(path)
    if size > limits.max_bytes:
        raise ValueError(f"File too large ({size / 1024 / 1024:.1f}MB); limit is {limits.max_bytes / 1024 / 1024:.0f}MB.")

    with Image.open(path) as img:
        w, h = img.size
        if w * h > limits.max_pixels:
            raise ValueError(f"Resolution too large ({w}x{h} ~ {w * h / 1e6:.1f}MP); limit is {limits.max_pixels / 1e6:.0f}MP.")
        if max(w, h) > limits.max_side:
            raise ValueError(f"Side too long ({w}x{h}); limit is {limits.max_side}px.")
        rgba = img.convert("RGBA")
        return w, h, rgba.tobytes()


def rgba_to_rgb(buffer: bytes, width: int, height: int) -> np.ndarray:
    expected = width * height * 4
    if len(buffer) != expected:
        raise ValueError(f"pixel buffer has {len(buffer)} bytes, expected {expected} for {width}x{height} RGBA")
    arr = np.frombuffer(buffer, dtype=np.uint8).reshape(height, width, 4)
    return arr[:, :, :3]


def check_rect_count(count: int, limits: SourceLimits = SourceLimits()) -> int:
    if not (1 <= count <= limits.max_rectangles):
        raise ValueError(f"Rectangle count must be between 1 and {limits.max_rectangles}.")
    return count
