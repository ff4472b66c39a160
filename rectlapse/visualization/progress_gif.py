from __future__ import annotations
import asyncio
import io
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional

import numpy as np
from PIL import Image

from rectlapse.core.errors import EncodingFailure

ProgressCallback = Optional[Callable[[float], None]]

# one palette slot stays free so a repeated frame can point at a twin entry
MAX_COLORS = 255


def _quantize_chunk(frames: List[np.ndarray], colors: int) -> List[Image.Image]:
    colors = max(2, min(colors, MAX_COLORS))
    return [
        Image.fromarray(f).quantize(colors=colors, method=Image.Quantize.MEDIANCUT, dither=Image.Dither.FLOYDSTEINBERG)
        for f in frames
    ]


def _same_pixels(a: Image.Image, b: Image.Image) -> bool:
    return a.size == b.size and a.convert("RGB").tobytes() == b.convert("RGB").tobytes()


def _twin_frame(prev: Image.Image) -> Image.Image:
    """
    A copy of `prev` that looks the same but is not byte-identical.

    Pillow drops a gif frame whose pixels match the previous one and adds its
    duration to it. The copy shares prev's palette and only moves pixel (0, 0)
    to another palette entry of the same colour, adding that entry to prev's
    palette when there is none yet.
    """
    palette = prev.getpalette() or []
    index = prev.getpixel((0, 0))
    colour = palette[3 * index:3 * index + 3]
    twin = next(
        (j for j in range(len(palette) // 3) if j != index and palette[3 * j:3 * j + 3] == colour),
        None,
    )
    if twin is None:
        free = [j for j, n in enumerate(prev.histogram()[:256]) if n == 0 and j != index]
        if not free:
            raise EncodingFailure("no free palette entry left for a repeated frame")
        twin = free[0]
        palette = palette + [0] * max(0, 3 * (twin + 1) - len(palette))
        palette[3 * twin:3 * twin + 3] = colour
        prev.putpalette(palette)
    dup = prev.copy()
    dup.putpixel((0, 0), twin)
    return dup


def _assemble(images: List[Image.Image], delays: List[int], loop: int) -> bytes:
    frames = [images[0]]
    for img in images[1:]:
        frames.append(_twin_frame(frames[-1]) if _same_pixels(img, frames[-1]) else img)

    buf = io.BytesIO()
    first, *rest = frames
    first.save(buf, format="GIF", save_all=True, append_images=rest, duration=delays, loop=loop, optimize=False)
    data = buf.getvalue()

    with Image.open(io.BytesIO(data)) as check:
        written = getattr(check, "n_frames", 1)
    if written != len(frames):
        raise EncodingFailure(f"gif has {written} frames, expected {len(frames)}")
    return data


class GifEncoder:
    """
    Accumulates RGB frames with per-frame delays and encodes them into one GIF.

    Frames are copied on add_frame(), so the caller can redraw its surface right away.
    Palette quantization runs per chunk of consecutive frames on a small thread pool;
    chunks share nothing and report back only through the progress callback.
    Every added frame ends up as its own gif frame, repeated ones included.
    """

    def __init__(self, workers: int = 2, colors: int = 256, loop: int = 0):
        self.workers = max(1, int(workers))
        self.colors = colors
        self.loop = loop
        self.frames: List[np.ndarray] = []
        self.delays: List[int] = []

    def __len__(self) -> int:
        return len(self.frames)

    def add_frame(self, pixels: np.ndarray, delay_ms: int) -> None:
        if pixels.ndim != 3 or pixels.shape[2] != 3:
            raise ValueError("frames must be (H, W, 3) RGB arrays")
        if self.frames and pixels.shape != self.frames[0].shape:
            raise ValueError(f"frame shape {pixels.shape} differs from first frame {self.frames[0].shape}")
        self.frames.append(np.array(pixels, dtype=np.uint8, copy=True))
        self.delays.append(int(delay_ms))

    def _chunks(self) -> List[List[np.ndarray]]:
        bounds = np.linspace(0, len(self.frames), min(self.workers, len(self.frames)) + 1).astype(int)
        return [self.frames[a:b] for a, b in zip(bounds[:-1], bounds[1:]) if b > a]

    async def render(self, progress: ProgressCallback = None) -> bytes:
        if not self.frames:
            raise EncodingFailure("No frames to encode.")

        loop = asyncio.get_running_loop()
        chunks = self._chunks()
        finished = 0

        def chunk_done(fut: asyncio.Future) -> None:
            nonlocal finished
            finished += 1
            if progress is not None and not fut.cancelled() and fut.exception() is None:
                progress(finished / len(chunks))

        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            futures = [loop.run_in_executor(pool, _quantize_chunk, chunk, self.colors) for chunk in chunks]
            for fut in futures:
                fut.add_done_callback(chunk_done)
            # every chunk is awaited, failed or not
            results = await asyncio.gather(*futures, return_exceptions=True)

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            raise EncodingFailure(f"gif quantization failed: {errors[0]!r}") from errors[0]
        images = [img for chunk in results for img in chunk]

        try:
            return await loop.run_in_executor(None, _assemble, images, list(self.delays), self.loop)
        except EncodingFailure:
            raise
        except Exception as e:
            raise EncodingFailure(f"gif encoding failed: {e!r}") from e
