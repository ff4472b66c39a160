"""
raster.py

Turns one scene description into pixels on a reusable RGBA Surface.

Two decode paths:
- fast path: parse the SVG document and paint its <rect> elements straight
  into the numpy buffer
- fallback: hand the description to Pillow's generic image loader, for
  scenes that arrive as already-encoded raster images
"""

from __future__ import annotations
import io
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import List, Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageColor

from rectlapse.core.errors import RasterizationFailure

log = logging.getLogger(__name__)

SceneDescription = Union[str, bytes]
Size = Tuple[int, int]

DEFAULT_SIZE: Size = (800, 600)

_SVG_TAG_RE = re.compile(r"<svg\b[^>]*>", re.I)
_VIEWBOX_RE = re.compile(r'viewBox\s*=\s*["\']\s*0\s+0\s+([\d.]+)\s+([\d.]+)\s*["\']', re.I)
_WIDTH_RE = re.compile(r'(?<![\w-])width\s*=\s*["\']\s*([\d.]+)\s*["\']', re.I)
_HEIGHT_RE = re.compile(r'(?<![\w-])height\s*=\s*["\']\s*([\d.]+)\s*["\']', re.I)


@dataclass
class Surface:
    pixels: np.ndarray  # (H, W, 4) uint8, RGBA

    @classmethod
    def blank(cls, width: int, height: int) -> "Surface":
        if width <= 0 or height <= 0:
            raise RasterizationFailure(f"surface dimensions must be positive, got {width}x{height}")
        return cls(np.zeros((height, width, 4), dtype=np.uint8))

    @classmethod
    def for_scene(cls, scene: SceneDescription, fallback: Optional[Size] = None, default: Size = DEFAULT_SIZE) -> "Surface":
        width, height = resolve_size(scene, fallback, default)
        return cls.blank(width, height)

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    def rgb(self) -> np.ndarray:
        """A copy of the colour channels; safe to keep after the surface is redrawn."""
        return np.array(self.pixels[:, :, :3], copy=True)

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)


def _text(scene: SceneDescription) -> Optional[str]:
    if isinstance(scene, str):
        return scene
    try:
        return scene.decode("utf-8")
    except UnicodeDecodeError:
        return None


def scene_size(scene: SceneDescription) -> Optional[Size]:
    """Intrinsic size declared by the scene, or None if it declares none."""
    text = _text(scene)
    tag = _SVG_TAG_RE.search(text) if text is not None else None
    if tag is not None:
        head = tag.group(0)
        m = _VIEWBOX_RE.search(head)
        if m:
            return round(float(m.group(1))), round(float(m.group(2)))
        mw, mh = _WIDTH_RE.search(head), _HEIGHT_RE.search(head)
        if mw and mh:
            return round(float(mw.group(1))), round(float(mh.group(1)))
        return None
    if isinstance(scene, bytes):
        try:
            with Image.open(io.BytesIO(scene)) as img:
                return img.size
        except (OSError, ValueError):
            return None
    return None


def resolve_size(scene: SceneDescription, fallback: Optional[Size] = None, default: Size = DEFAULT_SIZE) -> Size:
    return scene_size(scene) or fallback or default


def _rgba(color: str, opacity: float = 1.0) -> Tuple[int, int, int, int]:
    r, g, b, a = ImageColor.getcolor(color, "RGBA")
    return r, g, b, int(round(a * max(0.0, min(1.0, opacity))))


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _decode_svg(text: str) -> Tuple[Optional[Size], List[Tuple[float, float, float, float, Tuple[int, int, int, int]]]]:
    root = ET.fromstring(text)
    if _local(root.tag) != "svg":
        raise ValueError(f"root element is <{_local(root.tag)}>, not <svg>")
    size = scene_size(text)
    shapes = []
    for el in root.iter():
        if _local(el.tag) != "rect":
            continue
        fill = el.get("fill", "#000000")
        if fill == "none":
            continue
        opacity = float(el.get("opacity", 1.0)) * float(el.get("fill-opacity", 1.0))
        shapes.append((
            float(el.get("x", 0)),
            float(el.get("y", 0)),
            float(el.get("width", 0)),
            float(el.get("height", 0)),
            _rgba(fill, opacity),
        ))
    return size, shapes


def _composite(region: np.ndarray, color: Tuple[int, int, int, int]) -> None:
    r, g, b, a = color
    if a == 255:
        region[...] = (r, g, b, 255)
        return
    if a == 0:
        return
    src_a = a / 255.0
    dst = region.astype(np.float64)
    dst_a = dst[..., 3:4] / 255.0
    out_a = src_a + dst_a * (1.0 - src_a)
    src_rgb = np.array((r, g, b), dtype=np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        out_rgb = (src_rgb * src_a + dst[..., :3] * dst_a * (1.0 - src_a)) / out_a
    out_rgb = np.nan_to_num(out_rgb)
    region[..., :3] = np.clip(np.rint(out_rgb), 0, 255).astype(np.uint8)
    region[..., 3:4] = np.clip(np.rint(out_a * 255.0), 0, 255).astype(np.uint8)


def _paint_svg(scene: SceneDescription, surface: Surface) -> None:
    text = _text(scene)
    if text is None:
        raise ValueError("scene is not text")
    size, shapes = _decode_svg(text)
    scene_w, scene_h = size or (surface.width, surface.height)
    if scene_w <= 0 or scene_h <= 0:
        raise RasterizationFailure(f"scene declares zero size {scene_w}x{scene_h}")
    sx = surface.width / scene_w
    sy = surface.height / scene_h
    for x, y, w, h, color in shapes:
        x0 = max(0, int(round(x * sx)))
        y0 = max(0, int(round(y * sy)))
        x1 = min(surface.width, int(round((x + w) * sx)))
        y1 = min(surface.height, int(round((y + h) * sy)))
        if x1 > x0 and y1 > y0:
            _composite(surface.pixels[y0:y1, x0:x1], color)


def _paint_generic(scene: SceneDescription, surface: Surface) -> None:
    data = scene.encode("utf-8") if isinstance(scene, str) else scene
    with Image.open(io.BytesIO(data)) as img:
        img = img.convert("RGBA")
        if img.size != (surface.width, surface.height):
            img = img.resize((surface.width, surface.height), Image.NEAREST)
        base = surface.to_image()
        base.alpha_composite(img)
        surface.pixels[...] = np.asarray(base)


def rasterize(scene: SceneDescription, surface: Surface, background: Optional[str] = None) -> None:
    """Draw `scene` over the whole of `surface`, in place."""
    if surface.width <= 0 or surface.height <= 0:
        raise RasterizationFailure("surface has zero size")

    if background:
        surface.pixels[...] = _rgba(background)
    else:
        surface.pixels[...] = 0
    # the fallback must start from the same base if the fast path bails halfway
    base = surface.pixels.copy()

    try:
        _paint_svg(scene, surface)
        return
    except RasterizationFailure:
        raise
    except (ET.ParseError, ValueError) as e:
        log.debug("svg decode failed, falling back to generic loader: %s", e)

    surface.pixels[...] = base
    try:
        _paint_generic(scene, surface)
    except (OSError, ValueError) as e:
        raise RasterizationFailure(f"scene could not be decoded: {e}") from e
