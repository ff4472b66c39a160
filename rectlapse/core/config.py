from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Tuple

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@dataclass(frozen=True)
class TimelineConfig:
    """Knobs for playback and the three exporters."""
    background: str = "#ffffff"
    default_size: Tuple[int, int] = (800, 600)
    default_speed: float = 100.0       # steps per second
    target_delay_ms: int = 100         # approx hold time of one gif frame
    final_delay_ms: int = 3000         # hold on the last gif frame
    gif_workers: int = 2
    gif_colors: int = 256
    archive_yield_fraction: float = 0.05
    zip_compresslevel: int = 6
    basename: str = "rectangle-fitting"


@dataclass(frozen=True)
class SourceLimits:
    max_bytes: int = 15 * 1024 * 1024
    max_pixels: int = 20_000_000
    max_side: int = 8192
    max_rectangles: int = 5000


def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)
