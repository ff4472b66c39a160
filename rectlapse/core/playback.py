"""
playback.py

Playback is an explicit PlaybackState value plus pure transition functions.
PlaybackController owns one state, applies the transitions and renders the
visible step through a callback supplied by the host.
"""

from __future__ import annotations
import logging
import math
from dataclasses import dataclass, replace
from typing import Callable, Optional, Tuple

from .errors import RasterizationFailure

log = logging.getLogger(__name__)

RenderCallback = Callable[[int], None]


@dataclass(frozen=True)
class PlaybackState:
    current_step: int = 1
    is_playing: bool = False
    speed: float = 100.0      # steps per second
    last_tick: float = 0.0    # ms, same clock as `now` passed to tick()


def clamp_step(step: int, frame_count: int) -> int:
    return max(1, min(int(step), max(1, frame_count)))


def seek(state: PlaybackState, step: int, frame_count: int) -> PlaybackState:
    return replace(state, current_step=clamp_step(step, frame_count))


def toggle_play(state: PlaybackState, frame_count: int, now: float) -> PlaybackState:
    if state.is_playing:
        return replace(state, is_playing=False)
    step = 1 if state.current_step >= frame_count else state.current_step
    return replace(state, is_playing=True, current_step=step, last_tick=now)


def tick(state: PlaybackState, frame_count: int, now: float) -> Tuple[PlaybackState, int]:
    """
    Advance by however many whole intervals have elapsed since last_tick.

    last_tick moves forward by exactly steps * interval, not to `now`, so the
    fractional remainder carries into the next tick and long runs keep the
    configured rate. Returns the new state and the number of steps advanced.
    """
    if not state.is_playing or frame_count < 1:
        return state, 0
    interval = 1000.0 / state.speed
    steps = math.floor((now - state.last_tick) / interval)
    if steps <= 0:
        return state, 0
    current = min(state.current_step + steps, frame_count)
    return replace(
        state,
        current_step=current,
        last_tick=state.last_tick + steps * interval,
        is_playing=current < frame_count,
    ), steps


class PlaybackController:

    def __init__(self, render: Optional[RenderCallback] = None, speed: float = 100.0):
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.state = PlaybackState(speed=float(speed))
        self.frame_count = 0
        self._render = render

    @property
    def current_step(self) -> int:
        return self.state.current_step

    @property
    def is_playing(self) -> bool:
        return self.state.is_playing

    def load(self, frame_count: int) -> None:
        """Point the controller at a freshly produced sequence; stops playback."""
        self.frame_count = int(frame_count)
        self.state = replace(self.state, current_step=1, is_playing=False)

    def clear(self) -> None:
        self.load(0)

    def set_speed(self, speed: float) -> None:
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.state = replace(self.state, speed=float(speed))

    def render(self) -> None:
        if self._render is None or self.frame_count < 1:
            return
        try:
            self._render(self.state.current_step)
        except RasterizationFailure as e:
            # keep whatever was on screen and keep ticking
            log.warning("could not render step %d: %s", self.state.current_step, e)

    def seek(self, step: int) -> int:
        if self.frame_count < 1:
            return self.state.current_step
        self.state = seek(self.state, step, self.frame_count)
        self.render()
        return self.state.current_step

    def toggle_play(self, now: float) -> bool:
        if self.frame_count < 1:
            return False
        before = self.state.current_step
        self.state = toggle_play(self.state, self.frame_count, now)
        if self.state.current_step != before:
            self.render()
        return self.state.is_playing

    def stop(self) -> None:
        if self.state.is_playing:
            self.state = replace(self.state, is_playing=False)

    def tick(self, now: float) -> int:
        self.state, steps = tick(self.state, self.frame_count, now)
        if steps:
            self.render()
        return steps
