"""
errors.py

Failure taxonomy shared by the engine wrapper, the rasterizer and the exporters.
"""

from __future__ import annotations


class TimelineError(Exception):
    """Base class for every failure raised by rectlapse."""


class AlgorithmFailure(TimelineError):
    """The optimization engine could not produce a frame sequence."""


class RasterizationFailure(TimelineError):
    """A scene description could not be turned into pixels."""


class EncodingFailure(TimelineError):
    """A still, animated or archive encoder failed."""


class StaleSequenceError(TimelineError):
    """The sequence an export was reading got reset or replaced mid-run."""


class ExportBusyError(TimelineError):
    """An export of the same kind is already running."""
