# tablescan/sensor.py
"""
Sensor subsystem seam.

The depth buffer -> host copy is synchronous on the calling tick; it lives
behind ``DepthSource`` so an asynchronous transfer can replace it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, Optional, Sequence

import numpy as np

from utils.error_tracker import ReadbackFailure
from utils.logger import Logger

from .types import DepthFrame

LOG = Logger.get_logger("sensor")


@dataclass(frozen=True, eq=False)
class SensorSnapshot:
    """What the sensor publishes once per tick (device-side, not yet copied)."""

    buffer: object  # anything np.asarray understands, (H, W) single channel
    matrices: Sequence[np.ndarray]
    ready: bool = True
    timestamp: float = 0.0


class DepthSource:
    """Provides at most one DepthFrame per tick."""

    def fetch(self) -> Optional[DepthFrame]:
        """
        Return the current frame, or None when the sensor has not published
        valid data this tick. Raises ReadbackFailure if the copy fails.
        """
        raise NotImplementedError


def readback(snapshot: SensorSnapshot) -> Optional[DepthFrame]:
    """
    Copy a snapshot to host memory and validate its format.

    Unpopulated (identity) matrices are passed through as is; the
    unprojector's matrix cache decides between stale reuse and NOT_READY.
    """
    if not snapshot.ready or snapshot.buffer is None or not snapshot.matrices:
        return None
    mats = [np.asarray(m, dtype=np.float64) for m in snapshot.matrices]
    if any(m.shape != (4, 4) for m in mats):
        raise ReadbackFailure(
            f"unexpected matrix shapes {[m.shape for m in mats]}"
        )
    try:
        depth = np.array(snapshot.buffer, dtype=np.float32, copy=True)
    except (TypeError, ValueError) as e:
        raise ReadbackFailure(f"depth copy failed: {e}") from e
    if depth.ndim == 3 and depth.shape[2] == 1:
        depth = depth[:, :, 0]
    if depth.ndim != 2 or depth.size == 0:
        raise ReadbackFailure(f"unexpected depth format shape={depth.shape}")
    return DepthFrame(depth=depth, inv_view_proj=tuple(mats), timestamp=snapshot.timestamp)


class SyncReadback(DepthSource):
    """Pulls a SensorSnapshot from a publisher callable and copies it now."""

    def __init__(self, publisher: Callable[[], Optional[SensorSnapshot]]) -> None:
        self._publisher = publisher

    def fetch(self) -> Optional[DepthFrame]:
        snap = self._publisher()
        if snap is None:
            return None
        return readback(snap)


class ReplaySource(DepthSource):
    """
    Serves pre-recorded frames; ``advance()`` moves to the next one.
    ``fetch()`` returns the current frame for as many calls as needed in a
    tick, mirroring a sensor that publishes once per tick.
    """

    def __init__(self, frames: Iterable[Optional[DepthFrame]]) -> None:
        self._frames: Iterator[Optional[DepthFrame]] = iter(frames)
        self._current: Optional[DepthFrame] = None
        self.exhausted = False

    def advance(self) -> bool:
        try:
            self._current = next(self._frames)
            return True
        except StopIteration:
            self._current = None
            self.exhausted = True
            return False

    def fetch(self) -> Optional[DepthFrame]:
        return self._current


class StaticSource(DepthSource):
    """Always serves the same frame (or nothing); handy for tests and demos."""

    def __init__(self, frame: Optional[DepthFrame]) -> None:
        self.frame = frame

    def fetch(self) -> Optional[DepthFrame]:
        return self.frame
