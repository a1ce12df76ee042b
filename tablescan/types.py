# tablescan/types.py
"""Data model shared by the scan components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional, Tuple

import numpy as np

from utils.config import CameraPose
from utils.error_tracker import InvalidGeometry

# ============================== RESULT STATES ================================


class Outcome(str, Enum):
    """Explicit result state of an operation; nothing here is fatal."""

    SUCCESS = "success"
    EMPTY = "empty"
    NOT_READY = "not_ready"
    FAILED_PRECONDITION = "failed_precondition"
    REJECTED = "rejected"
    SKIPPED = "skipped"


def _frozen(a, dtype=np.float64) -> np.ndarray:
    out = np.array(a, dtype=dtype, copy=True)
    out.setflags(write=False)
    return out


# ============================== SENSOR =======================================


@dataclass(frozen=True, eq=False)
class DepthFrame:
    """
    One published depth frame.

    depth         : (H, W) normalized depth in [0, 1]; 0 and 1 are invalid
    inv_view_proj : per-eye 4x4 CLIP -> WORLD matrices
    timestamp     : seconds, sensor clock
    """

    depth: np.ndarray
    inv_view_proj: Tuple[np.ndarray, ...]
    timestamp: float = 0.0

    def __post_init__(self) -> None:
        d = np.asarray(self.depth)
        if d.ndim != 2:
            raise InvalidGeometry(f"depth must be (H, W), got {d.shape}")
        mats = tuple(_frozen(m).reshape(4, 4) for m in self.inv_view_proj)
        if not mats:
            raise InvalidGeometry("at least one eye matrix is required")
        object.__setattr__(self, "depth", _frozen(d, np.float32))
        object.__setattr__(self, "inv_view_proj", mats)

    @property
    def width(self) -> int:
        return int(self.depth.shape[1])

    @property
    def height(self) -> int:
        return int(self.depth.shape[0])

    @property
    def eye_count(self) -> int:
        return len(self.inv_view_proj)


# ============================== POINT ARENA ==================================


class PointArena:
    """
    Contiguous growable (N, 3) point buffer with stable index ranges.

    Views append their points once and keep the returned (start, stop);
    renderers read ``view()`` without per-point objects.
    """

    def __init__(self, capacity: int = 4096) -> None:
        self._buf = np.empty((max(1, int(capacity)), 3), dtype=np.float64)
        self._n = 0

    def __len__(self) -> int:
        return self._n

    def append(self, points: np.ndarray) -> Tuple[int, int]:
        P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        need = self._n + len(P)
        if need > len(self._buf):
            cap = len(self._buf)
            while cap < need:
                cap *= 2
            grown = np.empty((cap, 3), dtype=np.float64)
            grown[: self._n] = self._buf[: self._n]
            self._buf = grown
        start = self._n
        self._buf[start:need] = P
        self._n = need
        return start, need

    def view(self, start: int = 0, stop: Optional[int] = None) -> np.ndarray:
        """Read-only view of [start, stop)."""
        stop = self._n if stop is None else min(int(stop), self._n)
        v = self._buf[int(start) : stop]
        v.setflags(write=False)
        return v

    def clear(self) -> None:
        self._n = 0


# ============================== SESSION ======================================


@dataclass
class CapturedView:
    """One accepted viewpoint. ``color_image`` is opaque to the core."""

    index: int
    pose: CameraPose
    point_range: Tuple[int, int]
    width: int
    height: int
    timestamp: float
    color_image: Any = None

    @property
    def num_points(self) -> int:
        return self.point_range[1] - self.point_range[0]


@dataclass
class ScanSession:
    """Accumulated capture state for a single target anchor."""

    anchor: Any  # SurfaceAnchor (kept loose to avoid an import cycle)
    scan_bounds: Tuple[np.ndarray, np.ndarray]
    views: List[CapturedView] = field(default_factory=list)
    coverage: float = 0.0
    arena: PointArena = field(default_factory=PointArena)

    def add_view(
        self,
        index: int,
        pose: CameraPose,
        points: np.ndarray,
        width: int,
        height: int,
        timestamp: float,
        color_image: Any = None,
    ) -> CapturedView:
        rng = self.arena.append(points)
        view = CapturedView(
            index=index,
            pose=pose,
            point_range=rng,
            width=width,
            height=height,
            timestamp=timestamp,
            color_image=color_image,
        )
        self.views.append(view)
        return view

    def view_points(self, view: CapturedView) -> np.ndarray:
        return self.arena.view(*view.point_range)

    def merged_points(self) -> np.ndarray:
        return self.arena.view()

    def update_coverage(self, value: float) -> float:
        """Coverage never decreases within a session."""
        self.coverage = float(min(1.0, max(self.coverage, value)))
        return self.coverage

    @property
    def total_points(self) -> int:
        return len(self.arena)


# ============================== OBJECTS ======================================

WHITE = np.array([1.0, 1.0, 1.0, 1.0])


@dataclass
class Cluster:
    """Points of one segmented object plus derived bounds."""

    points: np.ndarray
    colors: Optional[np.ndarray] = None
    bounds_min: np.ndarray = field(init=False)
    bounds_max: np.ndarray = field(init=False)
    centroid: np.ndarray = field(init=False)
    average_color: np.ndarray = field(init=False)

    def __post_init__(self) -> None:
        P = np.asarray(self.points, dtype=np.float64).reshape(-1, 3)
        self.points = P
        if len(P) == 0:
            self.bounds_min = np.zeros(3)
            self.bounds_max = np.zeros(3)
            self.centroid = np.zeros(3)
        else:
            self.bounds_min = P.min(0)
            self.bounds_max = P.max(0)
            self.centroid = P.mean(0)
        if self.colors is not None and len(self.colors) == len(P) and len(P):
            c = np.asarray(self.colors, dtype=np.float64)
            avg = c.mean(0)
            self.average_color = (
                np.append(avg, 1.0) if avg.shape[0] == 3 else avg
            )
        else:
            self.average_color = WHITE.copy()

    @property
    def size(self) -> np.ndarray:
        return self.bounds_max - self.bounds_min

    @property
    def diagonal(self) -> float:
        return float(np.linalg.norm(self.size))

    def __len__(self) -> int:
        return len(self.points)


@dataclass
class Splat:
    position: np.ndarray
    color: np.ndarray
    covariance: np.ndarray
    opacity: float
    scale: float


@dataclass
class ObjectRepresentation:
    """Simplified geometry of one accepted cluster."""

    name: str
    kind: str  # "mesh" | "splats"
    centroid: np.ndarray
    bounds_min: np.ndarray
    bounds_max: np.ndarray
    color: np.ndarray
    points: np.ndarray
    triangles: np.ndarray = field(
        default_factory=lambda: np.empty((0, 3), dtype=np.int32)
    )
    normals: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    splats: List[Splat] = field(default_factory=list)
