# tablescan/anchors.py
"""Scene anchors supplied by the scene-understanding service (read-only)."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from utils.config import TABLE_LABEL, WORLD_UP
from utils.error_tracker import InvalidAnchor
from utils.helpers import fmt_array, transform_points
from utils.logger import Logger

LOG = Logger.get_logger("anchors")


# ============================== TOP SURFACE ==================================


@dataclass(frozen=True, eq=False)
class TopSurface:
    """
    Top plane of an anchor volume.

    The up axis is the anchor-local axis best aligned with WORLD up, so
    anchors that are not perfectly level (or whose frame is flipped) still
    resolve to the face that points upwards.
    """

    T_world_local: np.ndarray
    T_local_world: np.ndarray
    axis: int  # local up axis index
    sign: float  # +1 top is bounds_max[axis], -1 top is bounds_min[axis]
    height_local: float
    foot_axes: Tuple[int, int]
    foot_min: np.ndarray  # (2,) local footprint bounds
    foot_max: np.ndarray
    axis_scales: np.ndarray  # (3,) world length of each local unit axis
    normal: np.ndarray  # WORLD unit normal of the top face
    center: np.ndarray  # WORLD center of the top face

    @property
    def footprint_size(self) -> np.ndarray:
        """WORLD extent along the two footprint axes."""
        a, b = self.foot_axes
        span = self.foot_max - self.foot_min
        return np.array(
            [span[0] * self.axis_scales[a], span[1] * self.axis_scales[b]]
        )

    @property
    def height(self) -> float:
        """Top face height along WORLD up."""
        return float(np.dot(self.center, WORLD_UP))

    def local_point(self, fa: np.ndarray, fb: np.ndarray) -> np.ndarray:
        """Footprint coords (local units) -> (N,3) local points on the top."""
        fa = np.atleast_1d(np.asarray(fa, dtype=float))
        fb = np.atleast_1d(np.asarray(fb, dtype=float))
        P = np.zeros((len(fa), 3), dtype=float)
        a, b = self.foot_axes
        P[:, a] = fa
        P[:, b] = fb
        P[:, self.axis] = self.height_local
        return P

    def to_world(self, fa: np.ndarray, fb: np.ndarray) -> np.ndarray:
        return transform_points(self.T_world_local, self.local_point(fa, fb))

    def grid(self, resolution: int) -> np.ndarray:
        """(M*M, 3) WORLD cell positions spanning the footprint, x-major."""
        m = max(1, int(resolution))
        if m == 1:
            ta = np.array([0.5])
        else:
            ta = np.arange(m, dtype=float) / (m - 1)
        fa = self.foot_min[0] + ta * (self.foot_max[0] - self.foot_min[0])
        fb = self.foot_min[1] + ta * (self.foot_max[1] - self.foot_min[1])
        A, B = np.meshgrid(fa, fb, indexing="ij")
        return self.to_world(A.ravel(), B.ravel())

    def project(self, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        WORLD points -> (height above top in meters, (N,2) local footprint
        coordinates).
        """
        L = transform_points(self.T_local_world, points)
        h = (L[:, self.axis] - self.height_local) * self.sign
        h = h * self.axis_scales[self.axis]
        a, b = self.foot_axes
        return h, L[:, [a, b]]

    def in_footprint(self, foot: np.ndarray, margin: float) -> np.ndarray:
        """Mask of footprint coords inside the bounds grown by ``margin`` m."""
        a, b = self.foot_axes
        grow = np.array(
            [
                margin / max(self.axis_scales[a], 1e-12),
                margin / max(self.axis_scales[b], 1e-12),
            ]
        )
        lo = self.foot_min - grow
        hi = self.foot_max + grow
        return np.all((foot >= lo) & (foot <= hi), axis=1)


# ============================== ANCHOR =======================================


@dataclass(frozen=True, eq=False)
class SurfaceAnchor:
    """Labelled axis-aligned volume in anchor-local space plus its pose."""

    uuid: str
    labels: FrozenSet[str] = frozenset()
    bounds_min: Optional[np.ndarray] = None
    bounds_max: Optional[np.ndarray] = None
    local_to_world: np.ndarray = field(default_factory=lambda: np.eye(4))

    def __post_init__(self) -> None:
        object.__setattr__(self, "labels", frozenset(self.labels))
        object.__setattr__(
            self,
            "local_to_world",
            np.asarray(self.local_to_world, dtype=float).reshape(4, 4),
        )
        if self.bounds_min is not None:
            object.__setattr__(
                self, "bounds_min", np.asarray(self.bounds_min, float).reshape(3)
            )
        if self.bounds_max is not None:
            object.__setattr__(
                self, "bounds_max", np.asarray(self.bounds_max, float).reshape(3)
            )

    @classmethod
    def from_center_size(
        cls,
        uuid: str,
        center,
        size,
        labels: Iterable[str] = (TABLE_LABEL,),
        local_to_world: Optional[np.ndarray] = None,
    ) -> "SurfaceAnchor":
        c = np.asarray(center, dtype=float)
        s = np.asarray(size, dtype=float)
        return cls(
            uuid=uuid,
            labels=frozenset(labels),
            bounds_min=c - 0.5 * s,
            bounds_max=c + 0.5 * s,
            local_to_world=np.eye(4) if local_to_world is None else local_to_world,
        )

    def has_label(self, label: str) -> bool:
        return label in self.labels

    @property
    def has_volume(self) -> bool:
        if self.bounds_min is None or self.bounds_max is None:
            return False
        return bool(np.all(self.bounds_max >= self.bounds_min))

    @property
    def position(self) -> np.ndarray:
        """Anchor origin in WORLD."""
        return self.local_to_world[:3, 3].copy()

    @property
    def world_center(self) -> np.ndarray:
        if not self.has_volume:
            return self.position
        c = 0.5 * (self.bounds_min + self.bounds_max)
        return transform_points(self.local_to_world, c)[0]

    def world_bounds(self) -> Tuple[np.ndarray, np.ndarray]:
        """WORLD AABB of the (possibly rotated) volume."""
        if not self.has_volume:
            p = self.position
            return p.copy(), p.copy()
        mn, mx = self.bounds_min, self.bounds_max
        corners = np.array(
            [[x, y, z] for x in (mn[0], mx[0]) for y in (mn[1], mx[1]) for z in (mn[2], mx[2])]
        )
        W = transform_points(self.local_to_world, corners)
        return W.min(0), W.max(0)

    def top_surface(self) -> TopSurface:
        """Resolve the top face; requires volume bounds."""
        if not self.has_volume:
            raise InvalidAnchor(f"anchor {self.uuid} has no volume bounds")
        T = self.local_to_world
        Ti = np.linalg.inv(T)
        up_local = Ti[:3, :3] @ WORLD_UP
        axis = int(np.argmax(np.abs(up_local)))
        sign = 1.0 if up_local[axis] >= 0 else -1.0
        h = float(self.bounds_max[axis] if sign > 0 else self.bounds_min[axis])
        foot = tuple(i for i in range(3) if i != axis)
        scales = np.linalg.norm(T[:3, :3], axis=0)
        n = T[:3, axis] * sign
        n = n / (np.linalg.norm(n) + 1e-12)
        c_local = 0.5 * (self.bounds_min + self.bounds_max)
        c_local[axis] = h
        return TopSurface(
            T_world_local=T,
            T_local_world=Ti,
            axis=axis,
            sign=sign,
            height_local=h,
            foot_axes=(foot[0], foot[1]),
            foot_min=self.bounds_min[list(foot)].copy(),
            foot_max=self.bounds_max[list(foot)].copy(),
            axis_scales=scales,
            normal=n,
            center=transform_points(T, c_local)[0],
        )

    def describe(self) -> str:
        mn, mx = self.world_bounds()
        return (
            f"{self.uuid} labels={sorted(self.labels)} "
            f"min={fmt_array(mn)} max={fmt_array(mx)}"
        )


def is_valid_target(anchor: Optional[SurfaceAnchor], label: str = TABLE_LABEL) -> bool:
    """Anchor carries ``label`` and has volume bounds."""
    return anchor is not None and anchor.has_label(label) and anchor.has_volume


# ============================== SCENE QUERY ==================================


class SceneQuery(Protocol):
    """Read-only interface of the scene-understanding service."""

    def list_anchors(self, label: str) -> List[SurfaceAnchor]: ...


class InMemoryScene:
    """Scene snapshot held in memory (tests, recordings)."""

    def __init__(self, anchors: Iterable[SurfaceAnchor] = ()) -> None:
        self._anchors: Dict[str, SurfaceAnchor] = {a.uuid: a for a in anchors}

    def add(self, anchor: SurfaceAnchor) -> None:
        self._anchors[anchor.uuid] = anchor

    def list_anchors(self, label: str) -> List[SurfaceAnchor]:
        return [a for a in self._anchors.values() if a.has_label(label)]

    def __len__(self) -> int:
        return len(self._anchors)


def closest_anchor(
    anchors: Iterable[SurfaceAnchor],
    position: Optional[np.ndarray],
    require_volume: bool = True,
) -> Optional[SurfaceAnchor]:
    """Nearest anchor origin to ``position`` (first one if position is None)."""
    best, best_d = None, float("inf")
    for a in anchors:
        if require_volume and not a.has_volume:
            continue
        if position is None:
            return a
        d = float(np.linalg.norm(a.position - np.asarray(position, float)))
        if d < best_d:
            best, best_d = a, d
    if best is None:
        LOG.warning("[SCENE] no anchor with volume bounds")
    return best
