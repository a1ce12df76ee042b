# tablescan/synthetic.py
"""
Synthetic table scenes: sampled geometry, orbit poses and a z-buffer depth
renderer producing DepthFrames in either NDC depth convention.

Row 0 of a rendered buffer is the bottom of the image (v = y / H), matching
the unprojection texel mapping.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from utils.config import CameraPose, WORLD_UP
from utils.helpers import look_rotation, perspective, view_matrix
from utils.logger import Logger

from .anchors import SurfaceAnchor
from .sensor import SensorSnapshot
from .types import DepthFrame
from .unproject import project

LOG = Logger.get_logger("synth")


# ============================== SAMPLERS =====================================


def sample_sphere_surface(
    center, radius: float, n: int, rng: np.random.Generator
) -> np.ndarray:
    v = rng.normal(size=(int(n), 3))
    v /= np.linalg.norm(v, axis=1, keepdims=True) + 1e-12
    return np.asarray(center, float) + float(radius) * v


def sample_ball(center, radius: float, n: int, rng: np.random.Generator) -> np.ndarray:
    """Uniform samples inside a ball."""
    v = rng.normal(size=(int(n), 3))
    v /= np.linalg.norm(v, axis=1, keepdims=True) + 1e-12
    r = float(radius) * rng.random(int(n)) ** (1.0 / 3.0)
    return np.asarray(center, float) + v * r[:, None]


def sample_box_surface(
    center, size, n: int, rng: np.random.Generator
) -> np.ndarray:
    """Uniform samples over the six faces of an axis-aligned box."""
    c = np.asarray(center, float)
    s = np.asarray(size, float)
    areas = np.array([s[1] * s[2], s[1] * s[2], s[0] * s[2], s[0] * s[2], s[0] * s[1], s[0] * s[1]])
    face = rng.choice(6, size=int(n), p=areas / areas.sum())
    P = (rng.random((int(n), 3)) - 0.5) * s
    axis = face // 2
    sign = np.where(face % 2 == 0, -0.5, 0.5)
    P[np.arange(int(n)), axis] = sign * s[axis]
    return c + P


def sample_plane_grid(center, size_xz, spacing: float) -> np.ndarray:
    """Horizontal grid of points (a table top) at ``center`` height."""
    c = np.asarray(center, float)
    sx, sz = float(size_xz[0]), float(size_xz[1])
    xs = np.arange(-0.5 * sx, 0.5 * sx + 1e-9, spacing)
    zs = np.arange(-0.5 * sz, 0.5 * sz + 1e-9, spacing)
    X, Z = np.meshgrid(xs, zs, indexing="ij")
    return np.stack([c[0] + X.ravel(), np.full(X.size, c[1]), c[2] + Z.ravel()], axis=1)


# ============================== RENDERING ====================================


def render_depth(
    points: np.ndarray,
    view_proj: np.ndarray,
    width: int,
    height: int,
    convention: str = "minus_one_to_one",
    splat: int = 0,
) -> np.ndarray:
    """
    Z-buffer splat of WORLD points into an (H, W) normalized depth buffer.
    A point lands on texel rint(u * W), rint(v * H) and covers a
    (2*splat+1)^2 block around it; empty texels stay 1.0.
    """
    W, H = int(width), int(height)
    depth = np.ones(H * W, dtype=np.float64)
    u, v, d = project(points, view_proj, convention)
    ok = np.isfinite(u) & np.isfinite(v) & np.isfinite(d) & (d > 0.0) & (d < 1.0)
    x0 = np.rint(u[ok] * W).astype(np.int64)
    y0 = np.rint(v[ok] * H).astype(np.int64)
    dd = d[ok]
    r = max(0, int(splat))
    for oy in range(-r, r + 1):
        for ox in range(-r, r + 1):
            x = x0 + ox
            y = y0 + oy
            inside = (x >= 0) & (x < W) & (y >= 0) & (y < H)
            np.minimum.at(depth, y[inside] * W + x[inside], dd[inside])
    return depth.reshape(H, W).astype(np.float32)


def look_at_pose(position, target, up=WORLD_UP) -> CameraPose:
    p = np.asarray(position, dtype=float)
    return CameraPose(position=p, rotation=look_rotation(np.asarray(target, float) - p, up))


# ============================== SCENE ========================================


@dataclass
class SyntheticCamera:
    width: int = 256
    height: int = 256
    fov_y_deg: float = 60.0
    near: float = 0.05
    far: float = 10.0
    convention: str = "minus_one_to_one"

    def projection(self) -> np.ndarray:
        return perspective(
            self.fov_y_deg, self.width / self.height, self.near, self.far, self.convention
        )

    def view_proj(self, pose: CameraPose) -> np.ndarray:
        return self.projection() @ view_matrix(pose.position, pose.rotation)


@dataclass
class SyntheticScene:
    """A table anchor plus sampled WORLD geometry standing on it."""

    anchor: SurfaceAnchor
    points: np.ndarray
    object_centers: List[np.ndarray] = field(default_factory=list)
    camera: SyntheticCamera = field(default_factory=SyntheticCamera)
    matrix_storage: str = "inverse"
    splat: int = 0

    def frame(self, pose: CameraPose, timestamp: float = 0.0) -> DepthFrame:
        VP = self.camera.view_proj(pose)
        depth = render_depth(
            self.points,
            VP,
            self.camera.width,
            self.camera.height,
            self.camera.convention,
            self.splat,
        )
        M = np.linalg.inv(VP) if self.matrix_storage == "inverse" else VP
        return DepthFrame(depth=depth, inv_view_proj=(M,), timestamp=timestamp)

    def snapshot(self, pose: CameraPose, timestamp: float = 0.0) -> SensorSnapshot:
        f = self.frame(pose, timestamp)
        return SensorSnapshot(buffer=f.depth, matrices=list(f.inv_view_proj), timestamp=timestamp)


def make_table_scene(
    seed: int = 0,
    table_center=(0.0, 0.725, 0.0),
    table_size=(1.2, 0.05, 0.8),
    camera: Optional[SyntheticCamera] = None,
    with_table_top: bool = True,
) -> SyntheticScene:
    """Table with a sphere and a box on top."""
    rng = np.random.default_rng(seed)
    anchor = SurfaceAnchor.from_center_size("table-0", table_center, table_size)
    top = float(table_center[1] + 0.5 * table_size[1])

    sphere_c = np.array([-0.2, top + 0.06, 0.05])
    box_size = np.array([0.1, 0.08, 0.12])
    box_c = np.array([0.25, top + 0.5 * box_size[1], -0.1])

    parts = [
        sample_sphere_surface(sphere_c, 0.06, 12000, rng),
        sample_box_surface(box_c, box_size, 12000, rng),
    ]
    if with_table_top:
        parts.append(
            sample_plane_grid((table_center[0], top, table_center[2]), table_size[::2], 0.004)
        )
    P = np.concatenate(parts, axis=0)
    LOG.info(f"[SCENE] table top={top:.3f} points={len(P)}")
    return SyntheticScene(
        anchor=anchor,
        points=P,
        object_centers=[sphere_c, box_c],
        camera=camera or SyntheticCamera(),
    )


# ============================== POSE PATHS ===================================


def orbit_poses(positions: np.ndarray, target) -> List[CameraPose]:
    """One pose per position, all looking at ``target``."""
    return [look_at_pose(p, target) for p in np.asarray(positions, float)]


def scan_path(
    positions: np.ndarray,
    target,
    approach_steps: int = 3,
    dwell_steps: int = 3,
) -> List[CameraPose]:
    """
    Walk around the viewpoint ring: interpolate along the circle between
    consecutive viewpoints, then dwell at each one.
    """
    Pv = np.asarray(positions, float)
    t = np.asarray(target, float)
    path: List[CameraPose] = []
    for k in range(len(Pv)):
        a = Pv[k - 1] if k > 0 else Pv[-1]
        b = Pv[k]
        for s in range(1, int(approach_steps) + 1):
            w = s / float(approach_steps + 1)
            p = _slerp_around(a, b, t, w)
            path.append(look_at_pose(p, t))
        path.extend(look_at_pose(b, t) for _ in range(int(dwell_steps)))
    return path


def _slerp_around(a: np.ndarray, b: np.ndarray, center: np.ndarray, w: float) -> np.ndarray:
    """Interpolate horizontally around ``center`` keeping radius and height."""
    up = WORLD_UP
    ah = a - center - np.dot(a - center, up) * up
    bh = b - center - np.dot(b - center, up) * up
    r = 0.5 * (np.linalg.norm(ah) + np.linalg.norm(bh))
    ang_a = np.arctan2(ah[2], ah[0])
    ang_b = np.arctan2(bh[2], bh[0])
    da = (ang_b - ang_a + np.pi) % (2 * np.pi) - np.pi
    ang = ang_a + w * da
    h = (1 - w) * np.dot(a, up) + w * np.dot(b, up)
    c_h = center - np.dot(center, up) * up
    return c_h + r * np.array([np.cos(ang), 0.0, np.sin(ang)]) + h * up
