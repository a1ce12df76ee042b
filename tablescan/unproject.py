# tablescan/unproject.py
r"""
Depth buffer -> WORLD points via the inverse view-projection.

Per sampled texel (x, y) of a W x H buffer with normalized depth d:

    u = x / W,  v = y / H
    ndc   = (2u - 1, 2v - 1, z(d)),   z(d) = d          ("zero_to_one")
                                      z(d) = 2d - 1     ("minus_one_to_one")
    world = M^{-1} (ndc, 1)  ->  p = world.xyz / world.w

Texels with d in {0, 1} (sentinels), |w| < 1e-4, non-finite or origin results,
or an eye distance outside [min_depth, max_depth] are dropped.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np

from utils.logger import Logger

from .config import DEGENERATE_W, UnprojectCfg
from .types import DepthFrame, Outcome

LOG = Logger.get_logger("unproj")

_EYE_CLIP = np.array([0.0, 0.0, 1.0, 0.0])


# ============================== RESULT =======================================


@dataclass(frozen=True, eq=False)
class UnprojectResult:
    """Points (N,3) and their distances (N,) to the capturing eye."""

    points: np.ndarray = field(default_factory=lambda: np.empty((0, 3)))
    distances: np.ndarray = field(default_factory=lambda: np.empty(0))
    outcome: Outcome = Outcome.EMPTY
    sampled: int = 0  # texels visited
    capped: int = 0  # valid points dropped by the per-frame cap

    def __len__(self) -> int:
        return len(self.points)

    @classmethod
    def not_ready(cls) -> "UnprojectResult":
        return cls(outcome=Outcome.NOT_READY)


# ============================== MATRIX CHECKS ================================


def is_identity(M: np.ndarray, atol: float = 1e-6) -> bool:
    return bool(np.allclose(np.asarray(M, float), np.eye(4), atol=atol))


def is_usable_matrix(M: Optional[np.ndarray]) -> bool:
    """Populated, finite and invertible."""
    if M is None:
        return False
    M = np.asarray(M, dtype=float)
    if M.shape != (4, 4) or not np.all(np.isfinite(M)):
        return False
    if is_identity(M):
        return False
    return abs(float(np.linalg.det(M))) > 1e-12


def eye_position_from_inverse(M: np.ndarray) -> Optional[np.ndarray]:
    """
    Eye center recovered from a CLIP -> WORLD matrix.
    The eye is the WORLD point whose clip x, y, w vanish, i.e. M (0,0,1,0).
    """
    h = np.asarray(M, dtype=float) @ _EYE_CLIP
    if abs(h[3]) < DEGENERATE_W or not np.all(np.isfinite(h)):
        return None
    return h[:3] / h[3]


def ndc_depth(d: np.ndarray, convention: str) -> np.ndarray:
    if convention == "zero_to_one":
        return d
    if convention == "minus_one_to_one":
        return 2.0 * d - 1.0
    raise ValueError(
        "depth_convention must be 'zero_to_one' or 'minus_one_to_one', "
        f"got {convention!r}"
    )


def sample_grid(width: int, height: int, stride: int) -> Tuple[np.ndarray, np.ndarray]:
    """Texel columns / rows visited with ``stride`` (need not divide W, H)."""
    s = max(1, int(stride))
    return np.arange(0, int(width), s), np.arange(0, int(height), s)


# ============================== CORE =========================================


def unproject(
    frame: DepthFrame,
    *,
    eye: int = 0,
    stride: int = 4,
    min_depth: float = 0.1,
    max_depth: float = 4.0,
    convention: str = "minus_one_to_one",
    eye_position: Optional[np.ndarray] = None,
    inv_view_proj: Optional[np.ndarray] = None,
    max_points: Optional[int] = None,
) -> UnprojectResult:
    """
    Pure depth -> WORLD unprojection of one eye of ``frame``.

    ``inv_view_proj`` overrides the frame matrix (used by the staleness
    cache). ``eye_position`` defaults to the eye recovered from the matrix.
    An identity or singular matrix yields an empty NOT_READY result.
    ``max_points`` keeps only the first survivors in row-major texel order.
    """
    M = frame.inv_view_proj[eye] if inv_view_proj is None else inv_view_proj
    M = np.asarray(M, dtype=np.float64)
    if not is_usable_matrix(M):
        return UnprojectResult.not_ready()

    if eye_position is None:
        eye_position = eye_position_from_inverse(M)
        if eye_position is None:
            return UnprojectResult.not_ready()
    eye_p = np.asarray(eye_position, dtype=np.float64).reshape(3)

    W, H = frame.width, frame.height
    xs, ys = sample_grid(W, H, stride)
    X, Y = np.meshgrid(xs, ys)
    D = frame.depth[np.ix_(ys, xs)].astype(np.float64)
    sampled = int(D.size)

    valid = np.isfinite(D) & (D > 0.0) & (D < 1.0)
    if not np.any(valid):
        return UnprojectResult(sampled=sampled)

    u = X[valid] / float(W)
    v = Y[valid] / float(H)
    d = D[valid]
    clip = np.stack(
        [2.0 * u - 1.0, 2.0 * v - 1.0, ndc_depth(d, convention), np.ones_like(d)],
        axis=1,
    )
    hom = clip @ M.T

    w = hom[:, 3]
    ok = np.abs(w) >= DEGENERATE_W
    P = np.full((len(hom), 3), np.nan)
    P[ok] = hom[ok, :3] / w[ok, None]
    ok &= np.all(np.isfinite(P), axis=1)
    ok &= np.any(P != 0.0, axis=1)

    dist = np.linalg.norm(P - eye_p, axis=1)
    ok &= (dist >= min_depth) & (dist <= max_depth)

    P = P[ok]
    dist = dist[ok]
    capped = 0
    if max_points is not None and len(P) > max_points:
        capped = len(P) - int(max_points)
        P = P[:max_points]
        dist = dist[:max_points]
    return UnprojectResult(
        points=P,
        distances=dist,
        outcome=Outcome.SUCCESS if len(P) else Outcome.EMPTY,
        sampled=sampled,
        capped=capped,
    )


def project(
    points: np.ndarray,
    view_proj: np.ndarray,
    convention: str = "minus_one_to_one",
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Forward map WORLD -> (u, v, d); inverse of ``unproject`` for one texel.
    Points behind the eye come back with non-finite values.
    """
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    hom = np.hstack([P, np.ones((len(P), 1))]) @ np.asarray(view_proj, float).T
    w = hom[:, 3]
    with np.errstate(divide="ignore", invalid="ignore"):
        ndc = hom[:, :3] / w[:, None]
    ndc[w <= 0] = np.nan
    u = (ndc[:, 0] + 1.0) * 0.5
    v = (ndc[:, 1] + 1.0) * 0.5
    if convention == "zero_to_one":
        d = ndc[:, 2]
    elif convention == "minus_one_to_one":
        d = (ndc[:, 2] + 1.0) * 0.5
    else:
        raise ValueError(f"unknown depth convention {convention!r}")
    return u, v, d


# ============================== STATEFUL WRAPPER =============================


class MatrixCache:
    """
    Last good CLIP -> WORLD matrix with bounded staleness.

    A degenerate matrix on the current tick falls back to the cached one for
    at most ``max_stale_ticks`` consecutive ticks; after that the sensor is
    treated as unavailable until a good matrix arrives.
    """

    def __init__(self, max_stale_ticks: int = 3) -> None:
        self.max_stale_ticks = max(0, int(max_stale_ticks))
        self._matrix: Optional[np.ndarray] = None
        self._stale = 0

    @property
    def stale_ticks(self) -> int:
        return self._stale

    @property
    def has_matrix(self) -> bool:
        return self._matrix is not None

    def resolve(self, M: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if is_usable_matrix(M):
            self._matrix = np.array(M, dtype=np.float64)
            self._stale = 0
            return self._matrix
        if self._matrix is None or self._stale >= self.max_stale_ticks:
            return None
        self._stale += 1
        return self._matrix

    def reset(self) -> None:
        self._matrix = None
        self._stale = 0


class DepthUnprojector:
    """Configured ``unproject`` plus the matrix staleness policy."""

    def __init__(self, cfg: UnprojectCfg | None = None) -> None:
        self.cfg = cfg or UnprojectCfg()
        ndc_depth(np.zeros(1), self.cfg.depth_convention)  # validate early
        if self.cfg.matrix_storage not in ("inverse", "forward"):
            raise ValueError(
                f"matrix_storage must be 'inverse' or 'forward', got {self.cfg.matrix_storage!r}"
            )
        self.cache = MatrixCache(self.cfg.max_stale_ticks)

    def _clip_to_world(self, frame: DepthFrame) -> Optional[np.ndarray]:
        eye = min(self.cfg.eye, frame.eye_count - 1)
        M = np.asarray(frame.inv_view_proj[eye], dtype=np.float64)
        if self.cfg.matrix_storage == "forward":
            if not is_usable_matrix(M):
                return None
            return np.linalg.inv(M)
        return M

    def process(
        self, frame: DepthFrame, eye_position: Optional[np.ndarray] = None
    ) -> UnprojectResult:
        """One tick: resolve the matrix (maybe cached), then unproject."""
        M = self.cache.resolve(self._clip_to_world(frame))
        if M is None:
            if Logger.should_emit("unproj.not_ready"):
                LOG.warning("[DEPTH] sensor matrix not ready; skipping tick")
            return UnprojectResult.not_ready()
        if self.cache.stale_ticks:
            LOG.debug(f"[DEPTH] reusing cached matrix (stale={self.cache.stale_ticks})")

        res = unproject(
            frame,
            eye=min(self.cfg.eye, frame.eye_count - 1),
            stride=self.cfg.stride,
            min_depth=self.cfg.min_depth,
            max_depth=self.cfg.max_depth,
            convention=self.cfg.depth_convention,
            eye_position=eye_position,
            inv_view_proj=M,
            max_points=self.cfg.max_points_per_frame,
        )
        LOG.debug(
            f"[DEPTH] {frame.width}x{frame.height} stride={self.cfg.stride} "
            f"sampled={res.sampled} kept={len(res)} capped={res.capped}"
        )
        return res

    def reset(self) -> None:
        self.cache.reset()
