# tablescan/geometry.py
"""Per-cluster simplified geometry: voxel mesh approximation or splats."""

from __future__ import annotations

from typing import List, Optional, Tuple

import numpy as np
import open3d as o3d
from scipy.spatial import cKDTree

from utils.logger import Logger

from .config import MIN_COVARIANCE_NEIGHBORS, GeometryCfg
from .types import Cluster, ObjectRepresentation, Splat

LOG = Logger.get_logger("geometry")


# ============================== VOXELS =======================================


def voxel_downsample(
    points: np.ndarray,
    voxel: float,
    colors: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Average points per ``floor(p / voxel)`` cell.

    Output order follows the sorted cell keys, so it is deterministic.
    Returns (points, colors or None).
    """
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    if len(P) == 0 or voxel <= 0:
        return P.copy(), None if colors is None else np.asarray(colors, float).copy()

    keys = np.floor(P / float(voxel)).astype(np.int64)
    _, inv, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inv = inv.reshape(-1)
    m = len(counts)

    acc = np.zeros((m, 3), dtype=np.float64)
    np.add.at(acc, inv, P)
    out = acc / counts[:, None]

    out_c = None
    if colors is not None:
        C = np.asarray(colors, dtype=np.float64)
        acc_c = np.zeros((m, C.shape[1]), dtype=np.float64)
        np.add.at(acc_c, inv, C)
        out_c = acc_c / counts[:, None]
    return out, out_c


# ============================== MESH =========================================


def triangulate(n: int, mode: str = "fan") -> np.ndarray:
    """
    Naive index buffer over an ordered point list (not a surface
    reconstruction). ``fan``: (0, i, i+1); ``strip``: (i, i+1, i+2).
    """
    if n < 3:
        return np.empty((0, 3), dtype=np.int32)
    if mode == "fan":
        i = np.arange(1, n - 1, dtype=np.int32)
        return np.stack([np.zeros_like(i), i, i + 1], axis=1)
    if mode == "strip":
        i = np.arange(0, n - 2, dtype=np.int32)
        return np.stack([i, i + 1, i + 2], axis=1)
    raise ValueError(f"triangulation must be 'fan' or 'strip', got {mode!r}")


def vertex_normals(vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """Area-weighted vertex normals via Open3D; zeros where undefined."""
    V = np.asarray(vertices, dtype=np.float64).reshape(-1, 3)
    if len(triangles) == 0:
        return np.zeros_like(V)
    mesh = o3d.geometry.TriangleMesh(
        o3d.utility.Vector3dVector(V),
        o3d.utility.Vector3iVector(np.asarray(triangles, dtype=np.int32)),
    )
    mesh.compute_vertex_normals()
    N = np.asarray(mesh.vertex_normals, dtype=np.float64)
    return np.nan_to_num(N, nan=0.0, posinf=0.0, neginf=0.0)


# ============================== SPLATS =======================================


def random_subsample(
    points: np.ndarray, count: int, rng: np.random.Generator
) -> np.ndarray:
    """Indices of a uniform subsample without replacement (sorted)."""
    n = len(points)
    if count <= 0 or n <= count:
        return np.arange(n)
    return np.sort(rng.choice(n, size=int(count), replace=False))


def isotropic_variances(
    centers: np.ndarray,
    cloud: np.ndarray,
    radius: float,
    default_scale: float,
) -> np.ndarray:
    """
    Mean squared distance to the local mean of ``cloud`` neighbours within
    ``radius`` of each center; ``default_scale**2`` with < 3 neighbours.
    """
    var = np.full(len(centers), float(default_scale) ** 2)
    if len(centers) == 0 or len(cloud) == 0:
        return var
    tree = cKDTree(cloud)
    for k, nb in enumerate(tree.query_ball_point(centers, r=float(radius))):
        if len(nb) < MIN_COVARIANCE_NEIGHBORS:
            continue
        Q = cloud[nb]
        var[k] = float(np.mean(np.sum((Q - Q.mean(0)) ** 2, axis=1)))
    return var


def merge_splats(splats: List[Splat], threshold: float) -> List[Splat]:
    """
    Greedy merge: each unmerged splat absorbs later unmerged splats closer
    than ``threshold`` to it. Position, color and opacity are averaged;
    scale and covariance are kept from the absorbing splat.
    """
    if len(splats) < 2:
        return list(splats)
    pos = np.array([s.position for s in splats], dtype=np.float64)
    tree = cKDTree(pos)
    taken = np.zeros(len(splats), dtype=bool)
    out: List[Splat] = []
    for i, s in enumerate(splats):
        if taken[i]:
            continue
        cand = np.asarray(tree.query_ball_point(pos[i], r=float(threshold)), dtype=np.int64)
        cand = cand[(cand > i) & ~taken[cand]]
        if len(cand):
            cand = cand[np.linalg.norm(pos[cand] - pos[i], axis=1) < threshold]
        taken[i] = True
        if len(cand) == 0:
            out.append(s)
            continue
        group = np.concatenate([[i], np.sort(cand)])
        taken[group] = True
        out.append(
            Splat(
                position=pos[group].mean(0),
                color=np.mean([splats[j].color for j in group], axis=0),
                covariance=s.covariance,
                opacity=float(np.mean([splats[j].opacity for j in group])),
                scale=s.scale,
            )
        )
    return out


# ============================== BUILDER ======================================


class ObjectGeometryBuilder:
    """Cluster -> ObjectRepresentation."""

    def __init__(self, cfg: GeometryCfg | None = None) -> None:
        self.cfg = cfg or GeometryCfg()
        self.rng = np.random.default_rng(self.cfg.seed)

    def build_mesh(self, cluster: Cluster, name: str) -> ObjectRepresentation:
        V, _ = voxel_downsample(cluster.points, self.cfg.voxel_size)
        T = triangulate(len(V), self.cfg.triangulation)
        N = vertex_normals(V, T)
        bmin = V.min(0) if len(V) else cluster.bounds_min
        bmax = V.max(0) if len(V) else cluster.bounds_max
        LOG.info(
            f"[MESH] {name}: {len(cluster)} -> {len(V)} verts, {len(T)} tris "
            f"voxel={self.cfg.voxel_size}"
        )
        return ObjectRepresentation(
            name=name,
            kind="mesh",
            centroid=cluster.centroid.copy(),
            bounds_min=bmin,
            bounds_max=bmax,
            color=cluster.average_color.copy(),
            points=V,
            triangles=T,
            normals=N,
        )

    def build_splats(self, cluster: Cluster) -> List[Splat]:
        V, _ = voxel_downsample(cluster.points, self.cfg.voxel_size)
        V = V[random_subsample(V, self.cfg.target_splat_count, self.rng)]
        var = isotropic_variances(
            V, cluster.points, self.cfg.covariance_radius, self.cfg.default_scale
        )
        color = cluster.average_color
        splats = [
            Splat(
                position=V[k],
                color=color.copy(),
                covariance=np.eye(3) * var[k],
                opacity=float(self.cfg.default_opacity),
                scale=float(self.cfg.default_scale),
            )
            for k in range(len(V))
        ]
        merged = merge_splats(splats, self.cfg.merge_threshold)
        LOG.info(f"[SPLAT] {len(V)} splats -> {len(merged)} after merge")
        return merged

    def build(
        self, cluster: Optional[Cluster], name: str, mode: Optional[str] = None
    ) -> Optional[ObjectRepresentation]:
        """
        ``mode`` defaults to the configured one. In splat mode with
        ``use_mesh_fallback`` the splats are computed and attached to the
        returned mesh representation.
        """
        if cluster is None or len(cluster) == 0:
            LOG.warning(f"[BUILD] {name}: empty cluster")
            return None
        mode = mode or self.cfg.mode
        if mode == "mesh":
            return self.build_mesh(cluster, name)
        if mode != "splats":
            raise ValueError(f"mode must be 'mesh' or 'splats', got {mode!r}")

        splats = self.build_splats(cluster)
        if self.cfg.use_mesh_fallback:
            rep = self.build_mesh(cluster, name)
            rep.splats = splats
            return rep

        P = np.array([s.position for s in splats]).reshape(-1, 3)
        return ObjectRepresentation(
            name=name,
            kind="splats",
            centroid=cluster.centroid.copy(),
            bounds_min=P.min(0) if len(P) else cluster.bounds_min,
            bounds_max=P.max(0) if len(P) else cluster.bounds_max,
            color=cluster.average_color.copy(),
            points=P,
            splats=splats,
        )
