# tablescan/cluster.py
"""
DBSCAN object segmentation of the filtered, merged cloud.

Semantics (both neighbour backends):
  - the eps-neighbourhood of a point excludes the point itself (|q - p| <= eps)
  - a point with fewer than ``min_points`` neighbours is noise for now; it
    may still join a later cluster as a border point
  - clusters expand breadth-first through core points only
  - a formed cluster is kept if it has >= ``min_points`` members and its
    AABB diagonal lies in [min_object_size, max_object_size]; otherwise its
    points are dropped as noise

``algorithm="kmeans"`` swaps the density search for sklearn k-means with
k = clamp(n // min_points, 1, max_clusters); the same member-count and size
gates apply to its partitions.
"""

from __future__ import annotations

from collections import deque
from typing import Iterator, List, Optional

import numpy as np
from scipy.spatial import cKDTree
from sklearn.cluster import KMeans

from utils.logger import Logger

from .config import ClusterCfg
from .types import Cluster

LOG = Logger.get_logger("cluster")


# ============================== NEIGHBOUR SEARCH =============================


class BruteNeighbors:
    """O(n) distance scan per query."""

    def __init__(self, points: np.ndarray, eps: float) -> None:
        self.P = points
        self.eps2 = float(eps) ** 2

    def __call__(self, i: int) -> np.ndarray:
        d2 = np.sum((self.P - self.P[i]) ** 2, axis=1)
        idx = np.flatnonzero(d2 <= self.eps2)
        return idx[idx != i]


class KDTreeNeighbors:
    """Ball queries against a scipy k-d tree; same result set as brute."""

    def __init__(self, points: np.ndarray, eps: float) -> None:
        self.P = points
        self.eps = float(eps)
        self.tree = cKDTree(points)

    def __call__(self, i: int) -> np.ndarray:
        idx = np.asarray(self.tree.query_ball_point(self.P[i], r=self.eps), dtype=np.int64)
        return idx[idx != i]


def make_neighbors(points: np.ndarray, eps: float, backend: str):
    if backend == "brute":
        return BruteNeighbors(points, eps)
    if backend == "kdtree":
        return KDTreeNeighbors(points, eps)
    raise ValueError(f"backend must be 'brute' or 'kdtree', got {backend!r}")


# ============================== CLUSTERER ====================================


class DensityClusterer:
    """DBSCAN (or k-means) + object size gate."""

    def __init__(self, cfg: ClusterCfg | None = None) -> None:
        self.cfg = cfg or ClusterCfg()
        if self.cfg.eps <= 0:
            raise ValueError(f"eps must be positive, got {self.cfg.eps}")
        if self.cfg.algorithm not in ("dbscan", "kmeans"):
            raise ValueError(
                f"algorithm must be 'dbscan' or 'kmeans', got {self.cfg.algorithm!r}"
            )

    def is_valid_object(self, cluster: Cluster) -> bool:
        d = cluster.diagonal
        return self.cfg.min_object_size <= d <= self.cfg.max_object_size

    def iter_clusters(
        self,
        points: np.ndarray,
        colors: Optional[np.ndarray] = None,
    ) -> Iterator[Cluster]:
        """Yield accepted clusters as they are formed."""
        tag = self.cfg.algorithm.upper()
        P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        n = len(P)
        if n == 0:
            LOG.warning(f"[{tag}] empty point cloud")
            return
        C = None
        if colors is not None:
            C = np.asarray(colors, dtype=np.float64)
            if len(C) != n:
                LOG.warning(f"[{tag}] {len(C)} colors for {n} points; ignoring colors")
                C = None

        min_pts = int(self.cfg.min_points)
        if self.cfg.algorithm == "kmeans":
            groups = self._kmeans_groups(P)
        else:
            groups = self._dbscan_groups(P, min_pts)

        formed = accepted = 0
        for members in groups:
            formed += 1
            if len(members) < min_pts:
                continue
            cluster = Cluster(P[members], None if C is None else C[members])
            if not self.is_valid_object(cluster):
                LOG.debug(
                    f"[{tag}] cluster n={len(cluster)} diag={cluster.diagonal:.3f} "
                    "rejected by size"
                )
                continue
            accepted += 1
            LOG.debug(f"[{tag}] cluster {accepted}: n={len(cluster)} diag={cluster.diagonal:.3f}")
            yield cluster

        if self.cfg.algorithm == "kmeans":
            params = f"k={self.kmeans_k(n)}"
        else:
            params = f"eps={self.cfg.eps} backend={self.cfg.backend}"
        LOG.info(
            f"[{tag}] n={n} minPts={min_pts} {params}: formed={formed} accepted={accepted}"
        )

    # ----- DBSCAN -----

    def _dbscan_groups(self, P: np.ndarray, min_pts: int) -> Iterator[List[int]]:
        n = len(P)
        neighbors = make_neighbors(P, self.cfg.eps, self.cfg.backend)
        visited = np.zeros(n, dtype=bool)
        clustered = np.zeros(n, dtype=bool)
        for i in range(n):
            if visited[i]:
                continue
            visited[i] = True
            nb = neighbors(i)
            if len(nb) < min_pts:
                continue  # noise (may become a border point later)
            yield self._expand(i, nb, neighbors, visited, clustered, min_pts)

    @staticmethod
    def _expand(
        seed: int,
        seed_nb: np.ndarray,
        neighbors,
        visited: np.ndarray,
        clustered: np.ndarray,
        min_pts: int,
    ) -> List[int]:
        members = [seed]
        clustered[seed] = True
        queued = np.zeros(len(visited), dtype=bool)
        queued[seed_nb] = True
        queue = deque(int(j) for j in seed_nb)
        while queue:
            j = queue.popleft()
            if not visited[j]:
                visited[j] = True
                nb = neighbors(j)
                if len(nb) >= min_pts:
                    fresh = nb[~queued[nb]]
                    queued[fresh] = True
                    queue.extend(int(k) for k in fresh)
            if not clustered[j]:
                clustered[j] = True
                members.append(j)
        return members

    # ----- K-MEANS -----

    def kmeans_k(self, n: int) -> int:
        """Cluster count: one per ``min_points`` members, capped at ``max_clusters``."""
        k = n // max(1, int(self.cfg.min_points))
        return int(np.clip(k, 1, max(1, int(self.cfg.max_clusters))))

    def _kmeans_groups(self, P: np.ndarray) -> Iterator[List[int]]:
        """Every point goes to its nearest centroid; there is no noise label."""
        k = self.kmeans_k(len(P))
        km = KMeans(
            n_clusters=k,
            init="k-means++",
            n_init=1,
            max_iter=max(1, int(self.cfg.kmeans_iterations)),
            random_state=self.cfg.seed,
        ).fit(P)
        LOG.debug(f"[KMEANS] k={k} iters={km.n_iter_} inertia={km.inertia_:.4f}")
        for j in range(k):
            members = np.flatnonzero(km.labels_ == j)
            if len(members):
                yield members.tolist()

    def segment(
        self,
        points: np.ndarray,
        colors: Optional[np.ndarray] = None,
    ) -> List[Cluster]:
        return list(self.iter_clusters(points, colors))
