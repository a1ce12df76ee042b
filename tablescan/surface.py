# tablescan/surface.py
from __future__ import annotations

from typing import Tuple

import numpy as np

from utils.logger import Logger

from .anchors import SurfaceAnchor
from .config import SurfaceFilterCfg

LOG = Logger.get_logger("surface")


class SurfaceFilter:
    """Keep points in a slab above an anchor's top face, inside its footprint."""

    def __init__(self, cfg: SurfaceFilterCfg | None = None) -> None:
        self.cfg = cfg or SurfaceFilterCfg()

    def mask(self, points: np.ndarray, anchor: SurfaceAnchor) -> np.ndarray:
        P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if len(P) == 0 or anchor is None or not anchor.has_volume:
            return np.zeros(len(P), dtype=bool)
        top = anchor.top_surface()
        h, foot = top.project(P)
        keep = (h >= self.cfg.min_height_above) & (h <= self.cfg.max_height_above)
        keep &= top.in_footprint(foot, self.cfg.margin)
        return keep

    def filter(
        self, points: np.ndarray, anchor: SurfaceAnchor
    ) -> Tuple[np.ndarray, np.ndarray]:
        """Return (kept points, mask over the input)."""
        P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
        if anchor is None or not anchor.has_volume:
            LOG.warning("[FILTER] target anchor has no volume bounds")
            return np.empty((0, 3)), np.zeros(len(P), dtype=bool)
        m = self.mask(P, anchor)
        kept = P[m]
        LOG.info(
            f"[FILTER] kept {len(kept)}/{len(P)} pts "
            f"h=[{self.cfg.min_height_above:.3f},{self.cfg.max_height_above:.3f}] "
            f"margin={self.cfg.margin:.3f}"
        )
        return kept, m
