# tablescan/coverage.py
"""Recommended viewpoints + coverage grid that decide when scanning is done."""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Set

import numpy as np

from utils.config import TABLE_LABEL, WORLD_UP
from utils.helpers import fmt_array
from utils.logger import Logger

from .anchors import SurfaceAnchor, TopSurface, is_valid_target
from .config import CoverageCfg

LOG = Logger.get_logger("coverage")


class SchedulerState(str, Enum):
    IDLE = "idle"
    TARGET_SELECTED = "target_selected"
    SCANNING = "scanning"
    COMPLETE = "complete"


def horizontal_basis(up: np.ndarray = WORLD_UP) -> tuple[np.ndarray, np.ndarray]:
    """Two unit vectors spanning the plane orthogonal to ``up``."""
    up = up / (np.linalg.norm(up) + 1e-12)
    ref = np.array([1.0, 0.0, 0.0])
    if abs(float(np.dot(ref, up))) > 0.9:
        ref = np.array([0.0, 0.0, 1.0])
    e1 = ref - np.dot(ref, up) * up
    e1 /= np.linalg.norm(e1)
    e2 = np.cross(e1, up)
    return e1, e2


class ViewCoverageScheduler:
    """
    State machine IDLE -> TARGET_SELECTED -> SCANNING -> COMPLETE.

    Completion needs BOTH the target view count and the coverage threshold;
    captured views alone do not guarantee that the footprint was observed.
    """

    def __init__(self, cfg: CoverageCfg | None = None, label: str = TABLE_LABEL) -> None:
        self.cfg = cfg or CoverageCfg()
        self.label = label
        self.state = SchedulerState.IDLE
        self._anchor: Optional[SurfaceAnchor] = None
        self._top: Optional[TopSurface] = None
        self._positions: np.ndarray = np.empty((0, 3))
        self._captured: Set[int] = set()
        self._cells: np.ndarray = np.empty((0, 3))
        self._grid: np.ndarray = np.zeros(0, dtype=bool)
        self._coverage = 0.0
        self.radius = 0.0

    # ----------------------------- properties --------------------------------

    @property
    def anchor(self) -> Optional[SurfaceAnchor]:
        return self._anchor

    @property
    def top_surface(self) -> Optional[TopSurface]:
        return self._top

    @property
    def coverage(self) -> float:
        return self._coverage

    @property
    def captured_count(self) -> int:
        return len(self._captured)

    @property
    def captured_indices(self) -> List[int]:
        return sorted(self._captured)

    @property
    def target_view_count(self) -> int:
        return int(self.cfg.target_view_count)

    @property
    def recommended_positions(self) -> np.ndarray:
        return self._positions.copy()

    @property
    def coverage_grid(self) -> np.ndarray:
        """(M, M) bool copy, first index along the first footprint axis."""
        m = max(1, int(self.cfg.grid_resolution))
        return self._grid.reshape(m, m).copy() if self._grid.size else self._grid.copy()

    @property
    def is_scanning(self) -> bool:
        return self.state == SchedulerState.SCANNING

    # ----------------------------- lifecycle ---------------------------------

    def initialize(self, anchor: Optional[SurfaceAnchor]) -> bool:
        """Select ``anchor``; False (and no state change) if it is not a valid table."""
        if not is_valid_target(anchor, self.label):
            LOG.warning(f"[INIT] invalid {self.label} anchor: {getattr(anchor, 'uuid', None)}")
            return False

        self._reset_tracking()
        self._anchor = anchor
        self._top = anchor.top_surface()
        self._positions = self._compute_viewpoints(anchor, self._top)
        self._cells = self._top.grid(self.cfg.grid_resolution)
        self._grid = np.zeros(len(self._cells), dtype=bool)
        self.state = SchedulerState.TARGET_SELECTED
        LOG.info(
            f"[INIT] {anchor.uuid}: {len(self._positions)} viewpoints "
            f"r={self.radius:.3f} grid={self.cfg.grid_resolution}^2"
        )
        return True

    def start_scanning(self) -> bool:
        if self.state not in (SchedulerState.TARGET_SELECTED, SchedulerState.SCANNING):
            LOG.warning(f"[SCAN] cannot start from state {self.state.value}")
            return False
        self.state = SchedulerState.SCANNING
        LOG.info("[SCAN] started")
        return True

    def stop_scanning(self) -> None:
        """Pause: SCANNING -> TARGET_SELECTED, tracked progress is kept."""
        if self.state == SchedulerState.SCANNING:
            self.state = SchedulerState.TARGET_SELECTED
            LOG.info("[SCAN] stopped")

    def reset(self) -> None:
        self._reset_tracking()
        self._anchor = None
        self._top = None
        self._positions = np.empty((0, 3))
        self._cells = np.empty((0, 3))
        self._grid = np.zeros(0, dtype=bool)
        self.radius = 0.0
        self.state = SchedulerState.IDLE

    def _reset_tracking(self) -> None:
        self._captured.clear()
        self._coverage = 0.0
        if self._grid.size:
            self._grid[:] = False

    # ----------------------------- viewpoints --------------------------------

    def _compute_viewpoints(self, anchor: SurfaceAnchor, top: TopSurface) -> np.ndarray:
        fx, fz = top.footprint_size
        r = max(fx, fz) * self.cfg.radius_scale + self.cfg.radius_pad
        r = float(np.clip(r, self.cfg.min_view_distance, self.cfg.max_view_distance))
        self.radius = r

        n = max(1, int(self.cfg.target_view_count))
        center = anchor.world_center
        center_h = center - np.dot(center, WORLD_UP) * WORLD_UP
        height = top.height + self.cfg.eye_height_offset
        e1, e2 = horizontal_basis(WORLD_UP)
        ang = np.radians(360.0 / n * np.arange(n))
        P = (
            center_h[None, :]
            + r * (np.cos(ang)[:, None] * e1[None, :] + np.sin(ang)[:, None] * e2[None, :])
            + height * WORLD_UP[None, :]
        )
        return P

    def nearest_viewpoint(self, position: np.ndarray) -> Optional[int]:
        if len(self._positions) == 0:
            return None
        d = np.linalg.norm(self._positions - np.asarray(position, float), axis=1)
        return int(np.argmin(d))

    def next_recommended_position(self, position: np.ndarray) -> Optional[np.ndarray]:
        """Nearest viewpoint not yet captured (guidance hint)."""
        left = [i for i in range(len(self._positions)) if i not in self._captured]
        if not left:
            return None
        d = np.linalg.norm(self._positions[left] - np.asarray(position, float), axis=1)
        return self._positions[left[int(np.argmin(d))]].copy()

    def should_capture_view(self, position: np.ndarray) -> Optional[int]:
        """Index of the nearest uncaptured viewpoint within capture radius."""
        idx = self.nearest_viewpoint(position)
        if idx is None or idx in self._captured:
            return None
        d = float(np.linalg.norm(self._positions[idx] - np.asarray(position, float)))
        return idx if d < self.cfg.capture_radius else None

    def mark_view_captured(self, index: int) -> None:
        if not 0 <= int(index) < len(self._positions):
            LOG.warning(f"[VIEW] index {index} out of range")
            return
        self._captured.add(int(index))
        LOG.info(f"[VIEW] {int(index) + 1}/{self.target_view_count} captured")
        self._check_complete()

    # ----------------------------- coverage ----------------------------------

    def update_coverage(self, position: np.ndarray, view_direction: np.ndarray) -> float:
        """Mark cells seen from ``position`` looking along ``view_direction``."""
        if self.state not in (SchedulerState.SCANNING, SchedulerState.COMPLETE):
            return self._coverage
        if len(self._cells) == 0:
            return self._coverage

        p = np.asarray(position, dtype=float).reshape(3)
        vd = np.asarray(view_direction, dtype=float).reshape(3)
        vn = np.linalg.norm(vd)
        if vn < 1e-12:
            return self._coverage
        vd = vd / vn

        to_cell = self._cells - p
        dist = np.linalg.norm(to_cell, axis=1)
        with np.errstate(invalid="ignore", divide="ignore"):
            cosang = (to_cell @ vd) / dist
        seen = (
            (dist > 0)
            & (cosang > self.cfg.coverage_cos_threshold)
            & (dist >= self.cfg.min_view_distance)
            & (dist <= self.cfg.max_view_distance)
        )
        self._grid |= seen
        self._coverage = float(self._grid.sum()) / float(len(self._grid))
        LOG.debug(f"[COV] +{int(seen.sum())} cells -> {self._coverage:.3f} at {fmt_array(p)}")
        self._check_complete()
        return self._coverage

    def is_scan_complete(self) -> bool:
        return (
            self.captured_count >= self.target_view_count
            and self._coverage >= self.cfg.min_coverage
        )

    def _check_complete(self) -> None:
        if self.state == SchedulerState.SCANNING and self.is_scan_complete():
            self.state = SchedulerState.COMPLETE
            LOG.info(
                f"[SCAN] complete: views={self.captured_count} coverage={self._coverage:.2f}"
            )
