# tablescan/capture.py
"""Throttled capture of views around the target while scanning."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from utils.config import CameraPose, WORLD_UP
from utils.error_tracker import ReadbackFailure
from utils.helpers import fmt_array
from utils.logger import Logger

from .anchors import SurfaceAnchor
from .config import CaptureCfg
from .coverage import ViewCoverageScheduler
from .sensor import DepthSource
from .types import CapturedView, Outcome, ScanSession
from .unproject import DepthUnprojector

LOG = Logger.get_logger("capture")


@dataclass(frozen=True)
class TickResult:
    """What one ``CaptureOrchestrator.tick`` did."""

    outcome: Outcome
    coverage: float = 0.0
    view_index: Optional[int] = None
    view: Optional[CapturedView] = None
    reason: str = ""


@dataclass(frozen=True)
class QualityCheck:
    ok: bool
    horizontal_distance: float
    view_angle_deg: float
    height_error: float
    reason: str = ""


class CaptureOrchestrator:
    """
    Drives the coverage scheduler with live poses and accumulates accepted
    views into a ScanSession.

    Coverage is updated on every tick; capture checks run at most every
    ``capture_interval`` seconds. A quality rejection, a missing frame or
    a failed readback never consumes the viewpoint slot.
    """

    def __init__(
        self,
        scheduler: ViewCoverageScheduler,
        unprojector: DepthUnprojector,
        cfg: CaptureCfg | None = None,
    ) -> None:
        self.cfg = cfg or CaptureCfg()
        self.scheduler = scheduler
        self.unprojector = unprojector
        self.session: Optional[ScanSession] = None
        self._capturing = False
        self._since_check = 0.0

    @property
    def is_capturing(self) -> bool:
        return self._capturing

    # ----------------------------- lifecycle ---------------------------------

    def start_capture(self, anchor: Optional[SurfaceAnchor]) -> bool:
        """Open a fresh session on ``anchor`` and start scanning."""
        if self._capturing:
            LOG.warning("[SESSION] active session replaced; discarding its views")
        if self.session is not None:
            self.reset()
        if not self.scheduler.initialize(anchor):
            LOG.error("[SESSION] invalid table anchor")
            return False
        self.scheduler.start_scanning()
        self.session = ScanSession(anchor=anchor, scan_bounds=anchor.world_bounds())
        self._capturing = True
        self._since_check = self.cfg.capture_interval  # check on the first tick
        LOG.info(f"[SESSION] started on {anchor.describe()}")
        return True

    def stop_capture(self) -> Optional[ScanSession]:
        """Stop capturing; the session stays available for processing."""
        self._capturing = False
        self.scheduler.stop_scanning()
        n = len(self.session.views) if self.session is not None else 0
        LOG.info(f"[SESSION] stopped, views={n}")
        return self.session

    def reset(self) -> None:
        self._capturing = False
        self._since_check = 0.0
        if self.session is not None:
            self.session.arena.clear()
        self.session = None
        self.scheduler.reset()
        self.unprojector.reset()

    # ----------------------------- quality -----------------------------------

    def validate_view_quality(self, pose: CameraPose) -> QualityCheck:
        """Distance, viewing angle and eye height gates for one pose."""
        top = self.scheduler.top_surface
        if top is None:
            return QualityCheck(False, 0.0, 0.0, 0.0, "no target")

        p = np.asarray(pose.position, dtype=float)
        to_center = top.center - p
        to_center -= np.dot(to_center, WORLD_UP) * WORLD_UP
        dist = float(np.linalg.norm(to_center))

        cosang = float(np.clip(np.dot(-pose.forward, top.normal), -1.0, 1.0))
        angle = float(np.degrees(np.arccos(cosang)))

        expected = top.height + self.cfg.expected_eye_height
        herr = abs(float(np.dot(p, WORLD_UP)) - expected)

        reason = ""
        if not self.cfg.min_distance <= dist <= self.cfg.max_distance:
            reason = f"distance {dist:.2f}"
        elif angle > self.cfg.max_view_angle_deg:
            reason = f"angle {angle:.1f}"
        elif herr > self.cfg.eye_height_tolerance:
            reason = f"height error {herr:.2f}"
        return QualityCheck(not reason, dist, angle, herr, reason)

    # ----------------------------- per tick ----------------------------------

    def tick(
        self,
        dt: float,
        pose: CameraPose,
        source: DepthSource,
        color_image: object = None,
    ) -> TickResult:
        """Advance by ``dt`` seconds at ``pose``; capture at most one view."""
        if not self._capturing or not self.scheduler.is_scanning or self.session is None:
            cov = self.session.coverage if self.session is not None else 0.0
            return TickResult(Outcome.SKIPPED, cov, reason="not scanning")

        cov = self.scheduler.update_coverage(pose.position, pose.forward)
        cov = self.session.update_coverage(cov)

        self._since_check += max(0.0, float(dt))
        if self._since_check < self.cfg.capture_interval:
            return TickResult(Outcome.SKIPPED, cov, reason="throttled")
        self._since_check = 0.0

        idx = self.scheduler.should_capture_view(pose.position)
        if idx is None:
            return TickResult(Outcome.SKIPPED, cov, reason="no viewpoint in range")

        q = self.validate_view_quality(pose)
        if not q.ok:
            LOG.debug(f"[QUALITY] view {idx} rejected: {q.reason}")
            return TickResult(Outcome.REJECTED, cov, idx, reason=q.reason)

        return self._capture(idx, pose, source, color_image, cov)

    def _capture(
        self,
        idx: int,
        pose: CameraPose,
        source: DepthSource,
        color_image: object,
        cov: float,
    ) -> TickResult:
        try:
            frame = source.fetch()
        except ReadbackFailure as e:
            LOG.warning(f"[READBACK] view {idx} skipped: {e}")
            return TickResult(Outcome.SKIPPED, cov, idx, reason="readback failure")
        if frame is None:
            if Logger.should_emit("capture.no_frame"):
                LOG.warning("[SENSOR] no depth frame this tick")
            return TickResult(Outcome.NOT_READY, cov, idx, reason="no frame")

        res = self.unprojector.process(frame, eye_position=pose.position)
        if res.outcome == Outcome.NOT_READY:
            return TickResult(Outcome.NOT_READY, cov, idx, reason="matrix not ready")

        view = self.session.add_view(
            index=idx,
            pose=pose,
            points=res.points,
            width=frame.width,
            height=frame.height,
            timestamp=frame.timestamp,
            color_image=color_image,
        )
        self.scheduler.mark_view_captured(idx)
        cov = self.session.update_coverage(self.scheduler.coverage)
        LOG.info(
            f"[VIEW {idx}] pts={view.num_points} at {fmt_array(pose.position)} "
            f"total={self.session.total_points} coverage={cov:.2f}"
        )
        return TickResult(res.outcome, cov, idx, view)
