# tablescan/workflow.py
"""
Top-level scan state machine.

    IDLE -> TABLE_SELECTION -> SCANNING -> PROCESSING -> COMPLETE

Everything runs on the caller's tick. Processing is a generator advanced one
stage per tick (merge, filter, one cluster, one object), so a render loop is
never blocked for a whole segmentation run. ``reset()`` closes the generator
and drops partial results.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Dict, Generator, List, Optional

import numpy as np

from utils.config import CameraPose
from utils.logger import Logger

from .anchors import SceneQuery, SurfaceAnchor, closest_anchor, is_valid_target
from .capture import CaptureOrchestrator, TickResult
from .cluster import DensityClusterer
from .config import ScanCfg
from .coverage import SchedulerState, ViewCoverageScheduler
from .geometry import ObjectGeometryBuilder, voxel_downsample
from .sensor import DepthSource
from .surface import SurfaceFilter
from .types import Cluster, ObjectRepresentation, Outcome, ScanSession
from .unproject import DepthUnprojector

LOG = Logger.get_logger("workflow")


class WorkflowState(str, Enum):
    IDLE = "idle"
    TABLE_SELECTION = "table_selection"
    SCANNING = "scanning"
    PROCESSING = "processing"
    COMPLETE = "complete"


class ScanWorkflow:
    """Sequences capture, filtering, clustering and geometry building."""

    def __init__(self, scene: SceneQuery, cfg: ScanCfg | None = None) -> None:
        self.cfg = cfg or ScanCfg()
        self.scene = scene
        self.unprojector = DepthUnprojector(self.cfg.unproject)
        self.scheduler = ViewCoverageScheduler(self.cfg.coverage, self.cfg.workflow.table_label)
        self.orchestrator = CaptureOrchestrator(self.scheduler, self.unprojector, self.cfg.capture)
        self.surface = SurfaceFilter(self.cfg.surface)
        self.clusterer = DensityClusterer(self.cfg.cluster)
        self.builder = ObjectGeometryBuilder(self.cfg.geometry)

        self._state = WorkflowState.IDLE
        self._selected: Optional[SurfaceAnchor] = None
        self._last_pose: Optional[CameraPose] = None
        self._processing: Optional[Generator[str, None, None]] = None
        self._pending: List[ObjectRepresentation] = []
        self._objects: List[ObjectRepresentation] = []
        self._outcome: Optional[Outcome] = None
        self.last_tick: Optional[TickResult] = None
        self.stage = ""

    # ----------------------------- properties --------------------------------

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def selected_table(self) -> Optional[SurfaceAnchor]:
        return self._selected

    @property
    def session(self) -> Optional[ScanSession]:
        return self.orchestrator.session

    @property
    def objects(self) -> List[ObjectRepresentation]:
        return list(self._objects)

    @property
    def outcome(self) -> Optional[Outcome]:
        return self._outcome

    @property
    def coverage(self) -> float:
        s = self.session
        return s.coverage if s is not None else 0.0

    def _set_state(self, new: WorkflowState) -> None:
        if new == self._state:
            return
        LOG.info(f"[STATE] {self._state.value} -> {new.value}")
        self._state = new

    # ----------------------------- input entry points ------------------------

    def start_scanning(self) -> Outcome:
        """Begin table selection and, once a table is known, capture."""
        if self._state in (WorkflowState.SCANNING, WorkflowState.PROCESSING):
            LOG.warning(f"[INPUT] start ignored in state {self._state.value}")
            return Outcome.REJECTED
        if self._state == WorkflowState.COMPLETE:
            self.reset()

        self._set_state(WorkflowState.TABLE_SELECTION)
        if self._selected is None:
            res = self._auto_select()
            if res != Outcome.SUCCESS:
                return res
        return self._begin_capture()

    def select_table(self, anchor: Optional[SurfaceAnchor]) -> Outcome:
        """Choose the target explicitly; capture begins on the next tick."""
        if not is_valid_target(anchor, self.cfg.workflow.table_label):
            LOG.error(f"[SELECT] invalid table: {getattr(anchor, 'uuid', None)}")
            return Outcome.FAILED_PRECONDITION
        if self._state not in (WorkflowState.IDLE, WorkflowState.TABLE_SELECTION):
            LOG.warning(f"[SELECT] ignored in state {self._state.value}")
            return Outcome.REJECTED
        self._selected = anchor
        LOG.info(f"[SELECT] {anchor.describe()}")
        self._set_state(WorkflowState.TABLE_SELECTION)
        return Outcome.SUCCESS

    def stop_scanning(self) -> Outcome:
        """SCANNING -> PROCESSING."""
        if self._state != WorkflowState.SCANNING:
            LOG.warning(f"[INPUT] stop ignored in state {self._state.value}")
            return Outcome.REJECTED
        session = self.orchestrator.stop_capture()
        self._pending = []
        self._outcome = None
        self._processing = self._process(session)
        self._set_state(WorkflowState.PROCESSING)
        return Outcome.SUCCESS

    def reset(self) -> None:
        """Cancel everything in flight and return to IDLE."""
        if self._processing is not None:
            self._processing.close()
            self._processing = None
        self.orchestrator.reset()
        self._selected = None
        self._pending = []
        self._objects = []
        self._outcome = None
        self.stage = ""
        self.last_tick = None
        self._set_state(WorkflowState.IDLE)

    def handle_event(self, event: str) -> Optional[Outcome]:
        """Dispatch a queued input event ("start", "stop", "reset")."""
        handlers: Dict[str, Callable[[], Optional[Outcome]]] = {
            "start": self.start_scanning,
            "stop": self.stop_scanning,
            "reset": self.reset,
        }
        fn = handlers.get(event)
        if fn is None:
            LOG.warning(f"[INPUT] unknown event {event!r}")
            return None
        return fn()

    # ----------------------------- table selection ---------------------------

    def _auto_select(self) -> Outcome:
        label = self.cfg.workflow.table_label
        tables = [a for a in self.scene.list_anchors(label) if is_valid_target(a, label)]
        if not tables:
            if Logger.should_emit("workflow.no_anchor"):
                LOG.warning(f"[NO_ANCHOR] no {label} anchors yet; waiting")
            return Outcome.FAILED_PRECONDITION
        if not self.cfg.workflow.auto_select_table:
            if Logger.should_emit("workflow.await_select"):
                LOG.info(f"[SELECT] {len(tables)} table(s) found; waiting for a selection")
            return Outcome.SKIPPED
        pos = None if self._last_pose is None else self._last_pose.position
        return self.select_table(closest_anchor(tables, pos))

    def _begin_capture(self) -> Outcome:
        if not self.orchestrator.start_capture(self._selected):
            self._selected = None
            return Outcome.FAILED_PRECONDITION
        self._set_state(WorkflowState.SCANNING)
        return Outcome.SUCCESS

    # ----------------------------- per tick ----------------------------------

    def tick(
        self,
        dt: float,
        pose: Optional[CameraPose],
        source: DepthSource,
        color_image: object = None,
    ) -> Outcome:
        """Advance the active state by one tick of ``dt`` seconds."""
        if pose is not None:
            self._last_pose = pose

        if self._state == WorkflowState.TABLE_SELECTION:
            if self._selected is None and self._auto_select() != Outcome.SUCCESS:
                return Outcome.NOT_READY
            return self._begin_capture()

        if self._state == WorkflowState.SCANNING:
            if pose is None:
                return Outcome.NOT_READY
            self.last_tick = self.orchestrator.tick(dt, pose, source, color_image)
            if (
                self.cfg.workflow.auto_stop_on_complete
                and self.scheduler.state == SchedulerState.COMPLETE
            ):
                LOG.info("[SCAN] coverage target reached; processing")
                self.stop_scanning()
            return self.last_tick.outcome

        if self._state == WorkflowState.PROCESSING:
            self._advance()
            return Outcome.SUCCESS

        return Outcome.SKIPPED

    def run_processing(self) -> List[ObjectRepresentation]:
        """Drain the remaining processing stages at once (offline use)."""
        while self._state == WorkflowState.PROCESSING:
            self._advance()
        return self.objects

    def _advance(self) -> None:
        if self._processing is None:
            self._finish()
            return
        try:
            self.stage = next(self._processing)
        except StopIteration:
            self._processing = None
            self._finish()

    def _finish(self) -> None:
        self._objects = list(self._pending)
        self._pending = []
        if self._outcome is None:
            self._outcome = Outcome.SUCCESS if self._objects else Outcome.EMPTY
        LOG.info(
            f"[DONE] objects={len(self._objects)} outcome={self._outcome.value}"
        )
        self._set_state(WorkflowState.COMPLETE)

    # ----------------------------- processing --------------------------------

    def _process(self, session: Optional[ScanSession]) -> Generator[str, None, None]:
        if session is None or not session.views:
            LOG.warning("[PROC] no views captured")
            self._outcome = Outcome.EMPTY
            return

        points = np.array(session.merged_points())
        LOG.info(f"[PROC] {len(session.views)} views, {len(points)} points")
        if self.cfg.workflow.merge_voxel > 0 and len(points):
            points, _ = voxel_downsample(points, self.cfg.workflow.merge_voxel)
            LOG.info(f"[PROC] merged cloud downsampled -> {len(points)}")
        if len(points) == 0:
            self._outcome = Outcome.EMPTY
            return
        yield "merge"

        filtered, _ = self.surface.filter(points, session.anchor)
        if len(filtered) == 0:
            self._outcome = Outcome.EMPTY
            return
        yield "filter"

        clusters: List[Cluster] = []
        for cluster in self.clusterer.iter_clusters(filtered):
            clusters.append(cluster)
            yield "cluster"
        if not clusters:
            self._outcome = Outcome.EMPTY
            return

        prefix = self.cfg.workflow.object_name_prefix
        for i, cluster in enumerate(clusters):
            rep = self.builder.build(cluster, f"{prefix}_{i}")
            if rep is not None:
                self._pending.append(rep)
            yield "object"
