from __future__ import annotations

import numpy as np
import pytest

from tablescan.capture import CaptureOrchestrator
from tablescan.config import CaptureCfg, UnprojectCfg
from tablescan.coverage import ViewCoverageScheduler
from tablescan.sensor import DepthSource, SensorSnapshot, StaticSource, SyncReadback
from tablescan.synthetic import look_at_pose
from tablescan.types import DepthFrame, Outcome
from tablescan.unproject import DepthUnprojector
from utils.error_tracker import ReadbackFailure


class FailingSource(DepthSource):
    def fetch(self):
        raise ReadbackFailure("gpu copy failed")


@pytest.fixture
def orch(small_scene) -> CaptureOrchestrator:
    o = CaptureOrchestrator(
        ViewCoverageScheduler(),
        DepthUnprojector(UnprojectCfg(stride=2)),
        CaptureCfg(capture_interval=0.5),
    )
    assert o.start_capture(small_scene.anchor)
    return o


def _viewpoint_pose(orch: CaptureOrchestrator, k: int = 0):
    p = orch.scheduler.recommended_positions[k]
    return look_at_pose(p, orch.scheduler.top_surface.center)


class TestCaptureTick:
    def test_capture_at_viewpoint(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        res = orch.tick(0.0, pose, StaticSource(small_scene.frame(pose)))
        assert res.outcome == Outcome.SUCCESS
        assert res.view_index == 0
        assert res.view is not None and res.view.num_points > 0
        assert orch.scheduler.captured_count == 1
        assert len(orch.session.views) == 1
        assert orch.session.total_points == res.view.num_points
        assert res.coverage > 0.0

    def test_throttled_between_checks(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        src = StaticSource(small_scene.frame(pose))
        orch.tick(0.0, pose, src)
        pose1 = _viewpoint_pose(orch, 1)
        res = orch.tick(0.1, pose1, StaticSource(small_scene.frame(pose1)))
        assert res.outcome == Outcome.SKIPPED
        assert res.reason == "throttled"
        res = orch.tick(0.5, pose1, StaticSource(small_scene.frame(pose1)))
        assert res.outcome == Outcome.SUCCESS
        assert res.view_index == 1

    def test_no_viewpoint_nearby(self, orch, small_scene):
        pose = look_at_pose((0.0, 2.5, 0.0), (0.0, 0.75, 0.01))
        res = orch.tick(0.0, pose, StaticSource(small_scene.frame(pose)))
        assert res.outcome == Outcome.SKIPPED
        assert res.view_index is None

    def test_captured_slot_not_recaptured(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 2)
        src = StaticSource(small_scene.frame(pose))
        assert orch.tick(0.0, pose, src).outcome == Outcome.SUCCESS
        assert orch.tick(1.0, pose, src).outcome == Outcome.SKIPPED
        assert len(orch.session.views) == 1

    def test_coverage_grows_while_throttled(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        orch.tick(0.0, pose, StaticSource(None))
        before = orch.session.coverage
        pose4 = _viewpoint_pose(orch, 4)
        res = orch.tick(0.01, pose4, StaticSource(None))
        assert res.reason == "throttled"
        assert res.coverage >= before
        assert orch.session.coverage == res.coverage


class TestRejections:
    def test_poor_view_angle_keeps_slot(self, orch, small_scene):
        p = orch.scheduler.recommended_positions[0]
        c = orch.scheduler.top_surface.center
        level_target = np.array([c[0], p[1], c[2]])
        pose = look_at_pose(p, level_target)
        res = orch.tick(0.0, pose, StaticSource(small_scene.frame(pose)))
        assert res.outcome == Outcome.REJECTED
        assert res.view_index == 0
        assert orch.scheduler.captured_count == 0
        assert not orch.session.views

    def test_quality_gates(self, orch):
        q = orch.validate_view_quality(_viewpoint_pose(orch, 0))
        assert q.ok
        assert q.horizontal_distance == pytest.approx(1.0)
        assert q.height_error == pytest.approx(0.0, abs=1e-9)
        assert q.view_angle_deg < 75.0

        too_high = look_at_pose((1.0, 2.5, 0.0), (0.0, 0.75, 0.0))
        q = orch.validate_view_quality(too_high)
        assert not q.ok

        too_close = look_at_pose((0.1, 1.25, 0.0), (0.0, 0.75, 0.0))
        assert not orch.validate_view_quality(too_close).ok

    def test_no_frame_is_not_ready(self, orch):
        pose = _viewpoint_pose(orch, 0)
        res = orch.tick(0.0, pose, StaticSource(None))
        assert res.outcome == Outcome.NOT_READY
        assert orch.scheduler.captured_count == 0

    def test_readback_failure_skips(self, orch):
        pose = _viewpoint_pose(orch, 0)
        res = orch.tick(0.0, pose, FailingSource())
        assert res.outcome == Outcome.SKIPPED
        assert res.reason == "readback failure"
        assert not orch.session.views
        assert orch.scheduler.captured_count == 0

    def test_identity_matrix_is_not_ready(self, orch):
        pose = _viewpoint_pose(orch, 0)
        frame = DepthFrame(depth=np.full((64, 64), 0.9, np.float32), inv_view_proj=(np.eye(4),))
        res = orch.tick(0.0, pose, StaticSource(frame))
        assert res.outcome == Outcome.NOT_READY
        assert orch.scheduler.captured_count == 0

    def test_empty_frame_consumes_slot(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        good = small_scene.frame(pose)
        blank = DepthFrame(depth=np.ones((64, 64), np.float32), inv_view_proj=good.inv_view_proj)
        res = orch.tick(0.0, pose, StaticSource(blank))
        assert res.outcome == Outcome.EMPTY
        assert orch.scheduler.captured_count == 1
        assert res.view.num_points == 0


class TestLifecycle:
    def test_not_scanning_skips(self, small_scene):
        o = CaptureOrchestrator(ViewCoverageScheduler(), DepthUnprojector())
        pose = look_at_pose((1.0, 1.25, 0.0), (0.0, 0.75, 0.0))
        res = o.tick(0.5, pose, StaticSource(small_scene.frame(pose)))
        assert res.outcome == Outcome.SKIPPED
        assert res.reason == "not scanning"

    def test_invalid_anchor(self):
        o = CaptureOrchestrator(ViewCoverageScheduler(), DepthUnprojector())
        assert not o.start_capture(None)
        assert o.session is None
        assert not o.is_capturing

    def test_stop_keeps_session_reset_drops_it(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        orch.tick(0.0, pose, StaticSource(small_scene.frame(pose)))
        session = orch.stop_capture()
        assert session is orch.session
        assert len(session.views) == 1
        res = orch.tick(1.0, pose, StaticSource(small_scene.frame(pose)))
        assert res.reason == "not scanning"
        orch.reset()
        assert orch.session is None
        assert orch.scheduler.captured_count == 0

    def test_restart_replaces_session(self, orch, small_scene):
        pose = _viewpoint_pose(orch, 0)
        orch.tick(0.0, pose, StaticSource(small_scene.frame(pose)))
        first = orch.session
        assert orch.start_capture(small_scene.anchor)
        assert orch.session is not first
        assert not orch.session.views
        assert orch.scheduler.captured_count == 0


class TestLiveReadback:
    """SyncReadback path: unpopulated matrices go through the staleness cache."""

    @staticmethod
    def _orch(small_scene, max_stale_ticks: int) -> CaptureOrchestrator:
        o = CaptureOrchestrator(
            ViewCoverageScheduler(),
            DepthUnprojector(UnprojectCfg(stride=2, max_stale_ticks=max_stale_ticks)),
            CaptureCfg(capture_interval=0.5),
        )
        assert o.start_capture(small_scene.anchor)
        return o

    def test_identity_tick_reuses_cached_matrix(self, small_scene):
        o = self._orch(small_scene, max_stale_ticks=1)
        pose0 = _viewpoint_pose(o, 0)
        good = small_scene.snapshot(pose0)
        unpopulated = SensorSnapshot(buffer=good.buffer, matrices=[np.eye(4)])
        published = iter([good, unpopulated, unpopulated])
        src = SyncReadback(lambda: next(published))

        assert o.tick(0.0, pose0, src).outcome == Outcome.SUCCESS

        res = o.tick(0.5, _viewpoint_pose(o, 1), src)
        assert res.outcome == Outcome.SUCCESS
        assert res.view_index == 1
        assert res.view.num_points > 0
        assert o.unprojector.cache.stale_ticks == 1

        res = o.tick(1.0, _viewpoint_pose(o, 2), src)
        assert res.outcome == Outcome.NOT_READY
        assert res.reason == "matrix not ready"
        assert o.scheduler.captured_count == 2

    def test_identity_without_history_is_not_ready(self, small_scene):
        o = self._orch(small_scene, max_stale_ticks=3)
        pose = _viewpoint_pose(o, 0)
        snap = SensorSnapshot(buffer=small_scene.snapshot(pose).buffer, matrices=[np.eye(4)])
        res = o.tick(0.0, pose, SyncReadback(lambda: snap))
        assert res.outcome == Outcome.NOT_READY
        assert res.reason == "matrix not ready"
        assert o.scheduler.captured_count == 0
