from __future__ import annotations

import numpy as np
import pytest

from tablescan.config import UnprojectCfg
from tablescan.synthetic import look_at_pose
from tablescan.types import DepthFrame, Outcome
from tablescan.unproject import (
    DepthUnprojector,
    MatrixCache,
    eye_position_from_inverse,
    project,
    unproject,
)
from utils.helpers import perspective, view_matrix

W, H = 64, 48


def _view_proj(convention: str) -> tuple:
    pose = look_at_pose((0.3, 1.2, -0.9), (0.0, 0.75, 0.0))
    P = perspective(60.0, W / H, 0.05, 10.0, convention)
    return pose, P @ view_matrix(pose.position, pose.rotation)


def _frame(rng, VP, lo=0.6, hi=0.98, inverse=True) -> DepthFrame:
    depth = rng.uniform(lo, hi, size=(H, W)).astype(np.float32)
    M = np.linalg.inv(VP) if inverse else VP
    return DepthFrame(depth=depth, inv_view_proj=(M,))


class TestRoundTrip:
    @pytest.mark.parametrize("convention", ["minus_one_to_one", "zero_to_one"])
    def test_project_of_unproject_recovers_texel(self, rng, convention):
        pose, VP = _view_proj(convention)
        frame = _frame(rng, VP, lo=0.3 if convention == "zero_to_one" else 0.6)
        res = unproject(
            frame,
            stride=1,
            min_depth=0.0,
            max_depth=np.inf,
            convention=convention,
        )
        assert res.outcome == Outcome.SUCCESS
        assert len(res) == W * H

        u, v, d = project(res.points, VP, convention)
        x, y = u * W, v * H
        xi, yi = np.rint(x).astype(int), np.rint(y).astype(int)
        assert np.allclose(x, xi, atol=1e-4 * W)
        assert np.allclose(y, yi, atol=1e-4 * H)
        assert np.allclose(d, frame.depth[yi, xi], atol=1e-4)

    def test_eye_recovered_from_inverse_matrix(self):
        pose, VP = _view_proj("minus_one_to_one")
        eye = eye_position_from_inverse(np.linalg.inv(VP))
        assert np.allclose(eye, pose.position, atol=1e-6)

    def test_distances_measured_from_eye(self, rng):
        pose, VP = _view_proj("minus_one_to_one")
        res = unproject(_frame(rng, VP), stride=3)
        assert len(res) > 0
        d = np.linalg.norm(res.points - pose.position, axis=1)
        assert np.allclose(d, res.distances)
        assert np.all((res.distances >= 0.1) & (res.distances <= 4.0))


class TestPurity:
    def test_identical_inputs_identical_outputs(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        frame = _frame(rng, VP)
        other = _frame(rng, VP)
        a = unproject(frame, stride=2)
        unproject(other, stride=5)
        b = unproject(frame, stride=2)
        assert np.array_equal(a.points, b.points)
        assert np.array_equal(a.distances, b.distances)

    def test_frame_is_read_only(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        frame = _frame(rng, VP)
        with pytest.raises(ValueError):
            frame.depth[0, 0] = 0.5


class TestRejection:
    def test_identity_matrix_yields_empty_not_ready(self, rng):
        depth = rng.uniform(0.2, 0.9, size=(H, W)).astype(np.float32)
        res = unproject(DepthFrame(depth=depth, inv_view_proj=(np.eye(4),)), stride=1)
        assert len(res) == 0
        assert res.outcome == Outcome.NOT_READY

    def test_singular_matrix_yields_not_ready(self, rng):
        depth = rng.uniform(0.2, 0.9, size=(H, W)).astype(np.float32)
        M = np.zeros((4, 4))
        M[0, 0] = 1.0
        res = unproject(DepthFrame(depth=depth, inv_view_proj=(M,)))
        assert res.outcome == Outcome.NOT_READY

    def test_sentinel_and_non_finite_depths_dropped(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        depth = np.full((H, W), 0.9, dtype=np.float32)
        depth[:, :10] = 0.0
        depth[:, 10:20] = 1.0
        depth[:, 20:30] = np.nan
        frame = DepthFrame(depth=depth, inv_view_proj=(np.linalg.inv(VP),))
        res = unproject(frame, stride=1, min_depth=0.0, max_depth=np.inf)
        assert len(res) == (W - 30) * H
        assert np.all(np.isfinite(res.points))

    def test_depth_range_filter(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        frame = _frame(rng, VP)
        full = unproject(frame, stride=1, min_depth=0.0, max_depth=np.inf)
        cut = unproject(frame, stride=1, min_depth=0.5, max_depth=1.0)
        assert 0 < len(cut) < len(full)
        assert np.all((cut.distances >= 0.5) & (cut.distances <= 1.0))

    def test_stride_not_dividing_frame(self):
        _, VP = _view_proj("minus_one_to_one")
        depth = np.full((7, 10), 0.9, dtype=np.float32)
        frame = DepthFrame(depth=depth, inv_view_proj=(np.linalg.inv(VP),))
        res = unproject(frame, stride=3, min_depth=0.0, max_depth=np.inf)
        assert res.sampled == 4 * 3
        assert len(res) == 12

    def test_unknown_convention_raises(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        with pytest.raises(ValueError):
            unproject(_frame(rng, VP), convention="reverse_z")
        with pytest.raises(ValueError):
            DepthUnprojector(UnprojectCfg(depth_convention="reverse_z"))


class TestStalenessCache:
    def test_cache_expires_after_max_stale_ticks(self):
        cache = MatrixCache(max_stale_ticks=2)
        good = np.diag([2.0, 2.0, 2.0, 1.0])
        assert cache.resolve(np.eye(4)) is None
        assert cache.resolve(good) is not None
        assert cache.resolve(np.eye(4)) is not None
        assert cache.resolve(None) is not None
        assert cache.stale_ticks == 2
        assert cache.resolve(np.eye(4)) is None
        assert cache.resolve(good) is not None
        assert cache.stale_ticks == 0

    def test_unprojector_reuses_then_gives_up(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        good = _frame(rng, VP)
        stale = DepthFrame(depth=good.depth, inv_view_proj=(np.eye(4),))
        up = DepthUnprojector(UnprojectCfg(stride=4, max_stale_ticks=1))

        first = up.process(good)
        assert first.outcome == Outcome.SUCCESS
        reused = up.process(stale)
        assert reused.outcome == Outcome.SUCCESS
        assert np.array_equal(reused.points, first.points)
        assert up.process(stale).outcome == Outcome.NOT_READY

        up.reset()
        assert up.process(stale).outcome == Outcome.NOT_READY

    def test_forward_storage_is_inverted(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        inv_frame = _frame(np.random.default_rng(3), VP, inverse=True)
        fwd_frame = DepthFrame(depth=inv_frame.depth, inv_view_proj=(VP,))
        a = DepthUnprojector(UnprojectCfg(matrix_storage="inverse")).process(inv_frame)
        b = DepthUnprojector(UnprojectCfg(matrix_storage="forward")).process(fwd_frame)
        assert len(a) == len(b) > 0
        assert np.allclose(a.points, b.points, atol=1e-6)


class TestPointCap:
    def test_keeps_first_points_in_texel_order(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        frame = _frame(rng, VP)
        full = unproject(frame, stride=1, min_depth=0.0, max_depth=np.inf)
        capped = unproject(frame, stride=1, min_depth=0.0, max_depth=np.inf, max_points=100)
        assert len(full) == W * H
        assert len(capped) == 100
        assert capped.capped == W * H - 100
        assert np.array_equal(capped.points, full.points[:100])
        assert np.array_equal(capped.distances, full.distances[:100])

    def test_cap_above_count_is_a_no_op(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        res = unproject(_frame(rng, VP), stride=4, min_depth=0.0, max_depth=np.inf, max_points=10**6)
        assert len(res) == len(range(0, W, 4)) * len(range(0, H, 4))
        assert res.capped == 0

    def test_unprojector_applies_configured_cap(self, rng):
        _, VP = _view_proj("minus_one_to_one")
        frame = _frame(rng, VP)
        res = DepthUnprojector(UnprojectCfg(stride=1, max_points_per_frame=250)).process(frame)
        assert len(res) == 250
        unlimited = DepthUnprojector(UnprojectCfg(stride=1, max_points_per_frame=None)).process(frame)
        assert len(unlimited) > 250
        assert UnprojectCfg().max_points_per_frame == 5000
