from __future__ import annotations

import numpy as np
import pytest

from tablescan.anchors import (
    InMemoryScene,
    SurfaceAnchor,
    closest_anchor,
    is_valid_target,
)
from tablescan.config import SurfaceFilterCfg
from tablescan.surface import SurfaceFilter
from utils.error_tracker import InvalidAnchor
from utils.helpers import euler_deg_to_R, make_T, transform_points


def _tilted_anchor(deg: float = 10.0) -> SurfaceAnchor:
    T = make_T(euler_deg_to_R(0.0, 0.0, deg), (0.0, 0.725, 0.0))
    return SurfaceAnchor.from_center_size("tilted", (0, 0, 0), (1.2, 0.05, 0.8), local_to_world=T)


def _flipped_anchor() -> SurfaceAnchor:
    T = make_T(euler_deg_to_R(180.0, 0.0, 0.0), (0.0, 0.725, 0.0))
    return SurfaceAnchor.from_center_size("flipped", (0, 0, 0), (1.2, 0.05, 0.8), local_to_world=T)


class TestTopSurface:
    def test_level_table(self, table_anchor):
        top = table_anchor.top_surface()
        assert np.allclose(top.center, [0.0, 0.75, 0.0])
        assert np.allclose(top.normal, [0.0, 1.0, 0.0])
        assert np.allclose(top.footprint_size, [1.2, 0.8])
        assert top.height == pytest.approx(0.75)

    def test_flipped_frame_resolves_upward_face(self):
        top = _flipped_anchor().top_surface()
        assert top.sign == -1.0
        assert np.allclose(top.normal, [0.0, 1.0, 0.0], atol=1e-9)
        assert top.height == pytest.approx(0.75)

    def test_grid_spans_footprint(self, table_anchor):
        G = table_anchor.top_surface().grid(5)
        assert G.shape == (25, 3)
        assert np.allclose(G[:, 1], 0.75)
        assert G[:, 0].min() == pytest.approx(-0.6)
        assert G[:, 2].max() == pytest.approx(0.4)

    def test_no_volume_raises(self):
        with pytest.raises(InvalidAnchor):
            SurfaceAnchor(uuid="x", labels=frozenset({"TABLE"})).top_surface()


class TestSurfaceFilter:
    def test_height_slab(self, table_anchor):
        P = np.array(
            [
                [0.0, 0.755, 0.0],  # below min height
                [0.0, 0.765, 0.0],
                [0.0, 1.20, 0.0],
                [0.0, 1.30, 0.0],  # above max height
                [0.0, 0.70, 0.0],  # under the top
            ]
        )
        kept, m = SurfaceFilter().filter(P, table_anchor)
        assert m.tolist() == [False, True, True, False, False]
        assert np.array_equal(kept, P[m])

    def test_footprint_margin(self, table_anchor):
        P = np.array([[0.64, 0.8, 0.0], [0.66, 0.8, 0.0], [0.0, 0.8, -0.44], [0.0, 0.8, -0.46]])
        m = SurfaceFilter().mask(P, table_anchor)
        assert m.tolist() == [True, False, True, False]

    def test_zero_margin(self, table_anchor):
        P = np.array([[0.59, 0.8, 0.0], [0.61, 0.8, 0.0]])
        m = SurfaceFilter(SurfaceFilterCfg(margin=0.0)).mask(P, table_anchor)
        assert m.tolist() == [True, False]

    def test_tilted_table_uses_its_own_normal(self):
        anchor = _tilted_anchor(10.0)
        local = np.array(
            [
                [0.3, 0.125, 0.1],  # 0.1 above the top
                [0.3, 0.020, 0.1],  # just under the top
                [-0.5, 0.045, 0.0],  # 0.02 above, lower than a level top in WORLD
            ]
        )
        W = transform_points(anchor.local_to_world, local)
        assert W[2, 1] < 0.75
        m = SurfaceFilter().mask(W, anchor)
        assert m.tolist() == [True, False, True]

    def test_upside_down_frame(self):
        anchor = _flipped_anchor()
        P = np.array([[0.0, 0.80, 0.0], [0.0, 0.70, 0.0]])
        m = SurfaceFilter().mask(P, anchor)
        assert m.tolist() == [True, False]

    def test_anchor_without_volume_gives_empty(self):
        anchor = SurfaceAnchor(uuid="flat", labels=frozenset({"TABLE"}))
        kept, m = SurfaceFilter().filter(np.array([[0.0, 0.8, 0.0]]), anchor)
        assert kept.shape == (0, 3)
        assert not m.any()

    def test_empty_input(self, table_anchor):
        kept, m = SurfaceFilter().filter(np.empty((0, 3)), table_anchor)
        assert len(kept) == 0 and len(m) == 0


class TestScene:
    def test_list_by_label_and_validity(self, table_anchor):
        couch = SurfaceAnchor.from_center_size("couch", (2, 0.4, 0), (1, 0.5, 1), labels=("COUCH",))
        flat = SurfaceAnchor(uuid="flat", labels=frozenset({"TABLE"}))
        scene = InMemoryScene([table_anchor, couch, flat])
        assert len(scene) == 3
        assert {a.uuid for a in scene.list_anchors("TABLE")} == {"table-0", "flat"}
        assert is_valid_target(table_anchor)
        assert not is_valid_target(couch)
        assert not is_valid_target(flat)
        assert not is_valid_target(None)

    def test_closest_anchor(self, table_anchor):
        far = SurfaceAnchor.from_center_size(
            "far", (0, 0, 0), (1, 0.05, 1), local_to_world=make_T(np.eye(3), (3.0, 0.7, 0.0))
        )
        flat = SurfaceAnchor(
            uuid="flat", labels=frozenset({"TABLE"}), local_to_world=make_T(np.eye(3), (2.9, 0.7, 0.0))
        )
        anchors = [table_anchor, far, flat]
        assert closest_anchor(anchors, (2.8, 1.2, 0.0)).uuid == "far"
        assert closest_anchor(anchors, (0.1, 1.2, 0.0)).uuid == "table-0"
        assert closest_anchor(anchors, None).uuid == "table-0"
        assert closest_anchor([flat], (0, 0, 0)) is None
