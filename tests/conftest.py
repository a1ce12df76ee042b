from __future__ import annotations

import numpy as np
import pytest

from tablescan.anchors import SurfaceAnchor
from tablescan.synthetic import SyntheticCamera, look_at_pose, make_table_scene

TABLE_CENTER = (0.0, 0.725, 0.0)
TABLE_SIZE = (1.2, 0.05, 0.8)
TABLE_TOP = 0.75


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(1234)


@pytest.fixture
def table_anchor() -> SurfaceAnchor:
    return SurfaceAnchor.from_center_size("table-0", TABLE_CENTER, TABLE_SIZE)


@pytest.fixture
def camera_pose():
    """Eye in front of the table, looking at the top center."""
    return look_at_pose((0.3, 1.2, -0.9), (0.0, TABLE_TOP, 0.0))


@pytest.fixture(scope="session")
def small_scene():
    """Low-resolution table scene for fast capture tests."""
    return make_table_scene(seed=7, camera=SyntheticCamera(width=64, height=64))
