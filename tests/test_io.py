from __future__ import annotations

import json

import numpy as np
import pytest

from utils.config import CameraPose
from utils.error_tracker import RecordingError
from utils.io import load_poses, save_poses


class TestPoses:
    def test_matrix_form_roundtrip(self, tmp_path, camera_pose):
        path = save_poses({"000": camera_pose}, tmp_path / "poses.json")
        back = load_poses(path)
        assert list(back) == ["000"]
        assert np.allclose(back["000"].position, camera_pose.position)
        assert np.allclose(back["000"].rotation, camera_pose.rotation)

    def test_euler_form(self, tmp_path):
        path = tmp_path / "poses.json"
        path.write_text(json.dumps({"a": {"x": 1, "y": 1.5, "z": -1, "rx": 20, "ry": 90, "rz": 0}}))
        pose = load_poses(path)["a"]
        ref = CameraPose.from_euler((1, 1.5, -1), 20, 90, 0)
        assert np.allclose(pose.position, [1.0, 1.5, -1.0])
        assert np.allclose(pose.rotation, ref.rotation)

    def test_missing_file(self, tmp_path):
        assert load_poses(tmp_path / "nope.json") == {}

    @pytest.mark.parametrize(
        "text",
        ["{not json", json.dumps({"a": {"x": 1}}), json.dumps({"a": {"position": [1, 2]}})],
    )
    def test_malformed(self, tmp_path, text):
        path = tmp_path / "poses.json"
        path.write_text(text)
        with pytest.raises(RecordingError):
            load_poses(path)
