from __future__ import annotations

import json

import pytest

from tablescan import main as app
from tablescan.anchors import SurfaceAnchor
from tablescan.config import ClusterCfg, RunCfg, ScanCfg
from utils.config import ANCHORS_JSON, EXPORT_DIR_NAME, FRAMES_DIR_NAME, POSES_JSON
from utils.error_tracker import ErrorTracker, NoAnchorFound, RecordingError


@pytest.fixture(autouse=True)
def _no_global_hooks(monkeypatch):
    monkeypatch.setattr(ErrorTracker, "install_excepthook", classmethod(lambda cls: None))
    monkeypatch.setattr(ErrorTracker, "install_signal_handlers", classmethod(lambda cls: None))


def _run_cfg(tmp_path, **kw) -> RunCfg:
    return RunCfg(
        recording_root=tmp_path / "rec",
        log_dir=tmp_path / "logs",
        scan=ScanCfg(cluster=ClusterCfg(min_points=20)),
        **kw,
    )


class TestRun:
    def test_synthetic_run_saves_and_exports(self, tmp_path):
        cfg = _run_cfg(tmp_path, save_synthetic=True)
        objects = app.run(cfg)
        assert len(objects) == 2

        root = cfg.recording_root
        assert (root / ANCHORS_JSON).exists()
        assert (root / POSES_JSON).exists()
        assert any((root / FRAMES_DIR_NAME).glob("*.npz"))

        summary = json.loads((root / EXPORT_DIR_NAME / "objects.json").read_text())
        assert len(summary["objects"]) == 2
        for o in summary["objects"]:
            assert (root / EXPORT_DIR_NAME / f"{o['name']}.ply").exists()
        assert (root / EXPORT_DIR_NAME / "merged.ply").exists()

    def test_saved_recording_replays_the_same(self, tmp_path):
        cfg = _run_cfg(tmp_path, save_synthetic=True, export=False)
        first = app.run(cfg)

        anchors, poses, frames = app.load_recording(cfg.recording_root)
        assert len(anchors) == 1
        assert len(poses) == len(frames) > 0

        replayed = app.run(_run_cfg(tmp_path, synthetic=False, export=False))
        assert len(replayed) == len(first)

    def test_missing_recording(self, tmp_path):
        with pytest.raises(RecordingError):
            app.load_recording(tmp_path / "empty")

    def test_recording_without_table(self, tmp_path):
        cfg = _run_cfg(tmp_path, synthetic=False, export=False)
        _, poses, frames = app.synthesize_recording(cfg)
        couch = SurfaceAnchor.from_center_size("couch", (0, 0.4, 0), (1, 0.5, 1), labels=("COUCH",))
        app.save_recording(cfg.recording_root, ([couch], poses[:2], frames[:2]))
        with pytest.raises(NoAnchorFound):
            app.run(cfg)
