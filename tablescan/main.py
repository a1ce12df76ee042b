from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

from utils.config import (
    ANCHORS_JSON,
    EXPORT_DIR_NAME,
    FRAMES_DIR_NAME,
    POSES_JSON,
    CameraPose,
)
from utils.error_tracker import ErrorTracker, NoAnchorFound, RecordingError, ScanError
from utils.helpers import setup_numpy_print
from utils.io import load_poses, save_poses
from utils.logger import Logger

from .anchors import InMemoryScene, SurfaceAnchor, is_valid_target
from .config import RunCfg
from .coverage import ViewCoverageScheduler
from .export import export_results
from .recording import load_anchors, load_frames, save_anchors, save_frame
from .sensor import ReplaySource
from .synthetic import SyntheticCamera, make_table_scene, scan_path
from .types import DepthFrame, ObjectRepresentation
from .workflow import ScanWorkflow, WorkflowState

LOG = Logger.get_logger("main")

Recording = Tuple[List[SurfaceAnchor], List[CameraPose], List[DepthFrame]]


# ============================== RECORDINGS ===================================


def load_recording(root: Path) -> Recording:
    """Poses and frames matched by stem, in stem order."""
    anchors = load_anchors(root / ANCHORS_JSON)
    poses = load_poses(root / POSES_JSON)
    frames = load_frames(root / FRAMES_DIR_NAME)
    stems = sorted(set(poses) & set(frames))
    if not stems:
        raise RecordingError(f"no frames with poses under {root}")
    dropped = len(set(poses) ^ set(frames))
    if dropped:
        LOG.warning(f"[REC] {dropped} stems without a pose/frame pair skipped")
    return anchors, [poses[s] for s in stems], [frames[s] for s in stems]


def synthesize_recording(cfg: RunCfg) -> Recording:
    """Render a table scene along the recommended viewpoint ring."""
    u = cfg.scan.unproject
    scene = make_table_scene(
        seed=cfg.seed, camera=SyntheticCamera(convention=u.depth_convention)
    )
    scene.matrix_storage = u.matrix_storage

    planner = ViewCoverageScheduler(cfg.scan.coverage, cfg.scan.workflow.table_label)
    planner.initialize(scene.anchor)
    target = planner.top_surface.center
    poses = scan_path(planner.recommended_positions, target)
    frames = [
        scene.frame(p, timestamp=i * cfg.dt)
        for i, p in enumerate(Logger.progress(poses, desc="render", total=len(poses)))
    ]
    LOG.info(f"[SYNTH] {len(frames)} frames around {scene.anchor.uuid}")
    return [scene.anchor], poses, frames


def save_recording(root: Path, rec: Recording) -> None:
    anchors, poses, frames = rec
    save_anchors(anchors, root / ANCHORS_JSON)
    stems = [f"{i:03d}" for i in range(len(poses))]
    save_poses(dict(zip(stems, poses)), root / POSES_JSON)
    for s, f in zip(stems, frames):
        save_frame(root / FRAMES_DIR_NAME, s, f)
    LOG.info(f"[REC] saved {len(frames)} frames to {root}")


# ============================== REPLAY =======================================


def _bind_hotkeys():
    try:
        from utils.keyboard import InputQueue, bind_scan_hotkeys
    except Exception as e:
        LOG.warning(f"[INPUT] hotkeys unavailable: {e}")
        return None, None
    queue = InputQueue()
    listener = bind_scan_hotkeys(queue)
    listener.start()
    ErrorTracker.register_cleanup(listener.stop)
    ErrorTracker.install_keyboard_listener("esc")
    LOG.info("[INPUT] space=start enter=stop r=reset esc=abort")
    return queue, listener


def replay(cfg: RunCfg, rec: Recording) -> ScanWorkflow:
    """Feed a recording through ScanWorkflow one tick per frame."""
    anchors, poses, frames = rec
    wf = ScanWorkflow(InMemoryScene(anchors), cfg.scan)
    queue, listener = _bind_hotkeys() if cfg.hotkeys else (None, None)
    if queue is None:
        wf.start_scanning()

    source = ReplaySource(frames)
    for pose in Logger.progress(poses, desc="replay", total=len(poses)):
        source.advance()
        if queue is not None:
            for ev in queue.drain():
                wf.handle_event(ev)
        wf.tick(cfg.dt, pose, source)
        if wf.state in (WorkflowState.PROCESSING, WorkflowState.COMPLETE):
            break

    if listener is not None:
        listener.stop()
        ErrorTracker.stop_keyboard_listener()
    if wf.state == WorkflowState.SCANNING:
        LOG.info("[REPLAY] recording exhausted; processing what was captured")
        wf.stop_scanning()
    wf.run_processing()
    return wf


def run(cfg: RunCfg | None = None) -> List[ObjectRepresentation]:
    """
    Entry point: configure logging, install ErrorTracker, replay a recording
    (or a synthetic scene) and export the objects.
    """
    cfg = cfg or RunCfg()
    Logger.configure(level=cfg.log_level, log_dir=cfg.log_dir)
    setup_numpy_print(precision=4)
    ErrorTracker.install_excepthook()
    ErrorTracker.install_signal_handlers()

    root = Path(cfg.recording_root)
    LOG.info(f"[START] root={root} synthetic={cfg.synthetic}")
    if cfg.synthetic:
        rec = synthesize_recording(cfg)
        if cfg.save_synthetic:
            save_recording(root, rec)
    else:
        rec = load_recording(root)

    label = cfg.scan.workflow.table_label
    if not any(is_valid_target(a, label) for a in rec[0]):
        raise NoAnchorFound(f"no {label} anchor with volume bounds in the recording")

    wf = replay(cfg, rec)
    objects = wf.objects
    s = wf.session
    LOG.info(
        f"[RESULT] outcome={wf.outcome.value if wf.outcome else None} "
        f"views={len(s.views) if s else 0} coverage={wf.coverage:.2f} objects={len(objects)}"
    )
    if cfg.export:
        merged = s.merged_points() if s is not None else None
        export_results(objects, root / EXPORT_DIR_NAME, merged)
    return objects


def _main() -> None:
    """Module runner for `python -m tablescan.main`."""
    try:
        run(RunCfg())
    except ScanError as e:
        ErrorTracker.report(e)
        raise SystemExit(1)


if __name__ == "__main__":
    _main()
