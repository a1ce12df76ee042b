# tablescan/recording.py
"""
Recording I/O for the scan core: anchors.json and per-stem depth frames.
Poses live in ``utils.io`` since they only need ``utils`` types.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Dict, List

import numpy as np

from utils.error_tracker import RecordingError
from utils.logger import Logger

from .anchors import SurfaceAnchor
from .types import DepthFrame

LOG = Logger.get_logger("recording")


# ============================== ANCHORS ======================================


def load_anchors(path: Path) -> List[SurfaceAnchor]:
    """anchors.json -> list of SurfaceAnchor (bounds may be null)."""
    if not path.exists():
        LOG.warning(f"[ANCHORS] not found: {path}")
        return []
    try:
        data = json.loads(path.read_text())
        out = [
            SurfaceAnchor(
                uuid=str(a["uuid"]),
                labels=frozenset(a.get("labels", [])),
                bounds_min=a.get("bounds_min"),
                bounds_max=a.get("bounds_max"),
                local_to_world=np.asarray(
                    a.get("local_to_world", np.eye(4).tolist()), dtype=float
                ),
            )
            for a in data.get("anchors", [])
        ]
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
        raise RecordingError(f"bad anchors file {path}: {e}") from e
    LOG.info(f"[ANCHORS] loaded {len(out)} from {path.name}")
    return out


def save_anchors(anchors: List[SurfaceAnchor], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)

    def _arr(a):
        return None if a is None else np.asarray(a, float).tolist()

    data = {
        "anchors": [
            {
                "uuid": a.uuid,
                "labels": sorted(a.labels),
                "bounds_min": _arr(a.bounds_min),
                "bounds_max": _arr(a.bounds_max),
                "local_to_world": _arr(a.local_to_world),
            }
            for a in anchors
        ]
    }
    path.write_text(json.dumps(data, indent=2))
    LOG.info(f"[ANCHORS] saved {len(anchors)} to {path}")
    return path


# ============================== FRAMES =======================================


def save_frame(frames_dir: Path, stem: str, frame: DepthFrame) -> Path:
    """<frames_dir>/<stem>.npz with depth, matrices (E,4,4) and timestamp."""
    frames_dir.mkdir(parents=True, exist_ok=True)
    out = frames_dir / f"{stem}.npz"
    np.savez_compressed(
        out,
        depth=frame.depth,
        matrices=np.stack(frame.inv_view_proj),
        timestamp=np.float64(frame.timestamp),
    )
    return out


def load_frame(path: Path) -> DepthFrame:
    try:
        with np.load(path) as z:
            return DepthFrame(
                depth=z["depth"],
                inv_view_proj=tuple(np.asarray(z["matrices"]).reshape(-1, 4, 4)),
                timestamp=float(z["timestamp"]),
            )
    except (OSError, KeyError, ValueError) as e:
        raise RecordingError(f"bad frame {path.name}: {e}") from e


def load_frames(frames_dir: Path) -> Dict[str, DepthFrame]:
    """All <stem>.npz frames, ordered by stem."""
    if not frames_dir.is_dir():
        LOG.warning(f"[FRAMES] not found: {frames_dir}")
        return {}
    out = {p.stem: load_frame(p) for p in sorted(frames_dir.glob("*.npz"))}
    LOG.info(f"[FRAMES] loaded {len(out)} from {frames_dir}")
    return out
