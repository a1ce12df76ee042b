# utils/io.py
from __future__ import annotations

import json
from pathlib import Path
from typing import Dict

import numpy as np

from utils.config import CameraPose
from utils.error_tracker import RecordingError
from utils.logger import Logger

logger = Logger.get_logger("io")


# ============================================================================ #
# I/O: camera poses of a recording (no Open3D logic here)
# ============================================================================ #
def load_poses(path: Path) -> Dict[str, CameraPose]:
    """
    Load poses.json -> dict[stem] = CameraPose.
    Entries are either {"position": [3], "rotation": [[3x3]]} or Euler
    degrees {"x","y","z","rx","ry","rz"} composed in EULER_ORDER.
    Returns empty dict if file not found.
    """
    if not path.exists():
        logger.warning(f"[POSES] not found: {path}")
        return {}
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as e:
        raise RecordingError(f"bad poses file {path}: {e}") from e

    out: Dict[str, CameraPose] = {}
    for k, v in data.items():
        try:
            if "rotation" in v:
                out[k] = CameraPose(
                    position=np.asarray(v["position"], dtype=float).reshape(3),
                    rotation=np.asarray(v["rotation"], dtype=float).reshape(3, 3),
                )
            else:
                out[k] = CameraPose.from_euler(
                    (float(v["x"]), float(v["y"]), float(v["z"])),
                    float(v["rx"]),
                    float(v["ry"]),
                    float(v["rz"]),
                )
        except (KeyError, TypeError, ValueError) as e:
            raise RecordingError(f"bad pose entry {k!r} in {path.name}: {e}") from e
    logger.info(f"[POSES] loaded {len(out)} entries from {path.name}")
    return out


def save_poses(poses: Dict[str, CameraPose], path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        k: {
            "position": np.asarray(p.position, float).round(9).tolist(),
            "rotation": np.asarray(p.rotation, float).round(9).tolist(),
        }
        for k, p in poses.items()
    }
    path.write_text(json.dumps(data, indent=2))
    logger.info(f"[POSES] saved {len(data)} entries to {path}")
    return path
