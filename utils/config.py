from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import numpy as np

from .helpers import EULER_ORDER, euler_deg_to_R


# ============================== CORE DATATYPES ===============================


@dataclass(frozen=True, eq=False)
class CameraPose:
    """
    Eye pose in WORLD at capture time (Y-up, left-handed, eye looks along +Z).

    position : 3-vector in meters (numpy array)
    rotation : 3x3 WORLD <- EYE rotation (numpy array, row-major)
    """

    position: np.ndarray  # shape (3,)
    rotation: np.ndarray  # shape (3,3)

    @property
    def forward(self) -> np.ndarray:
        """Unit viewing direction in WORLD."""
        f = np.asarray(self.rotation, dtype=float)[:, 2]
        return f / (np.linalg.norm(f) + 1e-12)

    @property
    def up(self) -> np.ndarray:
        u = np.asarray(self.rotation, dtype=float)[:, 1]
        return u / (np.linalg.norm(u) + 1e-12)

    @property
    def T_world_eye(self) -> np.ndarray:
        """As 4x4 WORLD <- EYE."""
        T = np.eye(4, dtype=float)
        T[:3, :3] = self.rotation
        T[:3, 3] = np.asarray(self.position, dtype=float).reshape(3)
        return T

    @classmethod
    def from_euler(
        cls,
        position,
        rx: float,
        ry: float,
        rz: float,
        order: str = EULER_ORDER,
    ) -> "CameraPose":
        """Pose from position and Euler angles in degrees."""
        return cls(
            position=np.asarray(position, dtype=float).reshape(3),
            rotation=euler_deg_to_R(rx, ry, rz, order),
        )


# ============================== PROJECT DEFAULTS =============================

# World "up" of the tracking space (Y-up).
WORLD_UP: np.ndarray = np.array([0.0, 1.0, 0.0], dtype=np.float64)

# Scene-understanding label of scan targets.
TABLE_LABEL: str = "TABLE"

# Where a single recording lives (code can override this)
RECORDING_ROOT: Path = Path(".data_captures/scan")

# Subpaths & filenames inside a recording
FRAMES_DIR_NAME: str = "frames"  # e.g. frames/000.npz (depth + matrices)
POSES_JSON: str = "poses.json"  # eye pose per frame stem
ANCHORS_JSON: str = "anchors.json"  # scene anchors snapshot
EXPORT_DIR_NAME: str = "export"

# Depth convention / matrix storage defaults that callers may use.
DEPTH_CONVENTION: str = "minus_one_to_one"  # "zero_to_one" | "minus_one_to_one"
MATRIX_STORAGE: str = "inverse"  # "inverse" | "forward"
