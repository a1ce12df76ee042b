# utils/helpers.py
from __future__ import annotations

import math
import numpy as np

from .logger import Logger, SuppressO3DInfo

# ============================================================================ #
# Logger / numpy
# ============================================================================ #
logger = Logger.get_logger("helpers")
np.set_printoptions(suppress=True, precision=6, linewidth=180)


def setup_numpy_print(precision: int = 6, linewidth: int = 180) -> None:
    """Consistent numpy printing for debugging."""
    np.set_printoptions(suppress=True, precision=precision, linewidth=linewidth)


# ============================================================================ #
# Math: rotations, transforms, formatting
# ============================================================================ #
# Euler composition of the tracking space: Z applied first, then X, then Y.
EULER_ORDER = "ZXY"


def euler_deg_to_R(
    rx: float, ry: float, rz: float, order: str = EULER_ORDER
) -> np.ndarray:
    """Euler angles in degrees -> 3x3 rotation matrix (right-multiplied)."""
    rx, ry, rz = map(math.radians, (rx, ry, rz))
    Rx = np.array(
        [
            [1.0, 0.0, 0.0],
            [0.0, math.cos(rx), -math.sin(rx)],
            [0.0, math.sin(rx), math.cos(rx)],
        ]
    )
    Ry = np.array(
        [
            [math.cos(ry), 0.0, math.sin(ry)],
            [0.0, 1.0, 0.0],
            [-math.sin(ry), 0.0, math.cos(ry)],
        ]
    )
    Rz = np.array(
        [
            [math.cos(rz), -math.sin(rz), 0.0],
            [math.sin(rz), math.cos(rz), 0.0],
            [0.0, 0.0, 1.0],
        ]
    )
    d = dict(X=Rx, Y=Ry, Z=Rz)
    R = np.eye(3)
    for ch in order:
        R = d[ch] @ R
    return R


def make_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    """Assemble 4x4 transform from R (3x3) and t (3,)."""
    T = np.eye(4, dtype=float)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(t, dtype=float).reshape(3)
    return T


def transform_points(T: np.ndarray, P: np.ndarray) -> np.ndarray:
    """Apply 4x4 affine T to (N,3) points."""
    P = np.asarray(P, dtype=float).reshape(-1, 3)
    return (T[:3, :3] @ P.T + T[:3, 3:4]).T


def look_rotation(forward, up=(0.0, 1.0, 0.0)) -> np.ndarray:
    """
    WORLD <- EYE rotation whose +Z looks along ``forward``.
    Columns are (right, up, forward) in the left-handed Y-up convention.
    """
    f = np.asarray(forward, dtype=float)
    f = f / (np.linalg.norm(f) + 1e-12)
    u = np.asarray(up, dtype=float)
    r = np.cross(u, f)
    if np.linalg.norm(r) < 1e-9:
        # forward parallel to up: pick any orthogonal right
        r = np.cross(np.array([0.0, 0.0, 1.0]), f)
        if np.linalg.norm(r) < 1e-9:
            r = np.cross(np.array([1.0, 0.0, 0.0]), f)
    r = r / (np.linalg.norm(r) + 1e-12)
    u = np.cross(f, r)
    return np.stack([r, u, f], axis=1)


def view_matrix(position, rotation) -> np.ndarray:
    """
    EYE <- WORLD view matrix with the eye looking down -Z (GL clip convention).
    The Z flip turns the left-handed +Z-forward eye into a GL camera.
    """
    T_world_eye = make_T(np.asarray(rotation, float), np.asarray(position, float))
    flip = np.diag([1.0, 1.0, -1.0, 1.0])
    return flip @ np.linalg.inv(T_world_eye)


def perspective(
    fov_y_deg: float,
    aspect: float,
    near: float,
    far: float,
    convention: str = "minus_one_to_one",
) -> np.ndarray:
    """
    GL-style perspective projection.

    convention
      - "minus_one_to_one": NDC z in [-1, 1] (OpenGL)
      - "zero_to_one"     : NDC z in [0, 1]  (D3D / Vulkan)
    """
    f = 1.0 / math.tan(math.radians(fov_y_deg) * 0.5)
    P = np.zeros((4, 4), dtype=float)
    P[0, 0] = f / aspect
    P[1, 1] = f
    P[3, 2] = -1.0
    if convention == "minus_one_to_one":
        P[2, 2] = (far + near) / (near - far)
        P[2, 3] = 2.0 * far * near / (near - far)
    elif convention == "zero_to_one":
        P[2, 2] = far / (near - far)
        P[2, 3] = far * near / (near - far)
    else:
        raise ValueError(
            "convention must be 'zero_to_one' or 'minus_one_to_one'"
        )
    return P


def fmt_array(v) -> str:
    """Pretty numpy one-liner for logs."""
    return np.array2string(np.asarray(v), separator=", ")


# ============================================================================ #
# Log sinks helpers re-exports
# ============================================================================ #
def suppress_o3d_info() -> SuppressO3DInfo:
    """
    Context manager: suppresses noisy console outputs from libs that print to
    stdout/stderr (e.g. Open3D). No dependency on Open3D here.
    """
    return SuppressO3DInfo()
