# tablescan/export.py
"""Debug dumps of scan results (PLY via Open3D + a JSON summary)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional

import numpy as np
import open3d as o3d

from utils.helpers import suppress_o3d_info
from utils.logger import Logger

from .types import ObjectRepresentation

LOG = Logger.get_logger("export")


def to_point_cloud(
    points: np.ndarray, color: Optional[np.ndarray] = None
) -> o3d.geometry.PointCloud:
    pc = o3d.geometry.PointCloud(
        o3d.utility.Vector3dVector(np.asarray(points, dtype=np.float64).reshape(-1, 3))
    )
    if color is not None and len(pc.points):
        pc.paint_uniform_color(np.asarray(color, float)[:3].tolist())
    return pc


def to_triangle_mesh(rep: ObjectRepresentation) -> o3d.geometry.TriangleMesh:
    mesh = o3d.geometry.TriangleMesh(
        o3d.utility.Vector3dVector(np.asarray(rep.points, dtype=np.float64)),
        o3d.utility.Vector3iVector(np.asarray(rep.triangles, dtype=np.int32)),
    )
    if len(rep.normals) == len(rep.points) and len(rep.points):
        mesh.vertex_normals = o3d.utility.Vector3dVector(np.asarray(rep.normals, float))
    mesh.paint_uniform_color(np.asarray(rep.color, float)[:3].tolist())
    return mesh


def save_cloud(points: np.ndarray, root: Path, name: str = "merged.ply") -> Path:
    """Save an (N,3) cloud under <root>/<name>."""
    root.mkdir(parents=True, exist_ok=True)
    out_path = root / name
    with suppress_o3d_info():
        ok = o3d.io.write_point_cloud(str(out_path), to_point_cloud(points))
    if ok:
        LOG.info(f"[SAVE] wrote {len(points)} points to {out_path}")
    else:
        LOG.warning(f"[SAVE] failed: {out_path}")
    return out_path


def save_object(rep: ObjectRepresentation, root: Path) -> Path:
    """Mesh objects -> <name>.ply triangle mesh; splat objects -> centers cloud."""
    root.mkdir(parents=True, exist_ok=True)
    out_path = root / f"{rep.name}.ply"
    with suppress_o3d_info():
        if rep.kind == "mesh" and len(rep.triangles):
            ok = o3d.io.write_triangle_mesh(str(out_path), to_triangle_mesh(rep))
        else:
            ok = o3d.io.write_point_cloud(str(out_path), to_point_cloud(rep.points, rep.color))
    if ok:
        LOG.info(
            f"[SAVE] {rep.name}: kind={rep.kind} verts={len(rep.points)} "
            f"tris={len(rep.triangles)} splats={len(rep.splats)} -> {out_path.name}"
        )
    else:
        LOG.warning(f"[SAVE] failed: {out_path}")
    return out_path


def summarize(objects: List[ObjectRepresentation]) -> List[dict]:
    return [
        {
            "name": o.name,
            "kind": o.kind,
            "centroid": np.round(o.centroid, 6).tolist(),
            "bounds_min": np.round(o.bounds_min, 6).tolist(),
            "bounds_max": np.round(o.bounds_max, 6).tolist(),
            "color": np.round(o.color, 4).tolist(),
            "vertices": int(len(o.points)),
            "triangles": int(len(o.triangles)),
            "splats": int(len(o.splats)),
        }
        for o in objects
    ]


def export_results(
    objects: List[ObjectRepresentation],
    root: Path,
    merged: Optional[np.ndarray] = None,
) -> Path:
    """Write every object, the optional merged cloud and objects.json."""
    root.mkdir(parents=True, exist_ok=True)
    for rep in objects:
        save_object(rep, root)
    if merged is not None and len(merged):
        save_cloud(merged, root)
    summary = root / "objects.json"
    summary.write_text(json.dumps({"objects": summarize(objects)}, indent=2))
    LOG.info(f"[EXPORT] {len(objects)} object(s) -> {root}")
    return summary
