from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal, Optional

from utils import config as ucfg

# ============================== CONSTANTS ====================================

DEGENERATE_W = 1e-4  # |w| below this after inverse projection is unusable
MIN_COVARIANCE_NEIGHBORS = 3

DepthConvention = Literal["zero_to_one", "minus_one_to_one"]
MatrixStorage = Literal["inverse", "forward"]
NeighborBackend = Literal["brute", "kdtree"]
ClusterAlgorithm = Literal["dbscan", "kmeans"]
RepresentationMode = Literal["mesh", "splats"]
Triangulation = Literal["fan", "strip"]

# ============================== CONFIG TYPES =================================


@dataclass(frozen=True)
class UnprojectCfg:
    """Depth buffer -> WORLD points."""

    stride: int = 4  # sample every Nth texel in x and y
    min_depth: float = 0.1  # meters from the eye
    max_depth: float = 4.0
    depth_convention: DepthConvention = ucfg.DEPTH_CONVENTION  # type: ignore[assignment]
    matrix_storage: MatrixStorage = ucfg.MATRIX_STORAGE  # type: ignore[assignment]
    eye: int = 0  # left eye
    max_stale_ticks: int = 3  # reuse last good matrix at most this many ticks
    max_points_per_frame: Optional[int] = 5000  # None = keep every valid texel


@dataclass(frozen=True)
class CoverageCfg:
    """Recommended viewpoints + coverage grid over the table footprint."""

    target_view_count: int = 8
    min_view_distance: float = 0.3
    max_view_distance: float = 1.0
    min_coverage: float = 0.7
    grid_resolution: int = 20
    coverage_cos_threshold: float = 0.7  # ~45 deg cone
    capture_radius: float = 0.2
    eye_height_offset: float = 0.5  # above the table top
    radius_scale: float = 0.7
    radius_pad: float = 0.4


@dataclass(frozen=True)
class CaptureCfg:
    """Throttled capture checks and per-view quality gates."""

    capture_interval: float = 0.5  # seconds between capture checks
    min_distance: float = 0.3  # horizontal, eye -> table center
    max_distance: float = 1.2
    max_view_angle_deg: float = 75.0  # -forward vs. table normal
    expected_eye_height: float = 0.5  # above the table top
    eye_height_tolerance: float = 0.5


@dataclass(frozen=True)
class SurfaceFilterCfg:
    """Keep the slab above the table top, inside its footprint."""

    min_height_above: float = 0.01
    max_height_above: float = 0.5
    margin: float = 0.05


@dataclass(frozen=True)
class ClusterCfg:
    """DBSCAN (or k-means) + object size gate."""

    algorithm: ClusterAlgorithm = "dbscan"
    eps: float = 0.05
    min_points: int = 50
    min_object_size: float = 0.02  # AABB diagonal, meters
    max_object_size: float = 1.0
    backend: NeighborBackend = "kdtree"
    # k-means only: k = clamp(n // min_points, 1, max_clusters)
    max_clusters: int = 10
    kmeans_iterations: int = 10
    seed: Optional[int] = 0


@dataclass(frozen=True)
class GeometryCfg:
    """Simplified per-object representation."""

    mode: RepresentationMode = "mesh"
    voxel_size: float = 0.005
    triangulation: Triangulation = "fan"
    target_splat_count: int = 1000
    merge_threshold: float = 0.005
    use_mesh_fallback: bool = True
    default_scale: float = 0.01
    default_opacity: float = 0.8
    covariance_radius: float = 0.01
    seed: Optional[int] = 0


@dataclass(frozen=True)
class WorkflowCfg:
    """Top-level sequencing knobs."""

    table_label: str = ucfg.TABLE_LABEL
    auto_select_table: bool = True
    auto_stop_on_complete: bool = True
    merge_voxel: float = 0.0  # optional downsample of the merged cloud
    object_name_prefix: str = "ScannedObject"


@dataclass(frozen=True)
class ScanCfg:
    """Everything the scan core needs."""

    unproject: UnprojectCfg = field(default_factory=UnprojectCfg)
    coverage: CoverageCfg = field(default_factory=CoverageCfg)
    capture: CaptureCfg = field(default_factory=CaptureCfg)
    surface: SurfaceFilterCfg = field(default_factory=SurfaceFilterCfg)
    cluster: ClusterCfg = field(default_factory=ClusterCfg)
    geometry: GeometryCfg = field(default_factory=GeometryCfg)
    workflow: WorkflowCfg = field(default_factory=WorkflowCfg)


@dataclass(frozen=True)
class RunCfg:
    """Desktop replay of a recording (or of a synthetic scene)."""

    recording_root: Path = ucfg.RECORDING_ROOT
    synthetic: bool = True  # render a synthetic table scene instead of loading
    save_synthetic: bool = False  # write the synthetic recording to recording_root
    seed: int = 0
    dt: float = 0.25  # seconds per replayed frame
    hotkeys: bool = False  # space=start, enter=stop, r=reset
    export: bool = True
    log_level: str = "INFO"
    log_dir: Path = Path(".logs")
    scan: ScanCfg = field(default_factory=ScanCfg)
