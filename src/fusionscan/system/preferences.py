from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex


@dataclass(frozen=True)
class VolumeBuilderPreferences:
    # volume: 384 / 256vpm = 1.5m per side, ~3.9mm voxels
    voxels_per_meter: float = 256.0
    voxels_x: int = 384
    voxels_y: int = 384
    voxels_z: int = 384

    # depth outside [min, max] (metres) becomes invalid
    min_depth_clip: float = 0.35
    max_depth_clip: float = 8.0

    # tracking
    delta_frame_calculation_interval: int = 2
    downsample_factor: int = 2
    smoothing_kernel_width: int = 1          # 0=copy, 1=3x3, 2=5x5, ...
    smoothing_distance_threshold: float = 0.04
    max_translation_delta: float = 0.3       # metres per axis per frame
    max_rotation_delta_degrees: float = 20.0  # degrees per axis per frame
    align_iterations: int | None = None      # None -> engine default

    # relocalization
    pose_finder_distance_threshold_reject: float = 1.0  # 1.0 = never reject
    max_align_energy_for_success: float = 0.006
    min_align_energy_for_success: float = 0.0
    max_pose_finder_pose_tests: int = 5
    min_successful_frames_after_failure: int = 200

    # keyframes
    pose_finder_process_frame_interval: int = 5
    min_successful_frames_for_pose_finder: int = 45
    pose_finder_distance_threshold_accept: float = 0.1

    # integration / reset
    integration_weight: int = 200
    translate_reset_pose_by_min_depth: bool = True
    auto_reset_when_lost: bool = False
    max_tracking_errors: int = 100

    worker_threads: int = 1

    def __post_init__(self):
        if self.voxels_per_meter <= 0:
            raise ValueError("voxels_per_meter must be positive")
        if min(self.voxels_x, self.voxels_y, self.voxels_z) <= 0:
            raise ValueError("Volume resolution must be positive on every axis")
        if self.min_depth_clip < 0.0:
            raise ValueError("min_depth_clip must be >= 0")
        if self.max_depth_clip <= 0.0:
            raise ValueError("max_depth_clip must be > 0")
        if self.downsample_factor < 1:
            raise ValueError("downsample_factor must be >= 1")
        if self.delta_frame_calculation_interval < 1:
            raise ValueError("delta_frame_calculation_interval must be >= 1")
        if self.pose_finder_process_frame_interval < 1:
            raise ValueError("pose_finder_process_frame_interval must be >= 1")
        if self.smoothing_kernel_width < 0:
            raise ValueError("smoothing_kernel_width must be >= 0")
        if self.align_iterations is not None and self.align_iterations < 1:
            raise ValueError("align_iterations must be >= 1 (or null for the engine default)")
        if self.max_pose_finder_pose_tests < 1:
            raise ValueError("max_pose_finder_pose_tests must be >= 1")
        if self.worker_threads < 1:
            raise ValueError("worker_threads must be >= 1")

    @classmethod
    def from_dict(cls, d: dict[str, Any] | None) -> "VolumeBuilderPreferences":
        d = dict(d or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(d) - known)
        if unknown:
            raise ValueError(f"Unknown preference keys: {', '.join(unknown)}")
        return cls(**d)

    def to_dict(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def load_config(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f)
    return cfg or {}


def load_preferences(path: str) -> VolumeBuilderPreferences:
    return VolumeBuilderPreferences.from_dict(load_config(path).get("preferences"))
