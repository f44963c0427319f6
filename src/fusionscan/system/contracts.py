"""
Contracts of the two collaborators the pipeline drives but does not own:
the reconstruction engine (volume, raycast, alignment) and the pose-keyframe
database used for relocalization.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field

import numpy as np


@dataclass
class PointCloud:
    points: np.ndarray   # (H,W,3) float32; invalid pixels are all-zero
    normals: np.ndarray  # (H,W,3) float32
    pose: np.ndarray | None = None  # world->camera pose it was raycast from; None = camera frame

    @property
    def shape(self) -> tuple[int, int]:
        return (int(self.points.shape[0]), int(self.points.shape[1]))

    @property
    def valid(self) -> np.ndarray:
        return np.any(self.normals != 0.0, axis=2)

    @classmethod
    def empty(cls, height: int, width: int) -> "PointCloud":
        return cls(np.zeros((height, width, 3), np.float32), np.zeros((height, width, 3), np.float32))


@dataclass
class AlignmentResult:
    success: bool
    energy: float
    pose: np.ndarray                 # 4x4 world->camera
    delta: np.ndarray | None = None  # (H,W,4) uint8 residual visualization


@dataclass
class MatchCandidates:
    poses: list[np.ndarray] = field(default_factory=list)  # ranked, best first
    min_distance: float = 1.0

    @property
    def count(self) -> int:
        return len(self.poses)


class ReconstructionEngine(ABC):
    """Owns the voxel volume. Operational failures raise EngineError."""

    default_align_iterations: int = 7

    def align_iterations(self, requested: int | None) -> int:
        return int(requested) if requested is not None else int(self.default_align_iterations)

    @abstractmethod
    def default_world_to_volume(self) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def depth_to_float(self, depth: np.ndarray, min_clip: float, max_clip: float) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def smooth(self, depth_float: np.ndarray, kernel_width: int, distance_threshold: float) -> np.ndarray:
        raise NotImplementedError

    @abstractmethod
    def point_cloud_from_depth(self, depth_float: np.ndarray) -> PointCloud:
        raise NotImplementedError

    @abstractmethod
    def raycast_point_cloud(self, pose: np.ndarray, shape: tuple[int, int]) -> PointCloud:
        raise NotImplementedError

    @abstractmethod
    def align_point_clouds(
        self,
        model: PointCloud,
        observed: PointCloud,
        max_iterations: int,
        pose: np.ndarray,
        compute_delta: bool = False,
    ) -> AlignmentResult:
        raise NotImplementedError

    @abstractmethod
    def integrate(self, depth_float: np.ndarray, weight: int, pose: np.ndarray) -> None:
        raise NotImplementedError

    @abstractmethod
    def reset(self, pose: np.ndarray, world_to_volume: np.ndarray) -> None:
        raise NotImplementedError

    def release(self) -> None:
        pass


class PoseFinderDatabase(ABC):
    """Stores (pose, depth, colour) keyframes; proposes ranked poses for relocalization."""

    @abstractmethod
    def stored_count(self) -> int:
        raise NotImplementedError

    @abstractmethod
    def find_pose(self, depth_float: np.ndarray, color: np.ndarray) -> MatchCandidates | None:
        raise NotImplementedError

    @abstractmethod
    def try_insert(self, depth_float: np.ndarray, color: np.ndarray, pose: np.ndarray,
                   accept_threshold: float) -> bool:
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:
        raise NotImplementedError
