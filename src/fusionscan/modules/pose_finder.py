from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass

import cv2
import numpy as np

from ..system.contracts import MatchCandidates, PoseFinderDatabase

logger = logging.getLogger(__name__)


@dataclass
class Keyframe:
    pose: np.ndarray
    depth_float: np.ndarray
    resampled_color: np.ndarray
    depth_thumb: np.ndarray
    gray_thumb: np.ndarray


class InMemoryPoseFinder(PoseFinderDatabase):
    """
    Keyframe database with thumbnail descriptors.

    Each keyframe keeps a small depth thumbnail (normalized by max_depth) and a
    grey thumbnail of the colour image. Distance between two frames is in
    [0, 1]: 0.5 * (mean |depth diff| + mean |grey diff|).
    """

    def __init__(
        self,
        *,
        max_poses: int = 1000,
        max_results: int = 10,
        thumb_size: tuple[int, int] = (40, 30),
        max_depth: float = 8.0,
    ):
        if max_poses < 1:
            raise ValueError("max_poses must be >= 1")
        if max_results < 1:
            raise ValueError("max_results must be >= 1")
        self.max_poses = int(max_poses)
        self.max_results = int(max_results)
        self.thumb_size = (int(thumb_size[0]), int(thumb_size[1]))
        self.max_depth = float(max_depth)
        self._keyframes: deque[Keyframe] = deque()

    def stored_count(self) -> int:
        return len(self._keyframes)

    def reset(self) -> None:
        self._keyframes.clear()

    def _describe(self, depth_float: np.ndarray, color: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
        d = np.clip(depth_float.astype(np.float32) / self.max_depth, 0.0, 1.0)
        depth_thumb = cv2.resize(d, self.thumb_size, interpolation=cv2.INTER_AREA)
        if color.ndim == 3 and color.shape[2] == 4:
            gray = cv2.cvtColor(color, cv2.COLOR_BGRA2GRAY)
        elif color.ndim == 3:
            gray = cv2.cvtColor(color, cv2.COLOR_BGR2GRAY)
        else:
            gray = color
        gray_thumb = cv2.resize(gray, self.thumb_size, interpolation=cv2.INTER_AREA).astype(np.float32) / 255.0
        return depth_thumb, gray_thumb

    def _distances(self, depth_thumb: np.ndarray, gray_thumb: np.ndarray) -> np.ndarray:
        return np.array([
            0.5 * (float(np.mean(np.abs(kf.depth_thumb - depth_thumb)))
                   + float(np.mean(np.abs(kf.gray_thumb - gray_thumb))))
            for kf in self._keyframes
        ], dtype=np.float64)

    def find_pose(self, depth_float: np.ndarray, color: np.ndarray) -> MatchCandidates | None:
        if not self._keyframes:
            return None
        dist = self._distances(*self._describe(depth_float, color))
        order = np.argsort(dist, kind="stable")[: self.max_results]
        return MatchCandidates(
            poses=[self._keyframes[i].pose.copy() for i in order],
            min_distance=float(dist[order[0]]),
        )

    def try_insert(self, depth_float: np.ndarray, color: np.ndarray, pose: np.ndarray,
                   accept_threshold: float) -> bool:
        depth_thumb, gray_thumb = self._describe(depth_float, color)
        if self._keyframes:
            min_dist = float(np.min(self._distances(depth_thumb, gray_thumb)))
            if min_dist < accept_threshold:
                return False

        if len(self._keyframes) >= self.max_poses:
            self._keyframes.popleft()
            logger.info("Pose finder history full (%d), overwriting oldest keyframe", self.max_poses)

        self._keyframes.append(Keyframe(
            pose=np.array(pose, dtype=np.float64, copy=True),
            depth_float=np.array(depth_float, copy=True),
            resampled_color=np.array(color, copy=True),
            depth_thumb=depth_thumb,
            gray_thumb=gray_thumb,
        ))
        return True
