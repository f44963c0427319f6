from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum

import numpy as np


class TrackingStatus(Enum):
    TRACKING = "tracking"
    LOST = "lost"
    RELOCALIZING = "relocalizing"


@dataclass
class TrackingState:
    """
    Tracking health of the pipeline. Owned by the controller, one thread only.

    At most one of consecutive_failures / consecutive_successes is non-zero;
    both are zero only before the first frame since reset.
    """
    pose: np.ndarray = field(default_factory=lambda: np.eye(4))  # world->camera

    consecutive_failures: int = 0
    consecutive_successes: int = 0
    tracking_failed: bool = False
    failed_previously: bool = False  # sticky, cleared by the integrator
    has_tracked: bool = False
    relocalizing: bool = False

    processed_frames: int = 0
    last_energy: float | None = None

    @property
    def status(self) -> TrackingStatus:
        if self.relocalizing:
            return TrackingStatus.RELOCALIZING
        if self.tracking_failed:
            return TrackingStatus.LOST
        return TrackingStatus.TRACKING

    def mark_succeeded(self) -> None:
        self.consecutive_failures = 0
        self.consecutive_successes += 1
        self.tracking_failed = False
        self.has_tracked = True

    def mark_failed(self) -> None:
        self.consecutive_successes = 0
        self.consecutive_failures += 1
        self.tracking_failed = True
        self.failed_previously = True

    def commit_pose(self, pose: np.ndarray) -> None:
        self.pose = np.array(pose, dtype=np.float64, copy=True)

    def snapshot(self) -> "TrackingState":
        return replace(self, pose=self.pose.copy())

    def restore(self, snap: "TrackingState") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(snap, name))
        self.pose = snap.pose.copy()

    def reset(self) -> None:
        self.restore(TrackingState())
