from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np

from .buffers import FrameBuffers
from .contracts import PoseFinderDatabase, ReconstructionEngine
from .preferences import VolumeBuilderPreferences
from .state import TrackingState
from ..modules.resample import resample_color_to_depth

logger = logging.getLogger(__name__)


@dataclass
class RelocalizeResult:
    success: bool
    energy: float
    pose: np.ndarray | None = None
    tested: int = 0
    reason: str = ""


class Relocalizer:
    """
    Recover a pose from the keyframe database after frame-to-model tracking failed.

    Candidates are scored by aligning the full-resolution depth cloud against a
    raycast from each candidate pose. Two bests are kept:
      - lowest energy over all candidates (candidate pose, adopted on failure)
      - best energy in (min_align_energy, max_align_energy) among successful
        alignments (aligned pose, the only true recovery)
    """

    def __init__(
        self,
        engine: ReconstructionEngine,
        database: PoseFinderDatabase,
        buffers: FrameBuffers,
        state: TrackingState,
        prefs: VolumeBuilderPreferences,
    ):
        self.engine = engine
        self.database = database
        self.buffers = buffers
        self.state = state
        self.prefs = prefs

    def relocalize(self) -> RelocalizeResult:
        prefs = self.prefs
        buf = self.buffers
        engine = self.engine

        if self.database.stored_count() == 0:
            return RelocalizeResult(False, float("inf"), reason="empty_database")

        h, w = buf.full_shape
        buf.resampled_color = resample_color_to_depth(buf.color, w, h, workers=prefs.worker_threads)
        matches = self.database.find_pose(buf.depth_float, buf.resampled_color)
        if matches is None or matches.count == 0:
            logger.warning("Relocalization: no candidate poses")
            return RelocalizeResult(False, float("inf"), reason="no_candidates")
        if matches.min_distance >= prefs.pose_finder_distance_threshold_reject:
            logger.warning("Relocalization: closest keyframe too far (%.3f >= %.3f)",
                           matches.min_distance, prefs.pose_finder_distance_threshold_reject)
            return RelocalizeResult(False, float("inf"), reason="too_far")

        buf.smooth_depth_float = engine.smooth(
            buf.depth_float, prefs.smoothing_kernel_width, prefs.smoothing_distance_threshold
        )
        buf.depth_cloud = engine.point_cloud_from_depth(buf.smooth_depth_float)

        iterations = engine.align_iterations(prefs.align_iterations)
        best_energy = float(prefs.max_align_energy_for_success)
        best_pose = None
        smallest_energy = float("inf")
        smallest_pose = None

        tests = min(int(prefs.max_pose_finder_pose_tests), matches.count)
        for n in range(tests):
            candidate = matches.poses[n]
            model = engine.raycast_point_cloud(candidate, buf.full_shape)
            result = engine.align_point_clouds(model, buf.depth_cloud, iterations, candidate)
            energy = float(result.energy)
            logger.debug("Relocalization candidate %d: success=%s energy=%.6f", n, result.success, energy)

            if result.success and prefs.min_align_energy_for_success < energy < best_energy:
                best_energy = energy
                best_pose = result.pose
            if energy < smallest_energy:
                smallest_energy = energy
                smallest_pose = candidate

        if best_pose is not None:
            self.state.commit_pose(best_pose)
            buf.reset_reference()
            return RelocalizeResult(True, best_energy, self.state.pose.copy(), tests, "recovered")

        if smallest_pose is not None:
            # keep moving from the closest candidate; tracking stays lost
            self.state.commit_pose(smallest_pose)
            buf.reset_reference()
        logger.warning("Relocalization failed after %d candidate(s), lowest energy %.6f", tests, smallest_energy)
        return RelocalizeResult(False, smallest_energy, None if smallest_pose is None else self.state.pose.copy(),
                                tests, "no_acceptable_candidate")
