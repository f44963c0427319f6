# src/fusionscan/system/tracker.py
from __future__ import annotations

import logging
from dataclasses import dataclass

from .buffers import FrameBuffers
from .contracts import PoseFinderDatabase, ReconstructionEngine
from .preferences import VolumeBuilderPreferences
from .relocalizer import Relocalizer
from .state import TrackingState
from ..geom.se3 import check_transform_change
from ..modules.resample import downsample_depth, upsample_color

logger = logging.getLogger(__name__)


@dataclass
class TrackResult:
    tracked: bool
    recovered: bool
    energy: float
    relocalized: bool = False
    bootstrap: bool = False


class Tracker:
    def __init__(
        self,
        engine: ReconstructionEngine,
        database: PoseFinderDatabase,
        buffers: FrameBuffers,
        state: TrackingState,
        prefs: VolumeBuilderPreferences,
        relocalizer: Relocalizer | None = None,
    ):
        self.engine = engine
        self.database = database
        self.buffers = buffers
        self.state = state
        self.prefs = prefs
        self.relocalizer = relocalizer or Relocalizer(engine, database, buffers, state, prefs)
        self.alignments = 0

    def track(self) -> TrackResult:
        """
        Frame-to-model tracking of the frame currently held in the buffers.

        Responsibilities:
          1) clip raw depth to a float image (engine)
          2) downsample + flip, smooth, build the observed point cloud
          3) raycast the model from the current pose and align against it
          4) accept the candidate pose if alignment succeeded and the motion is within limits
          5) otherwise mark lost and try to relocalize (never on the first frame since reset)

        Engine errors propagate to the caller; state is only mutated after alignment.
        """
        prefs = self.prefs
        buf = self.buffers
        engine = self.engine
        state = self.state
        workers = prefs.worker_threads

        # --- 1) depth float
        raw = buf.depth
        buf.depth_float = engine.depth_to_float(raw, prefs.min_depth_clip, prefs.max_depth_clip)

        # --- 2) observed cloud at tracking resolution
        downsample_depth(raw, buf.factor, workers=workers, out=buf.downsampled_depth_float)
        buf.downsampled_smooth_depth = engine.smooth(
            buf.downsampled_depth_float, prefs.smoothing_kernel_width, prefs.smoothing_distance_threshold
        )
        buf.downsampled_cloud = engine.point_cloud_from_depth(buf.downsampled_smooth_depth)

        # --- 3) model cloud + alignment
        model = engine.raycast_point_cloud(state.pose, buf.downsampled_shape)
        buf.reference_cloud = model

        compute_delta = self.alignments % prefs.delta_frame_calculation_interval == 0
        self.alignments += 1
        result = engine.align_point_clouds(
            model,
            buf.downsampled_cloud,
            engine.align_iterations(prefs.align_iterations),
            state.pose,
            compute_delta=compute_delta,
        )
        if result.delta is not None:
            buf.delta_color = result.delta
            upsample_color(result.delta, buf.factor, workers=workers, out=buf.delta_color_full)
        state.last_energy = float(result.energy)

        # --- 4) accept
        accepted = result.success and check_transform_change(
            state.pose, result.pose, prefs.max_translation_delta, prefs.max_rotation_delta_degrees
        )
        if accepted:
            state.commit_pose(result.pose)
            state.mark_succeeded()
            return TrackResult(True, False, float(result.energy))

        # --- 5) reject
        if not state.has_tracked:
            # nothing to track against yet: keep the prior pose and let the frame seed the volume
            logger.debug("Alignment rejected before first success since reset; keeping pose")
            state.mark_succeeded()
            return TrackResult(True, False, float(result.energy), bootstrap=True)

        state.mark_failed()
        logger.warning("Tracking lost (success=%s, energy=%.6f, failures=%d)",
                       result.success, result.energy, state.consecutive_failures)

        if self.database.stored_count() == 0:
            return TrackResult(False, False, float(result.energy))

        state.relocalizing = True
        try:
            reloc = self.relocalizer.relocalize()
        finally:
            state.relocalizing = False

        if reloc.success:
            state.mark_succeeded()
            state.last_energy = reloc.energy
            logger.info("Tracking recovered by relocalization (energy=%.6f)", reloc.energy)
            return TrackResult(True, True, reloc.energy, relocalized=True)
        return TrackResult(False, False, float(result.energy), relocalized=True)
