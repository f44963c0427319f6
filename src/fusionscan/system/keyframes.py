from __future__ import annotations

import logging

from .buffers import FrameBuffers
from .contracts import PoseFinderDatabase
from .preferences import VolumeBuilderPreferences
from .state import TrackingState
from ..modules.resample import resample_color_to_depth

logger = logging.getLogger(__name__)


class KeyframeUpdater:
    def __init__(self, database: PoseFinderDatabase, buffers: FrameBuffers,
                 state: TrackingState, prefs: VolumeBuilderPreferences):
        self.database = database
        self.buffers = buffers
        self.state = state
        self.prefs = prefs

    def due(self) -> bool:
        st = self.state
        return (
            not st.failed_previously
            and st.consecutive_successes > self.prefs.min_successful_frames_for_pose_finder
            and st.processed_frames % self.prefs.pose_finder_process_frame_interval == 0
        )

    def update(self) -> bool:
        """Propose the current frame as a keyframe. Returns True if the database took it."""
        if not self.due():
            return False

        buf = self.buffers
        h, w = buf.full_shape
        buf.resampled_color = resample_color_to_depth(buf.color, w, h, workers=self.prefs.worker_threads)
        inserted = self.database.try_insert(
            buf.depth_float, buf.resampled_color, self.state.pose,
            self.prefs.pose_finder_distance_threshold_accept,
        )
        if inserted:
            logger.info("Keyframe added at frame %d (%d stored)",
                        self.state.processed_frames, self.database.stored_count())
        return inserted
