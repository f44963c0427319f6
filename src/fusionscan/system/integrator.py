from __future__ import annotations

import logging

from .buffers import FrameBuffers
from .contracts import ReconstructionEngine
from .errors import EngineError
from .preferences import VolumeBuilderPreferences
from .state import TrackingState

logger = logging.getLogger(__name__)


class Integrator:
    """Fuses the current depth frame unless tracking is (or was recently) failed."""

    def __init__(self, engine: ReconstructionEngine, buffers: FrameBuffers,
                 state: TrackingState, prefs: VolumeBuilderPreferences):
        self.engine = engine
        self.buffers = buffers
        self.state = state
        self.prefs = prefs
        self.integrated = 0

    def should_integrate(self) -> bool:
        st = self.state
        if st.tracking_failed:
            return False
        if st.failed_previously and st.consecutive_successes < self.prefs.min_successful_frames_after_failure:
            return False
        return True

    def integrate(self) -> bool:
        if not self.should_integrate():
            return False

        try:
            self.engine.integrate(self.buffers.depth_float, self.prefs.integration_weight, self.state.pose)
        except EngineError:
            logger.exception("Integration failed; frame not fused")
            return False
        self.state.failed_previously = False
        self.integrated += 1
        return True
