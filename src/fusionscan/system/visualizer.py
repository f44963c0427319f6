from __future__ import annotations

import numpy as np

from .buffers import FrameBuffers
from .contracts import ReconstructionEngine
from .preferences import VolumeBuilderPreferences
from .state import TrackingState
from ..modules.shading import depth_to_bytes, shade_point_cloud


class Visualizer:
    def __init__(self, engine: ReconstructionEngine, buffers: FrameBuffers,
                 state: TrackingState, prefs: VolumeBuilderPreferences):
        self.engine = engine
        self.buffers = buffers
        self.state = state
        self.prefs = prefs

    def render(self) -> np.ndarray:
        """Raycast the volume from the current pose at full depth resolution and shade it."""
        buf = self.buffers
        cloud = self.engine.raycast_point_cloud(self.state.pose, buf.full_shape)
        surface, normals = shade_point_cloud(cloud, self.state.pose)
        buf.surface_image[...] = surface
        buf.normals_image[...] = normals
        return buf.surface_image

    def depth_preview(self) -> np.ndarray:
        """Grey BGRA preview of the raw depth frame, near = dark."""
        buf = self.buffers
        g = depth_to_bytes(buf.depth.astype(np.float32) * 0.001,
                           self.prefs.min_depth_clip, self.prefs.max_depth_clip)
        out = np.empty(g.shape + (4,), dtype=np.uint8)
        out[..., 0] = g
        out[..., 1] = g
        out[..., 2] = g
        out[..., 3] = 255
        return out
