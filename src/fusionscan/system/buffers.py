from __future__ import annotations

import numpy as np

from .contracts import PointCloud
from .frames import Frame, FrameGeometry
from .preferences import VolumeBuilderPreferences


class DoubleBuffer:
    """Two preallocated arrays; write() fills the back one and swaps."""

    def __init__(self, shape: tuple[int, ...], dtype):
        self._bufs = [np.zeros(shape, dtype=dtype), np.zeros(shape, dtype=dtype)]
        self._front = 0
        self.writes = 0

    @property
    def shape(self) -> tuple[int, ...]:
        return self._bufs[0].shape

    @property
    def current(self) -> np.ndarray:
        return self._bufs[self._front]

    @property
    def previous(self) -> np.ndarray:
        return self._bufs[1 - self._front]

    def write(self, src: np.ndarray) -> np.ndarray:
        if src.shape != self.shape:
            raise ValueError(f"DoubleBuffer.write: shape {src.shape} != {self.shape}")
        back = self._bufs[1 - self._front]
        np.copyto(back, src, casting="unsafe")
        self._front = 1 - self._front
        self.writes += 1
        return back


class FrameBuffers:
    """
    Per-frame working buffers at full and downsampled depth resolution.

    Raw colour and depth are double buffered; the derived buffers are replaced
    by the tracker, relocalizer and visualizer each frame.
    """

    def __init__(self, geometry: FrameGeometry, prefs: VolumeBuilderPreferences):
        f = int(prefs.downsample_factor)
        if geometry.depth_width % f or geometry.depth_height % f:
            raise ValueError(
                f"Depth geometry {geometry.depth_width}x{geometry.depth_height} "
                f"is not divisible by downsample_factor={f}"
            )
        self.geometry = geometry
        self.factor = f

        self.raw_color = DoubleBuffer(geometry.color_shape, np.uint8)
        self.raw_depth = DoubleBuffer(geometry.depth_shape, np.uint16)
        self.timestamp_ms = 0

        h, w = geometry.depth_shape
        dh, dw = self.downsampled_shape

        # full resolution
        self.depth_float = np.zeros((h, w), np.float32)
        self.smooth_depth_float = np.zeros((h, w), np.float32)
        self.depth_cloud = PointCloud.empty(h, w)
        self.resampled_color = np.zeros((h, w, 4), np.uint8)
        self.delta_color_full = np.zeros((h, w, 4), np.uint8)
        self.surface_image = np.zeros((h, w, 4), np.uint8)
        self.normals_image = np.zeros((h, w, 4), np.uint8)

        # downsampled (tracking) resolution
        self.downsampled_depth_float = np.zeros((dh, dw), np.float32)
        self.downsampled_smooth_depth = np.zeros((dh, dw), np.float32)
        self.downsampled_cloud = PointCloud.empty(dh, dw)
        self.reference_cloud: PointCloud | None = None
        self.delta_color = np.zeros((dh, dw, 4), np.uint8)

    @property
    def full_shape(self) -> tuple[int, int]:
        return self.geometry.depth_shape

    @property
    def downsampled_shape(self) -> tuple[int, int]:
        h, w = self.geometry.depth_shape
        return (h // self.factor, w // self.factor)

    @property
    def color(self) -> np.ndarray:
        return self.raw_color.current

    @property
    def depth(self) -> np.ndarray:
        return self.raw_depth.current

    def ingest(self, frame: Frame) -> None:
        """Validate both streams, then copy them in. Raises GeometryMismatchError."""
        self.geometry.validate(frame)
        self.raw_color.write(frame.color)
        self.raw_depth.write(frame.depth)
        self.timestamp_ms = int(frame.timestamp_ms)

    def reset_reference(self) -> None:
        self.reference_cloud = None
