from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True)
class CameraIntrinsics:
    """Pinhole intrinsics for a reference image size; rescaled per buffer."""
    fx: float
    fy: float
    cx: float
    cy: float
    width: int
    height: int

    @classmethod
    def from_cfg(cls, cam: dict, width: int, height: int) -> "CameraIntrinsics":
        return cls(
            fx=float(cam["fx"]),
            fy=float(cam["fy"]),
            cx=float(cam["cx"]),
            cy=float(cam["cy"]),
            width=int(cam.get("width", width)),
            height=int(cam.get("height", height)),
        )

    def scaled(self, width: int, height: int) -> "CameraIntrinsics":
        if width == self.width and height == self.height:
            return self
        sx = width / float(self.width)
        sy = height / float(self.height)
        return CameraIntrinsics(self.fx * sx, self.fy * sy, self.cx * sx, self.cy * sy, int(width), int(height))

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx], [0.0, self.fy, self.cy], [0.0, 0.0, 1.0]], dtype=np.float64)

    def pixel_grid(self) -> tuple[np.ndarray, np.ndarray]:
        """Normalized image-plane coordinates (x/z, y/z) for every pixel, (H,W) each."""
        u = np.arange(self.width, dtype=np.float64)
        v = np.arange(self.height, dtype=np.float64)
        uu, vv = np.meshgrid(u, v)
        return (uu - self.cx) / self.fx, (vv - self.cy) / self.fy
