from __future__ import annotations

import numpy as np

from ..system.contracts import PointCloud

AMBIENT = 0.2


def map_depth_to_byte(depth: float, min_depth: float, max_depth: float) -> int:
    if depth >= max_depth:
        return 255
    if depth <= min_depth:
        return 0
    return int(round((depth - min_depth) / float(max_depth - min_depth) * 255.0))


def depth_to_bytes(depth: np.ndarray, min_depth: float, max_depth: float) -> np.ndarray:
    """Vectorized map_depth_to_byte, (H,W) -> (H,W) uint8."""
    d = np.asarray(depth, dtype=np.float64)
    scaled = np.rint((d - min_depth) / float(max_depth - min_depth) * 255.0)
    out = np.clip(scaled, 0, 255).astype(np.uint8)
    out[d >= max_depth] = 255
    out[d <= min_depth] = 0
    return out


def shade_point_cloud(cloud: PointCloud, pose: np.ndarray | None = None) -> tuple[np.ndarray, np.ndarray]:
    """
    Lambertian shading with the light at the camera.

    Returns:
        surface: (H,W,4) uint8 BGRA grey-shaded surface
        normals: (H,W,4) uint8 BGRA normal map (xyz -> RGB)
    """
    h, w = cloud.shape
    valid = cloud.valid
    T = np.eye(4) if pose is None else np.asarray(pose, dtype=np.float64)
    if cloud.pose is None:
        T = np.eye(4)
    R, t = T[:3, :3], T[:3, 3]

    p_c = cloud.points.reshape(-1, 3).astype(np.float64) @ R.T + t
    n_c = cloud.normals.reshape(-1, 3).astype(np.float64) @ R.T

    to_cam = -p_c
    to_cam /= (np.linalg.norm(to_cam, axis=1, keepdims=True) + 1e-12)
    lambert = np.clip(np.sum(n_c * to_cam, axis=1), 0.0, 1.0)
    intensity = (AMBIENT + (1.0 - AMBIENT) * lambert).reshape(h, w)

    surface = np.zeros((h, w, 4), dtype=np.uint8)
    grey = np.rint(intensity * 255.0).astype(np.uint8)
    surface[..., 0] = grey
    surface[..., 1] = grey
    surface[..., 2] = grey
    surface[..., 3] = 255
    surface[~valid, :3] = 0

    normals = np.zeros((h, w, 4), dtype=np.uint8)
    rgb = np.rint((np.clip(n_c, -1.0, 1.0) + 1.0) * 127.5).astype(np.uint8).reshape(h, w, 3)
    normals[..., 0] = rgb[..., 2]
    normals[..., 1] = rgb[..., 1]
    normals[..., 2] = rgb[..., 0]
    normals[..., 3] = 255
    normals[~valid, :3] = 0
    return surface, normals
