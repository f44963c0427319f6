# src/fusionscan/modules/cpu_volume.py
"""
Reference reconstruction engine on Open3D's CPU device.

Volume: Open3D VoxelBlockGrid holding a truncated signed distance field,
restricted to the configured voxels_x/y/z box. Per-voxel weight is capped at
the integration weight.
Raycast: VoxelBlockGrid.ray_cast renders depth; points and normals are
lifted from it here.
Tracking: Open3D point-to-plane ICP, run one step at a time. Each step is
projected onto the pose directions the correspondences constrain, so a flat
wall cannot slide the pose along itself.

Depth images handled by this engine are horizontally mirrored (column u holds
sensor column W-1-u), matching downsample_depth.
"""
from __future__ import annotations

import logging

import cv2
import numpy as np
import open3d as o3d
import open3d.core as o3c

from ..geom.camera import CameraIntrinsics
from ..geom.se3 import inv_T
from ..system.contracts import AlignmentResult, PointCloud, ReconstructionEngine
from ..system.errors import EngineError, PipelineInitError
from ..system.preferences import VolumeBuilderPreferences

logger = logging.getLogger(__name__)

DEPTH_SCALE = 1000.0  # depth images go to Open3D as uint16 millimetres
MIN_CORRESPONDENCES = 6


def estimate_normals(points: np.ndarray, valid: np.ndarray, origin: np.ndarray,
                     max_edge: float = 0.1) -> np.ndarray:
    """
    Per-pixel normals from forward-difference cross products, oriented towards `origin`.

    Pixels without valid right/bottom neighbours, or with an edge longer than
    max_edge (depth discontinuity), get a zero normal.
    """
    h, w = valid.shape
    normals = np.zeros((h, w, 3), dtype=np.float32)
    if h < 2 or w < 2:
        return normals

    P = points.astype(np.float64)
    dx = P[:-1, 1:] - P[:-1, :-1]
    dy = P[1:, :-1] - P[:-1, :-1]
    n = np.cross(dx, dy)
    norm = np.linalg.norm(n, axis=2)

    ok = valid[:-1, :-1] & valid[:-1, 1:] & valid[1:, :-1]
    ok &= norm > 1e-12
    ok &= np.linalg.norm(dx, axis=2) < max_edge
    ok &= np.linalg.norm(dy, axis=2) < max_edge

    n = n / np.maximum(norm, 1e-12)[..., None]
    view = P[:-1, :-1] - np.asarray(origin, dtype=np.float64).reshape(1, 1, 3)
    flip = np.sum(n * view, axis=2) > 0.0
    n[flip] *= -1.0
    n[~ok] = 0.0
    normals[:-1, :-1] = n.astype(np.float32)
    return normals


def _twist_to_matrix(x: np.ndarray) -> np.ndarray:
    R, _ = cv2.Rodrigues(np.ascontiguousarray(x[:3], dtype=np.float64).reshape(3, 1))
    T = np.eye(4)
    T[:3, :3] = R
    T[:3, 3] = x[3:]
    return T


class CpuReconstructionEngine(ReconstructionEngine):
    def __init__(
        self,
        prefs: VolumeBuilderPreferences,
        intrinsics: CameraIntrinsics,
        *,
        truncation_voxels: float = 4.0,
        block_resolution: int = 16,
        max_correspondence_distance: float = 0.1,
        min_correspondence_ratio: float = 0.1,
        degeneracy_ratio: float = 1e-2,
        device: str = "CPU:0",
    ):
        self.prefs = prefs
        self.intrinsics = intrinsics
        self.shape = (int(prefs.voxels_x), int(prefs.voxels_y), int(prefs.voxels_z))
        self.voxel_size = 1.0 / float(prefs.voxels_per_meter)
        self.truncation_voxels = float(truncation_voxels)
        self.truncation = self.truncation_voxels * self.voxel_size
        self.block_resolution = int(block_resolution)
        self.block_extent = -(-np.array(self.shape, dtype=np.int64) // self.block_resolution)
        self.max_correspondence_distance = float(max_correspondence_distance)
        self.min_correspondence_ratio = float(min_correspondence_ratio)
        self.degeneracy_ratio = float(degeneracy_ratio)
        self.device = o3c.Device(device)

        try:
            self.vbg = self._new_grid()
        except (RuntimeError, MemoryError) as ex:
            raise PipelineInitError(
                f"Cannot allocate a {self.shape[0]}x{self.shape[1]}x{self.shape[2]} volume: {ex}"
            ) from ex

        self._blocks = np.zeros((0, 3), np.int32)
        self.world_to_volume = self.default_world_to_volume()
        self._grid_from_world = self._grid_transform(self.world_to_volume)
        self.integrated_frames = 0
        self._released = False
        logger.info("Voxel block grid %dx%dx%d at %.1f voxels/m (truncation %.4f m, %d blocks)",
                    *self.shape, prefs.voxels_per_meter, self.truncation, int(np.prod(self.block_extent)))

    # ----- volume bookkeeping

    def _new_grid(self) -> o3d.t.geometry.VoxelBlockGrid:
        return o3d.t.geometry.VoxelBlockGrid(
            attr_names=("tsdf", "weight"),
            attr_dtypes=(o3c.float32, o3c.float32),
            attr_channels=((1), (1)),
            voxel_size=self.voxel_size,
            block_resolution=self.block_resolution,
            block_count=int(np.prod(self.block_extent)),
            device=self.device,
        )

    def default_world_to_volume(self) -> np.ndarray:
        """World metres -> voxel indices; camera origin at the centre of the front face."""
        vpm = float(self.prefs.voxels_per_meter)
        T = np.diag([vpm, vpm, vpm, 1.0])
        T[0, 3] = self.shape[0] / 2.0
        T[1, 3] = self.shape[1] / 2.0
        return T

    def _grid_transform(self, world_to_volume: np.ndarray) -> np.ndarray:
        """World -> grid metres (voxel index * voxel size); must be rigid."""
        G = np.diag([self.voxel_size, self.voxel_size, self.voxel_size, 1.0]) @ world_to_volume
        R = G[:3, :3]
        if not np.allclose(R @ R.T, np.eye(3), atol=1e-6):
            raise EngineError("World-to-volume must scale by voxels_per_meter around a rigid transform")
        return G

    def _check_alive(self) -> None:
        if self._released:
            raise EngineError("Engine used after release()")

    def reset(self, pose: np.ndarray, world_to_volume: np.ndarray) -> None:
        self._check_alive()
        w2v = np.asarray(world_to_volume, dtype=np.float64)
        if w2v.shape != (4, 4):
            raise EngineError("Invalid world-to-volume transform")
        # the volume is anchored at the reset camera
        anchored = w2v @ np.asarray(pose, dtype=np.float64)
        grid_from_world = self._grid_transform(anchored)
        try:
            self.vbg = self._new_grid()
        except (RuntimeError, MemoryError) as ex:
            raise EngineError(f"Cannot reallocate the volume: {ex}") from ex
        self.world_to_volume = anchored
        self._grid_from_world = grid_from_world
        self._blocks = np.zeros((0, 3), np.int32)
        self.integrated_frames = 0

    def release(self) -> None:
        self._released = True
        self.vbg = None

    def _intrinsic(self, h: int, w: int) -> o3c.Tensor:
        return o3c.Tensor(self.intrinsics.scaled(w, h).K, dtype=o3c.float64)

    def _extrinsic(self, pose: np.ndarray) -> o3c.Tensor:
        """Grid -> camera."""
        E = np.asarray(pose, dtype=np.float64) @ inv_T(self._grid_from_world)
        return o3c.Tensor(np.ascontiguousarray(E), dtype=o3c.float64)

    @staticmethod
    def _range_map_factor(h: int, w: int) -> int:
        for f in (8, 4, 2):
            if h % f == 0 and w % f == 0 and min(h, w) >= 4 * f:
                return f
        return 1

    def _inside_volume(self, coords: np.ndarray) -> np.ndarray:
        coords = np.asarray(coords, dtype=np.int32).reshape(-1, 3)
        keep = np.all((coords >= 0) & (coords < self.block_extent), axis=1)
        return coords[keep]

    # ----- depth processing

    def depth_to_float(self, depth: np.ndarray, min_clip: float, max_clip: float) -> np.ndarray:
        self._check_alive()
        d = depth[:, ::-1].astype(np.float32) * np.float32(0.001)
        d[(d < min_clip) | (d > max_clip)] = 0.0
        return d

    def smooth(self, depth_float: np.ndarray, kernel_width: int, distance_threshold: float) -> np.ndarray:
        """Average of valid neighbours within distance_threshold of the centre, (2k+1)^2 window."""
        self._check_alive()
        k = int(kernel_width)
        if k <= 0:
            return depth_float.copy()

        h, w = depth_float.shape
        pad = np.pad(depth_float.astype(np.float32), k, mode="constant")
        center = depth_float.astype(np.float32)
        acc = np.zeros((h, w), np.float32)
        cnt = np.zeros((h, w), np.float32)
        for dy in range(-k, k + 1):
            for dx in range(-k, k + 1):
                nb = pad[k + dy:k + dy + h, k + dx:k + dx + w]
                use = (nb > 0.0) & (np.abs(nb - center) <= distance_threshold)
                acc[use] += nb[use]
                cnt[use] += 1.0

        out = np.zeros((h, w), np.float32)
        ok = (center > 0.0) & (cnt > 0.0)
        out[ok] = acc[ok] / cnt[ok]
        return out

    def point_cloud_from_depth(self, depth_float: np.ndarray) -> PointCloud:
        self._check_alive()
        h, w = depth_float.shape
        xn, yn = self.intrinsics.scaled(w, h).pixel_grid()
        xn = xn[:, ::-1]
        z = depth_float.astype(np.float64)
        pts = np.stack([xn * z, yn * z, z], axis=2)
        valid = z > 0.0
        normals = estimate_normals(pts, valid, np.zeros(3))
        pts[~valid] = 0.0
        return PointCloud(pts.astype(np.float32), normals, pose=None)

    # ----- integration

    def integrate(self, depth_float: np.ndarray, weight: int, pose: np.ndarray) -> None:
        """Fuse one mirrored depth frame into the TSDF; per-voxel weight is capped at `weight`."""
        self._check_alive()
        if weight < 1:
            raise EngineError(f"Invalid integration weight {weight}")

        h, w = depth_float.shape
        mm = np.clip(np.rint(depth_float[:, ::-1] * DEPTH_SCALE), 0, 65535).astype(np.uint16)
        depth = o3d.t.geometry.Image(np.ascontiguousarray(mm)).to(self.device)
        K = self._intrinsic(h, w)
        E = self._extrinsic(pose)
        try:
            coords = self.vbg.compute_unique_block_coordinates(
                depth, K, E,
                depth_scale=DEPTH_SCALE,
                depth_max=self.prefs.max_depth_clip,
                trunc_voxel_multiplier=self.truncation_voxels,
            )
            inside = self._inside_volume(coords.cpu().numpy())
            if inside.shape[0]:
                self.vbg.integrate(
                    o3c.Tensor(inside, dtype=o3c.int32, device=self.device), depth, K, E,
                    depth_scale=DEPTH_SCALE,
                    depth_max=self.prefs.max_depth_clip,
                    trunc_voxel_multiplier=self.truncation_voxels,
                )
                self.vbg.attribute("weight").clip_(0.0, float(weight))
                self._blocks = np.unique(np.vstack([self._blocks, inside]), axis=0)
        except RuntimeError as ex:
            raise EngineError(f"Integration failed: {ex}") from ex
        self.integrated_frames += 1

    # ----- raycast

    def raycast_point_cloud(self, pose: np.ndarray, shape: tuple[int, int]) -> PointCloud:
        """Surface seen from `pose` as a world-space point cloud of the requested (H,W) size."""
        self._check_alive()
        h, w = int(shape[0]), int(shape[1])
        pose = np.array(pose, dtype=np.float64)
        if self.integrated_frames == 0 or self._blocks.shape[0] == 0:
            cloud = PointCloud.empty(h, w)
            cloud.pose = pose
            return cloud

        try:
            result = self.vbg.ray_cast(
                block_coords=o3c.Tensor(self._blocks, dtype=o3c.int32, device=self.device),
                intrinsic=self._intrinsic(h, w),
                extrinsic=self._extrinsic(pose),
                width=w,
                height=h,
                render_attributes=["depth"],
                depth_scale=DEPTH_SCALE,
                depth_min=self.prefs.min_depth_clip,
                depth_max=self.prefs.max_depth_clip,
                weight_threshold=0.5,
                trunc_voxel_multiplier=self.truncation_voxels,
                range_map_down_factor=self._range_map_factor(h, w),
            )
            depth = result["depth"].cpu().numpy()
        except RuntimeError as ex:
            raise EngineError(f"Raycast failed: {ex}") from ex

        depth = depth.reshape(h, w)[:, ::-1].astype(np.float32) / np.float32(DEPTH_SCALE)
        depth[~np.isfinite(depth)] = 0.0
        cam = self.point_cloud_from_depth(depth)

        T_wc = inv_T(pose)
        valid = cam.valid
        pts = cam.points.astype(np.float64) @ T_wc[:3, :3].T + T_wc[:3, 3]
        normals = cam.normals.astype(np.float64) @ T_wc[:3, :3].T
        pts[~valid] = 0.0
        normals[~valid] = 0.0
        return PointCloud(pts.astype(np.float32), normals.astype(np.float32), pose=pose)

    # ----- alignment

    def align_point_clouds(
        self,
        model: PointCloud,
        observed: PointCloud,
        max_iterations: int,
        pose: np.ndarray,
        compute_delta: bool = False,
    ) -> AlignmentResult:
        """
        Point-to-plane ICP of the observed (camera-space) cloud against the model (world-space) cloud.

        energy: RMS point-to-plane residual in metres over the final correspondences.
        """
        self._check_alive()
        if model.shape != observed.shape:
            raise EngineError(f"Point cloud sizes differ: {model.shape} vs {observed.shape}")

        h, w = observed.shape
        pose = np.asarray(pose, dtype=np.float64)
        obs_valid = observed.valid.reshape(-1)
        pix = np.flatnonzero(obs_valid)
        src = observed.points.reshape(-1, 3)[obs_valid].astype(np.float64)
        m_valid = model.valid.reshape(-1)
        tgt = model.points.reshape(-1, 3)[m_valid].astype(np.float64)
        tgt_n = model.normals.reshape(-1, 3)[m_valid].astype(np.float64)

        if src.shape[0] < MIN_CORRESPONDENCES or tgt.shape[0] < MIN_CORRESPONDENCES:
            delta = self._delta_image((h, w), pix[:0], np.zeros(0)) if compute_delta else None
            return AlignmentResult(False, float("inf"), pose.copy(), delta)

        reg = o3d.pipelines.registration
        source = o3d.geometry.PointCloud(o3d.utility.Vector3dVector(src))
        target = o3d.geometry.PointCloud(o3d.utility.Vector3dVector(tgt))
        target.normals = o3d.utility.Vector3dVector(tgt_n)
        estimation = reg.TransformationEstimationPointToPlane()
        one_step = reg.ICPConvergenceCriteria(max_iteration=1)

        T = inv_T(pose)  # camera -> world
        corr = self._correspondences(source, target, T)
        for _ in range(max(1, int(max_iterations))):
            if corr.shape[0] < MIN_CORRESPONDENCES:
                break
            res = reg.registration_icp(source, target, self.max_correspondence_distance, T,
                                       estimation, one_step)
            step = np.asarray(res.transformation) @ inv_T(T)
            if not np.all(np.isfinite(step)):
                break
            x = self._observable_step(step, src, tgt_n, T, corr)
            T = _twist_to_matrix(x) @ T
            corr = self._correspondences(source, target, T)
            if np.linalg.norm(x) < 1e-6:
                break

        n_corr = int(corr.shape[0])
        r = self._residuals(src, tgt, tgt_n, T, corr)
        energy = float(np.sqrt(np.mean(r * r))) if n_corr else float("inf")
        delta = self._delta_image((h, w), pix[corr[:, 0]], r) if compute_delta else None
        if n_corr < MIN_CORRESPONDENCES or n_corr < self.min_correspondence_ratio * src.shape[0]:
            return AlignmentResult(False, energy, pose.copy(), delta)
        return AlignmentResult(True, energy, inv_T(T), delta)

    def _correspondences(self, source, target, T: np.ndarray) -> np.ndarray:
        ev = o3d.pipelines.registration.evaluate_registration(
            source, target, self.max_correspondence_distance, T)
        return np.asarray(ev.correspondence_set, dtype=np.int64).reshape(-1, 2)

    @staticmethod
    def _residuals(src, tgt, tgt_n, T: np.ndarray, corr: np.ndarray) -> np.ndarray:
        s = src[corr[:, 0]] @ T[:3, :3].T + T[:3, 3]
        return np.sum((s - tgt[corr[:, 1]]) * tgt_n[corr[:, 1]], axis=1)

    def _observable_step(self, step: np.ndarray, src, tgt_n, T: np.ndarray, corr: np.ndarray) -> np.ndarray:
        """
        ICP increment as a twist (rotation vector, translation) with the unconstrained part removed.

        The point-to-plane Jacobian of the current correspondences has near-zero
        eigenvalues along motions that do not change any residual (sliding along
        a plane, turning about its normal). Those components are dropped.
        """
        rvec, _ = cv2.Rodrigues(np.ascontiguousarray(step[:3, :3]))
        x = np.concatenate([rvec.reshape(3), step[:3, 3]])

        s = src[corr[:, 0]] @ T[:3, :3].T + T[:3, 3]
        n = tgt_n[corr[:, 1]]
        J = np.hstack([np.cross(s, n), n])
        evals, evecs = np.linalg.eigh(J.T @ J)
        keep = evals > self.degeneracy_ratio * max(float(evals[-1]), 1e-12)
        basis = evecs[:, keep]
        return basis @ (basis.T @ x)

    def _delta_image(self, shape: tuple[int, int], px: np.ndarray, residual: np.ndarray) -> np.ndarray:
        """Residual magnitude per pixel: green (small) to red (large); black without a correspondence."""
        h, w = shape
        img = np.zeros((h * w, 4), np.uint8)
        img[:, 3] = 255
        if px.size:
            a = np.clip(np.abs(residual) / self.max_correspondence_distance, 0.0, 1.0)
            img[px, 2] = np.rint(a * 255.0).astype(np.uint8)
            img[px, 1] = np.rint((1.0 - a) * 255.0).astype(np.uint8)
        return img.reshape(h, w, 4)
