from __future__ import annotations

import argparse
import logging
from pathlib import Path

import cv2
import numpy as np
import matplotlib.pyplot as plt

try:
    import yaml
except ImportError as ex:
    raise ImportError("PyYAML is required. Install with: pip install pyyaml") from ex

from fusionscan.dataset.tum import TumRgbdSequence
from fusionscan.geom.camera import CameraIntrinsics
from fusionscan.geom.se3 import inv_T
from fusionscan.modules.cpu_volume import CpuReconstructionEngine
from fusionscan.modules.pose_finder import InMemoryPoseFinder
from fusionscan.recording.timeline import TimelineRecorder
from fusionscan.system.controller import FrameOutcome, PipelineController
from fusionscan.system.preferences import VolumeBuilderPreferences, load_config
from fusionscan.system.telemetry import Telemetry


def _R_to_quat_xyzw(R: np.ndarray) -> np.ndarray:
    # Returns quaternion [x,y,z,w] from rotation matrix.
    m = R.astype(np.float64)
    trace = float(np.trace(m))
    if trace > 0.0:
        s = np.sqrt(trace + 1.0) * 2.0
        qw = 0.25 * s
        qx = (m[2, 1] - m[1, 2]) / s
        qy = (m[0, 2] - m[2, 0]) / s
        qz = (m[1, 0] - m[0, 1]) / s
    elif m[0, 0] > m[1, 1] and m[0, 0] > m[2, 2]:
        s = np.sqrt(1.0 + m[0, 0] - m[1, 1] - m[2, 2]) * 2.0
        qw = (m[2, 1] - m[1, 2]) / s
        qx = 0.25 * s
        qy = (m[0, 1] + m[1, 0]) / s
        qz = (m[0, 2] + m[2, 0]) / s
    elif m[1, 1] > m[2, 2]:
        s = np.sqrt(1.0 + m[1, 1] - m[0, 0] - m[2, 2]) * 2.0
        qw = (m[0, 2] - m[2, 0]) / s
        qx = (m[0, 1] + m[1, 0]) / s
        qy = 0.25 * s
        qz = (m[1, 2] + m[2, 1]) / s
    else:
        s = np.sqrt(1.0 + m[2, 2] - m[0, 0] - m[1, 1]) * 2.0
        qw = (m[1, 0] - m[0, 1]) / s
        qx = (m[0, 2] + m[2, 0]) / s
        qy = (m[1, 2] + m[2, 1]) / s
        qz = 0.25 * s

    q = np.array([qx, qy, qz, qw], dtype=np.float64)
    return q / (np.linalg.norm(q) + 1e-12)


class ScanViewer:
    """Top-down camera path (green = tracked, red = lost) next to the shaded raycast."""

    def __init__(self):
        plt.ion()
        self.fig = plt.figure(figsize=(12, 5))
        self.ax_path = self.fig.add_subplot(121)
        self.ax_img = self.fig.add_subplot(122)
        self.ax_img.axis("off")

    def update(self, positions: list[np.ndarray], lost: list[bool], surface_bgra: np.ndarray, title: str):
        if not positions:
            return
        p = np.array(positions)
        lost_mask = np.array(lost, dtype=bool)

        self.ax_path.clear()
        self.ax_path.set_xlabel("X (m)")
        self.ax_path.set_ylabel("Z (m)")
        self.ax_path.set_title(f"Camera path ({len(p)} frames)")
        self.ax_path.plot(p[:, 0], p[:, 2], "b-", linewidth=1.0, alpha=0.5)
        self.ax_path.scatter(p[~lost_mask, 0], p[~lost_mask, 2], c="g", s=6)
        if np.any(lost_mask):
            self.ax_path.scatter(p[lost_mask, 0], p[lost_mask, 2], c="r", s=12, label="lost")
            self.ax_path.legend()
        self.ax_path.grid(True)
        self.ax_path.axis("equal")

        self.ax_img.clear()
        self.ax_img.axis("off")
        self.ax_img.set_title(title)
        self.ax_img.imshow(cv2.cvtColor(surface_bgra, cv2.COLOR_BGRA2RGB))

        plt.pause(0.001)

    def close(self):
        plt.ioff()
        plt.show()


def _write_traj_tum(traj_T_w_c: list[np.ndarray], ts_list: list[float], out_path: str) -> None:
    assert len(traj_T_w_c) == len(ts_list)
    with open(out_path, "w", encoding="utf-8") as f:
        for T, ts in zip(traj_T_w_c, ts_list):
            t = T[:3, 3]
            q = _R_to_quat_xyzw(T[:3, :3])  # x y z w
            f.write(f"{ts:.6f} {t[0]:.6f} {t[1]:.6f} {t[2]:.6f} {q[0]:.6f} {q[1]:.6f} {q[2]:.6f} {q[3]:.6f}\n")


def main() -> None:
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", type=str, default="configs/default.yaml")
    ap.add_argument("--tum_dir", type=str, required=True, help="Path to TUM RGB-D sequence dir, e.g. .../freiburg1_xyz")
    ap.add_argument("--out_dir", type=str, default="outputs")
    ap.add_argument("--record", type=str, default=None, help="Write a timeline recording to this path")
    ap.add_argument("--save_renders", type=int, default=0, help="Save the shaded raycast every N processed frames")
    ap.add_argument("--visualize", action="store_true", help="Show camera path and raycast while scanning")
    ap.add_argument("--viz_update_every", type=int, default=10, help="Update visualization every N frames")
    ap.add_argument("--log_every", type=int, default=50, help="Log progress every N frames")
    ap.add_argument("--log_level", type=str, default="WARNING", help="DEBUG, INFO, WARNING, ERROR")
    args = ap.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    print(f"[INFO] Loading config: {args.config}")
    cfg = load_config(args.config)
    prefs = VolumeBuilderPreferences.from_dict(cfg.get("preferences"))

    ds_cfg = cfg.get("dataset", {})
    seq_name = ds_cfg.get("sequence", Path(args.tum_dir).name)
    out_dir = Path(args.out_dir) / seq_name
    out_dir.mkdir(parents=True, exist_ok=True)
    print(f"[INFO] Output dir: {out_dir}")

    max_frames = ds_cfg.get("max_frames", None)
    if max_frames is not None:
        max_frames = int(max_frames)

    print(f"[INFO] Loading TUM sequence: {args.tum_dir}")
    seq = TumRgbdSequence(
        args.tum_dir,
        start=int(ds_cfg.get("start", 0)),
        step=int(ds_cfg.get("step", 1)),
        max_frames=max_frames,
        max_dt=float(ds_cfg.get("max_dt", 0.02)),
    )
    print(f"[INFO] Sequence frames: {len(seq)}")

    renders_dir = out_dir / "renders"
    if args.save_renders > 0:
        renders_dir.mkdir(parents=True, exist_ok=True)

    telemetry = Telemetry()
    viewer = ScanViewer() if args.visualize else None
    traj: list[np.ndarray] = []
    ts_list: list[float] = []
    positions: list[np.ndarray] = []
    lost: list[bool] = []

    with seq:
        g = seq.geometry
        intrinsics = CameraIntrinsics.from_cfg(cfg["camera"], g.depth_width, g.depth_height)
        engine = CpuReconstructionEngine(prefs, intrinsics, **cfg.get("engine", {}))
        pf_cfg = dict(cfg.get("pose_finder", {}))
        pf_cfg.setdefault("max_depth", prefs.max_depth_clip)
        database = InMemoryPoseFinder(**pf_cfg)
        recorder = TimelineRecorder(args.record) if args.record else None

        print(f"[INFO] Starting loop: depth {g.depth_width}x{g.depth_height}, color {g.color_width}x{g.color_height}")
        with PipelineController(seq, engine, database, prefs, recorder=recorder, telemetry=telemetry) as ctrl:
            frame_count = 0
            while not seq.exhausted:
                outcome = ctrl.tick()
                if outcome is FrameOutcome.STOPPED:
                    break
                if outcome in (FrameOutcome.NO_FRAME, FrameOutcome.DROPPED, FrameOutcome.SKIPPED):
                    continue
                frame_count += 1

                T_w_c = inv_T(ctrl.state.pose)
                positions.append(T_w_c[:3, 3].copy())
                lost.append(outcome is FrameOutcome.LOST)
                if outcome is not FrameOutcome.LOST:
                    traj.append(T_w_c)
                    ts_list.append(ctrl.buffers.timestamp_ms / 1000.0)

                if args.log_every > 0 and (frame_count % args.log_every == 0):
                    print(f"[INFO] Frame {frame_count} / {len(seq)} status={ctrl.state.status.value} "
                          f"keyframes={database.stored_count()}")

                processed = ctrl.state.processed_frames
                if args.save_renders > 0 and outcome is not FrameOutcome.LOST and processed % args.save_renders == 0:
                    cv2.imwrite(str(renders_dir / f"surface_{processed:06d}.png"), ctrl.buffers.surface_image)

                if viewer is not None and frame_count % args.viz_update_every == 0:
                    viewer.update(positions, lost, ctrl.buffers.surface_image,
                                  f"frame {frame_count}: {ctrl.state.status.value}")

    # Save outputs
    traj_path = str(out_dir / "traj.txt")
    metrics_path = str(out_dir / "metrics.json")
    cfg_path = str(out_dir / "config_used.yaml")

    _write_traj_tum(traj, ts_list, traj_path)
    telemetry.dump(metrics_path)
    with open(cfg_path, "w", encoding="utf-8") as f:
        yaml.safe_dump(cfg, f, sort_keys=False)

    print(f"[OK] wrote: {traj_path}")
    print(f"[OK] wrote: {metrics_path}")
    print(f"[OK] outcomes: {telemetry.summary()['outcomes']}")
    if args.record:
        print(f"[OK] wrote: {args.record}")

    if viewer is not None:
        print("[INFO] Showing final state. Close the window to exit.")
        viewer.close()


if __name__ == "__main__":
    main()
