import math

import numpy as np


def identity() -> np.ndarray:
    return np.eye(4, dtype=np.float64)


def Rt_to_T(R: np.ndarray, t: np.ndarray) -> np.ndarray:
    T = np.eye(4)
    T[:3,:3] = R
    T[:3, 3] = np.asarray(t, dtype=np.float64).reshape(3)
    return T

def inv_T(T: np.ndarray) -> np.ndarray:
    R = T[:3,:3]; t = T[:3,3]
    Ti = np.eye(4)
    Ti[:3,:3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def compose(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """a @ b: apply b first, then a."""
    return np.asarray(a, dtype=np.float64) @ np.asarray(b, dtype=np.float64)


def translate(T: np.ndarray, dx: float = 0.0, dy: float = 0.0, dz: float = 0.0) -> np.ndarray:
    out = np.array(T, dtype=np.float64, copy=True)
    out[0, 3] += dx
    out[1, 3] += dy
    out[2, 3] += dz
    return out


def rotation_to_euler(T: np.ndarray) -> tuple[float, float, float]:
    """
    Euler angles (rotation about x, y, z) of the upper-left 3x3 block.

    Inverse of euler_to_rotation for theta in (-pi/2, pi/2).
    """
    R = np.asarray(T, dtype=np.float64)[:3, :3]
    phi = math.atan2(R[2, 1], R[2, 2])
    theta = math.asin(max(-1.0, min(1.0, -R[2, 0])))
    psi = math.atan2(R[1, 0], R[0, 0])
    return phi, theta, psi


def euler_to_rotation(phi: float, theta: float, psi: float) -> np.ndarray:
    cx, sx = math.cos(phi), math.sin(phi)
    cy, sy = math.cos(theta), math.sin(theta)
    cz, sz = math.cos(psi), math.sin(psi)
    Rx = np.array([[1.0, 0.0, 0.0], [0.0, cx, -sx], [0.0, sx, cx]])
    Ry = np.array([[cy, 0.0, sy], [0.0, 1.0, 0.0], [-sy, 0.0, cy]])
    Rz = np.array([[cz, -sz, 0.0], [sz, cz, 0.0], [0.0, 0.0, 1.0]])
    return Rz @ Ry @ Rx


def extract_translation(T: np.ndarray) -> tuple[float, float, float]:
    t = np.asarray(T, dtype=np.float64)[:3, 3]
    return float(t[0]), float(t[1]), float(t[2])


def check_transform_change(
    initial: np.ndarray,
    final: np.ndarray,
    max_trans: float,
    max_rot_degrees: float,
) -> bool:
    """
    True if the motion from `initial` to `final` stays within per-axis limits.

    Each of the three euler angles and three translation components is checked
    on its own; a single axis over its limit rejects the whole change.
    Angles on opposite sides of the +-pi seam are unwrapped before differencing.
    """
    max_rot = math.radians(max_rot_degrees)

    euler_initial = list(rotation_to_euler(initial))
    euler_final = list(rotation_to_euler(final))
    trans_initial = extract_translation(initial)
    trans_final = extract_translation(final)

    for i in range(3):
        if euler_initial[i] >= math.pi - max_rot and euler_final[i] < max_rot - math.pi:
            euler_initial[i] -= 2.0 * math.pi
        elif euler_final[i] >= math.pi - max_rot and euler_initial[i] < max_rot - math.pi:
            euler_final[i] -= 2.0 * math.pi

        if abs(euler_initial[i] - euler_final[i]) > max_rot:
            return False
        if abs(trans_initial[i] - trans_final[i]) > max_trans:
            return False

    return True
