import math

import numpy as np
import pytest

from fusionscan.geom.se3 import (
    Rt_to_T,
    check_transform_change,
    compose,
    euler_to_rotation,
    extract_translation,
    identity,
    inv_T,
    rotation_to_euler,
    translate,
)


def _pose(phi, theta, psi, t):
    return Rt_to_T(euler_to_rotation(phi, theta, psi), t)


def test_identity_change_is_never_rejected():
    rng = np.random.RandomState(0)
    for _ in range(50):
        angles = rng.uniform(-math.pi, math.pi, 3)
        angles[1] = rng.uniform(-1.5, 1.5)
        P = _pose(*angles, rng.uniform(-5, 5, 3))
        assert check_transform_change(P, P, 0.0, 0.0)
        assert check_transform_change(P, P.copy(), 1e-9, 1e-9)


def test_rotation_across_pi_seam_is_small():
    initial = _pose(math.pi - 0.01, 0.0, 0.0, [0, 0, 0])
    final = _pose(-math.pi + 0.01, 0.0, 0.0, [0, 0, 0])
    assert check_transform_change(initial, final, 0.1, 2.0)
    # and the reverse direction
    assert check_transform_change(final, initial, 0.1, 2.0)


def test_single_axis_over_limit_rejects():
    base = identity()
    assert not check_transform_change(base, _pose(0.0, 0.0, math.radians(25.0), [0, 0, 0]), 0.3, 20.0)
    assert not check_transform_change(base, translate(base, 0.0, 0.31, 0.0), 0.3, 20.0)
    assert check_transform_change(base, _pose(math.radians(10.0), 0.0, 0.0, [0.1, -0.1, 0.2]), 0.3, 20.0)


def test_euler_roundtrip_and_translation():
    T = _pose(0.3, -0.2, 1.1, [1.0, 2.0, 3.0])
    phi, theta, psi = rotation_to_euler(T)
    assert phi == pytest.approx(0.3)
    assert theta == pytest.approx(-0.2)
    assert psi == pytest.approx(1.1)
    assert extract_translation(T) == pytest.approx((1.0, 2.0, 3.0))


def test_inverse_and_compose():
    T = _pose(0.1, 0.2, -0.3, [0.5, -1.0, 2.0])
    np.testing.assert_allclose(compose(T, inv_T(T)), np.eye(4), atol=1e-12)


def test_translate_returns_copy():
    T = identity()
    T2 = translate(T, 0.0, 0.0, -89.6)
    assert T[2, 3] == 0.0
    assert T2[2, 3] == pytest.approx(-89.6)
