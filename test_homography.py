"""
Tests for the 4-point homography solver and corner helpers.
"""

import numpy as np
import pytest

from geometry import Point, has_collinear_triple, order_corners
from homography import (
    Homography,
    apply_forward,
    apply_inverse,
    compute_homography,
    homography_for_quad,
    solve_linear_system,
)

SKEWED = [(112, 95), (530, 120), (560, 610), (80, 580)]
UNIT_SQUARE = [(0, 0), (1, 0), (1, 1), (0, 1)]


def test_solve_linear_system():
    x = solve_linear_system([[2, 1], [1, 3]], [3, 5])
    assert x == pytest.approx([0.8, 1.4])


def test_solve_linear_system_needs_pivoting():
    # zero in the first pivot position
    x = solve_linear_system([[0, 1], [1, 0]], [2, 3])
    assert x == pytest.approx([3, 2])


def test_solve_linear_system_singular():
    assert solve_linear_system([[1, 2], [2, 4]], [1, 2]) is None


def test_identity_quad():
    H = compute_homography(UNIT_SQUARE, UNIT_SQUARE)
    assert H is not None
    np.testing.assert_allclose(H.matrix, np.eye(3), atol=1e-9)


def test_maps_corners_onto_target():
    dst = [(0, 0), (630, 0), (630, 891), (0, 891)]
    H = compute_homography(SKEWED, dst)
    for s, d in zip(SKEWED, dst):
        p = H.forward(s)
        assert p.x == pytest.approx(d[0], abs=1e-6)
        assert p.y == pytest.approx(d[1], abs=1e-6)


@pytest.mark.parametrize("p", [(300, 300), (112, 95), (0, 0), (1000, -50)])
def test_forward_inverse_round_trip(p):
    H = homography_for_quad(SKEWED, 210, 297)
    q = apply_inverse(H, apply_forward(H, p))
    assert q.x == pytest.approx(p[0], abs=1e-6)
    assert q.y == pytest.approx(p[1], abs=1e-6)


def test_h8_is_one():
    H = compute_homography(SKEWED, UNIT_SQUARE)
    assert H.matrix[2, 2] == 1.0


def test_wrong_point_count():
    assert compute_homography(SKEWED[:3], UNIT_SQUARE[:3]) is None
    assert homography_for_quad(SKEWED[:3], 10, 10) is None


def test_degenerate_quads():
    assert homography_for_quad([(0, 0), (1, 1), (2, 2), (3, 3)], 10, 10) is None
    assert homography_for_quad([(5, 5)] * 4, 10, 10) is None
    assert homography_for_quad(SKEWED, 0, 10) is None


def test_inverse_of_singular_matrix():
    singular = Homography([[1, 2, 3], [2, 4, 6], [0, 0, 1]])
    assert apply_inverse(singular, (1, 1)) is None


def test_order_corners_any_input_order():
    shuffled = [SKEWED[2], SKEWED[0], SKEWED[3], SKEWED[1]]
    ordered = order_corners(shuffled)
    assert ordered == [Point(*c) for c in SKEWED]


def test_homography_for_quad_ignores_corner_order():
    a = homography_for_quad(SKEWED, 210, 297)
    b = homography_for_quad(list(reversed(SKEWED)), 210, 297)
    np.testing.assert_allclose(a.matrix, b.matrix, atol=1e-9)


def test_collinear_detection():
    assert has_collinear_triple([(0, 0), (1, 1), (2, 2), (0, 5)])
    assert not has_collinear_triple(UNIT_SQUARE)
