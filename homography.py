"""
homography.py – 4-point projective transform.

Builds the 8x8 system for h0..h7 (h8 fixed at 1) from four point
correspondences and solves it with Gauss-Jordan elimination and partial
pivoting. Inverse mapping uses the explicit adjugate / determinant.

Malformed or degenerate input yields None; nothing here raises.
"""

import logging
from typing import List, Optional, Sequence

import numpy as np

from geometry import Point, has_collinear_triple, order_corners

log = logging.getLogger("photoscale.homography")

PIVOT_EPS = 1e-12
DET_EPS = 1e-12


def solve_linear_system(A, b) -> Optional[np.ndarray]:
    """Solve A x = b; None if any pivot magnitude falls below PIVOT_EPS."""
    M = np.column_stack([np.asarray(A, dtype=np.float64), np.asarray(b, dtype=np.float64)])
    n = M.shape[0]
    for i in range(n):
        pivot_row = i + int(np.argmax(np.abs(M[i:, i])))
        if pivot_row != i:
            M[[i, pivot_row]] = M[[pivot_row, i]]
        pivot = M[i, i]
        if abs(pivot) < PIVOT_EPS:
            return None
        M[i, i:] /= pivot
        for k in range(n):
            if k != i:
                M[k, i:] -= M[k, i] * M[i, i:]
    return M[:, n].copy()


class Homography:
    """3x3 projective matrix with forward / inverse point mapping."""

    def __init__(self, matrix):
        self.matrix = np.asarray(matrix, dtype=np.float64).reshape(3, 3)

    @property
    def determinant(self) -> float:
        return float(np.linalg.det(self.matrix))

    def forward(self, p) -> Optional[Point]:
        return apply_forward(self.matrix, p)

    def inverse(self, p) -> Optional[Point]:
        return apply_inverse(self.matrix, p)

    def to_list(self) -> List[List[float]]:
        return self.matrix.tolist()

    def __repr__(self):
        return f"Homography({np.array2string(self.matrix, precision=4)})"


def compute_homography(src_quad: Sequence, dst_quad: Sequence) -> Optional[Homography]:
    """
    Projective transform mapping src_quad[i] onto dst_quad[i] (4 points each).
    """
    if len(src_quad) != 4 or len(dst_quad) != 4:
        return None
    A, b = [], []
    for s, d in zip(src_quad, dst_quad):
        sx, sy = Point.of(s)
        dx, dy = Point.of(d)
        A.append([sx, sy, 1, 0, 0, 0, -sx * dx, -sy * dx])
        b.append(dx)
        A.append([0, 0, 0, sx, sy, 1, -sx * dy, -sy * dy])
        b.append(dy)
    h = solve_linear_system(A, b)
    if h is None:
        log.debug("Homography solve failed: singular system")
        return None
    return Homography(np.append(h, 1.0))


def apply_forward(H, p) -> Optional[Point]:
    m = H.matrix if isinstance(H, Homography) else np.asarray(H, dtype=np.float64)
    x, y = Point.of(p)
    rho = m[2, 0] * x + m[2, 1] * y + m[2, 2]
    if abs(rho) < DET_EPS:
        return None
    return Point(
        (m[0, 0] * x + m[0, 1] * y + m[0, 2]) / rho,
        (m[1, 0] * x + m[1, 1] * y + m[1, 2]) / rho,
    )


def _adjugate(m: np.ndarray) -> np.ndarray:
    return np.array([
        [m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1], m[0, 2] * m[2, 1] - m[0, 1] * m[2, 2], m[0, 1] * m[1, 2] - m[0, 2] * m[1, 1]],
        [m[1, 2] * m[2, 0] - m[1, 0] * m[2, 2], m[0, 0] * m[2, 2] - m[0, 2] * m[2, 0], m[0, 2] * m[1, 0] - m[0, 0] * m[1, 2]],
        [m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0], m[0, 1] * m[2, 0] - m[0, 0] * m[2, 1], m[0, 0] * m[1, 1] - m[0, 1] * m[1, 0]],
    ])


def apply_inverse(H, p) -> Optional[Point]:
    m = H.matrix if isinstance(H, Homography) else np.asarray(H, dtype=np.float64)
    det = (
        m[0, 0] * (m[1, 1] * m[2, 2] - m[1, 2] * m[2, 1])
        - m[0, 1] * (m[1, 0] * m[2, 2] - m[1, 2] * m[2, 0])
        + m[0, 2] * (m[1, 0] * m[2, 1] - m[1, 1] * m[2, 0])
    )
    if abs(det) < DET_EPS:
        return None
    return apply_forward(_adjugate(m) / det, p)


def homography_for_quad(quad: Sequence, width: float, height: float) -> Optional[Homography]:
    """
    Map a 4-corner selection onto the rectangle (0,0)-(width,height).

    Corners are normalised to (TL, TR, BR, BL) first. Degenerate input
    (wrong count, coincident or collinear corners, empty target) gives None.
    """
    corners = order_corners(quad)
    if corners is None:
        log.debug("Quadrilateral needs exactly 4 corners, got %d", len(quad))
        return None
    if width <= 0 or height <= 0:
        return None
    if has_collinear_triple(corners):
        log.debug("Degenerate quadrilateral: collinear corners %s", corners)
        return None
    dst = [Point(0, 0), Point(width, 0), Point(width, height), Point(0, height)]
    H = compute_homography(corners, dst)
    if H is None or abs(H.determinant) < DET_EPS:
        return None
    return H
