"""
perspective.py – Perspective-corrected heights and planar reference sheets.

A known-size sheet lying on the table gives two things:
  - a px/mm scale and a rectifying homography for the table plane
  - a perspective ratio (near edge px / far edge px) describing how much
    larger things look at the front of the jig than at the back

corrected_height_mm interpolates the magnification linearly between the
far plane (x1) and the near plane (x perspective_ratio) using a per-object
depth ratio. The depth ratio is an external estimate, so the result is an
approximation, not a multi-plane reconstruction.
"""

import logging
import math
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

import config
from errors import CalibrationMissing
from geometry import Point, distance, has_collinear_triple, order_corners
from homography import Homography, homography_for_quad
from ruler import Ruler, two_point_ruler

log = logging.getLogger("photoscale.perspective")


def corrected_height_mm(height_px: float, scale_px_per_mm: float,
                        perspective_ratio: float, depth_ratio: float) -> float:
    """
    (height_px / scale) / (1 + depth_ratio * (perspective_ratio - 1))

    depth_ratio 0 = reference (far) plane, 1 = nearest plane; clamped to
    [0, 1]. perspective_ratio below 1 is treated as 1 (no correction).
    """
    if not scale_px_per_mm > 0:
        raise ValueError(f"scale_px_per_mm must be positive, got {scale_px_per_mm}")
    ratio = max(float(perspective_ratio), 1.0)
    depth = min(max(float(depth_ratio), 0.0), 1.0)
    raw_mm = height_px / scale_px_per_mm
    return raw_mm / (1.0 + depth * (ratio - 1.0))


def perspective_from_edges(near_edge_px: float, far_edge_px: float) -> Optional[float]:
    """near / far edge length; None for non-positive input."""
    if near_edge_px <= 0 or far_edge_px <= 0:
        return None
    return near_edge_px / far_edge_px


class PlanarReference:
    """
    Four corners of a sheet of known size, ordered (TL, TR, BR, BL).

    The sheet is assumed to lie with its short side across the image
    (paper width along x) and the bottom edge nearest to the camera.
    """

    def __init__(self, corners: Sequence, paper: str = "a4"):
        ordered = order_corners(corners)
        if ordered is None:
            raise ValueError("a planar reference needs exactly four corners")
        if paper not in config.PAPER_SIZES:
            raise ValueError(f"unknown paper size {paper!r}")
        self.corners: List[Point] = ordered
        self.paper = paper
        self.width_mm, self.height_mm = config.PAPER_SIZES[paper]

    @property
    def degenerate(self) -> bool:
        return has_collinear_triple(self.corners)

    @property
    def top_edge_px(self) -> float:
        return distance(self.corners[0], self.corners[1])

    @property
    def bottom_edge_px(self) -> float:
        return distance(self.corners[3], self.corners[2])

    @property
    def left_edge_px(self) -> float:
        return distance(self.corners[0], self.corners[3])

    @property
    def right_edge_px(self) -> float:
        return distance(self.corners[1], self.corners[2])

    @property
    def scale_px_per_mm(self) -> float:
        """Mean of the width- and height-derived scales."""
        width_px = (self.top_edge_px + self.bottom_edge_px) / 2
        height_px = (self.left_edge_px + self.right_edge_px) / 2
        return (width_px / self.width_mm + height_px / self.height_mm) / 2

    @property
    def perspective_ratio(self) -> Optional[float]:
        return perspective_from_edges(self.bottom_edge_px, self.top_edge_px)

    def homography(self, px_per_mm: float = config.RECTIFIED_PX_PER_MM) -> Optional[Homography]:
        """Image -> rectified sheet at px_per_mm resolution."""
        return homography_for_quad(self.corners, self.width_mm * px_per_mm, self.height_mm * px_per_mm)

    def rectify(self, p) -> Optional[Point]:
        """Image point -> position on the sheet in mm."""
        H = self.homography(1.0)
        if H is None:
            return None
        return H.forward(p)

    def as_ruler(self) -> Optional[Ruler]:
        """Vertical ruler equivalent of the sheet scale, for height measurement."""
        scale = self.scale_px_per_mm
        if not scale > 0:
            return None
        return two_point_ruler(Point(0, 0), Point(0, scale * self.height_mm),
                               self.height_mm, axis="y", source="planar")

    def scaled(self, factor: float) -> "PlanarReference":
        return PlanarReference([c.scaled(factor) for c in self.corners], self.paper)

    def to_dict(self) -> dict:
        return {
            "paper": self.paper,
            "corners": [c.to_dict() for c in self.corners],
            "scale_px_per_mm": self.scale_px_per_mm,
            "perspective_ratio": self.perspective_ratio,
        }


# ---------------------------------------------------------------------------
# Sheet selection
# ---------------------------------------------------------------------------

SHEET_MIN_AREA_FRAC = 0.02
SHEET_MAX_AREA_FRAC = 0.9   # a quad filling the frame is the frame itself
SHEET_ASPECT_RANGE = (0.3, 3.0)


def select_sheet_quad(contours, image_shape: Tuple[int, int],
                      epsilon_frac: float = 0.02) -> Optional[List[Point]]:
    """
    Corners (TL, TR, BR, BL) of the largest contour that simplifies to a
    plausible sheet: four vertices, 2-90% of the image area, width/height
    between 0.3 and 3. None when no contour qualifies.
    """
    img_area = float(image_shape[0] * image_shape[1])
    best, best_area = None, 0.0
    for cnt in contours:
        cnt = np.asarray(cnt, dtype=np.int32).reshape(-1, 1, 2)
        if len(cnt) < 4:
            continue
        peri = cv2.arcLength(cnt, True)
        approx = cv2.approxPolyDP(cnt, epsilon_frac * peri, True)
        if len(approx) != 4:
            continue
        area = cv2.contourArea(cnt)
        if area <= best_area or not (SHEET_MIN_AREA_FRAC * img_area < area < SHEET_MAX_AREA_FRAC * img_area):
            continue
        corners = order_corners([(float(x), float(y)) for x, y in approx.reshape(-1, 2)])
        if corners is None or has_collinear_triple(corners):
            continue
        width = (distance(corners[0], corners[1]) + distance(corners[3], corners[2])) / 2
        height = (distance(corners[0], corners[3]) + distance(corners[1], corners[2])) / 2
        if height <= 0 or not (SHEET_ASPECT_RANGE[0] < width / height < SHEET_ASPECT_RANGE[1]):
            log.debug("Quad rejected: aspect %.2f", width / height if height else 0.0)
            continue
        best, best_area = corners, area

    if best is None:
        log.debug("No sheet-like quadrilateral among %d contours", len(contours))
    else:
        log.info("Sheet quad %s (%.0f px^2)", [tuple(c) for c in best], best_area)
    return best


# ---------------------------------------------------------------------------
# Calibrated measurements
# ---------------------------------------------------------------------------

def measure_between(p0, p1, ruler: Optional[Ruler] = None,
                    reference: Optional[PlanarReference] = None) -> float:
    """
    Real distance in mm between two image points. A reference sheet measures
    on the rectified table plane; otherwise the ruler scale is used.

    Raises:
        CalibrationMissing if neither is available.
    """
    if reference is not None and not reference.degenerate:
        a, b = reference.rectify(p0), reference.rectify(p1)
        if a is not None and b is not None:
            return distance(a, b)
    if ruler is None:
        raise CalibrationMissing("Measuring needs a ruler or a reference sheet.",
                                 "Draw the ruler or mark the sheet corners first.")
    return distance(p0, p1) / ruler.scale_px_per_mm


def cylinder_surface_mm2(diameter_mm: float, length_mm: float) -> float:
    """Lateral surface of a cylinder (drill bit shank): pi * d * L."""
    if diameter_mm < 0 or length_mm < 0:
        raise ValueError("diameter and length must be non-negative")
    return math.pi * diameter_mm * length_mm
