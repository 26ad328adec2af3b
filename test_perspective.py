"""
Tests for perspective-corrected heights and planar reference sheets.
"""

import math

import numpy as np
import pytest

from errors import CalibrationMissing
from geometry import Point
from perspective import (
    PlanarReference,
    corrected_height_mm,
    cylinder_surface_mm2,
    measure_between,
    perspective_from_edges,
    select_sheet_quad,
)
from ruler import two_point_ruler

# A4 seen straight on at 2 px/mm: 420 x 594 px
A4_FLAT = [(100, 100), (520, 100), (520, 694), (100, 694)]
# Same sheet, far edge shorter than near edge
A4_TILTED = [(160, 100), (460, 100), (520, 694), (100, 694)]


def test_corrected_height_reference_example():
    assert corrected_height_mm(600, 2.0, 1.5, 1.0) == pytest.approx(200.0)


def test_corrected_height_far_plane_is_uncorrected():
    assert corrected_height_mm(600, 2.0, 1.5, 0.0) == pytest.approx(300.0)


def test_corrected_height_clamps_inputs():
    assert corrected_height_mm(600, 2.0, 0.5, 1.0) == pytest.approx(300.0)
    assert corrected_height_mm(600, 2.0, 1.5, 3.0) == pytest.approx(200.0)
    assert corrected_height_mm(600, 2.0, 1.5, -1.0) == pytest.approx(300.0)


def test_corrected_height_rejects_bad_scale():
    with pytest.raises(ValueError):
        corrected_height_mm(600, 0.0, 1.5, 1.0)


def test_perspective_from_edges():
    assert perspective_from_edges(300, 200) == pytest.approx(1.5)
    assert perspective_from_edges(0, 200) is None


def test_planar_reference_flat():
    ref = PlanarReference(A4_FLAT, "a4")
    assert ref.scale_px_per_mm == pytest.approx(2.0)
    assert ref.perspective_ratio == pytest.approx(1.0)
    assert not ref.degenerate


def test_planar_reference_tilted_ratio():
    ref = PlanarReference(A4_TILTED)
    assert ref.perspective_ratio == pytest.approx(420 / 300)


def test_planar_reference_rectifies_to_mm():
    ref = PlanarReference(A4_TILTED)
    corner = ref.rectify((520, 694))
    assert corner.x == pytest.approx(210, abs=1e-6)
    assert corner.y == pytest.approx(297, abs=1e-6)
    H = ref.homography(3.0)
    far = H.forward((460, 100))
    assert far.x == pytest.approx(630, abs=1e-6)
    assert far.y == pytest.approx(0, abs=1e-6)


def test_planar_reference_orders_corners():
    ref = PlanarReference(list(reversed(A4_FLAT)))
    assert ref.corners[0] == Point(100, 100)
    assert ref.corners[2] == Point(520, 694)


def test_planar_reference_validation():
    with pytest.raises(ValueError):
        PlanarReference(A4_FLAT[:3])
    with pytest.raises(ValueError):
        PlanarReference(A4_FLAT, "tabloid")
    assert PlanarReference([(0, 0), (1, 1), (2, 2), (3, 3)]).degenerate


def test_planar_reference_scaled():
    ref = PlanarReference(A4_FLAT).scaled(0.5)
    assert ref.scale_px_per_mm == pytest.approx(1.0)


def test_planar_reference_as_ruler():
    ruler = PlanarReference(A4_FLAT).as_ruler()
    assert ruler.source == "planar"
    assert ruler.scale_px_per_mm == pytest.approx(2.0)


# ---------------------------------------------------------------------------
# Sheet selection
# ---------------------------------------------------------------------------

def contour(points):
    return np.array(points, dtype=np.int32).reshape(-1, 1, 2)


def test_select_sheet_quad_picks_largest_sheet():
    small = contour([(700, 700), (760, 700), (760, 780), (700, 780)])
    sheet = contour([(520, 100), (100, 100), (100, 694), (520, 694)])
    corners = select_sheet_quad([small, sheet], (900, 1000))
    assert corners == [Point(100, 100), Point(520, 100), Point(520, 694), Point(100, 694)]


def test_select_sheet_quad_rejects_frame_and_strips():
    frame = contour([(0, 0), (999, 0), (999, 899), (0, 899)])
    strip = contour([(40, 45), (760, 45), (760, 75), (40, 75)])
    assert select_sheet_quad([frame, strip], (900, 1000)) is None


def test_select_sheet_quad_needs_four_vertices():
    triangle = contour([(100, 100), (600, 100), (350, 600)])
    assert select_sheet_quad([triangle], (900, 1000)) is None
    assert select_sheet_quad([], (900, 1000)) is None


# ---------------------------------------------------------------------------
# Calibrated measurements
# ---------------------------------------------------------------------------

def test_measure_between_with_ruler():
    ruler = two_point_ruler((10, 10), (10, 810), 400)
    assert measure_between((0, 0), (30, 40), ruler) == pytest.approx(25.0)


def test_measure_between_prefers_sheet():
    ruler = two_point_ruler((10, 10), (10, 810), 100)
    ref = PlanarReference(A4_TILTED)
    # far edge of the tilted sheet is the full paper width
    assert measure_between((160, 100), (460, 100), ruler, ref) == pytest.approx(210.0)


def test_measure_between_needs_calibration():
    with pytest.raises(CalibrationMissing):
        measure_between((0, 0), (10, 0))
    degenerate = PlanarReference([(0, 0), (1, 1), (2, 2), (3, 3)])
    with pytest.raises(CalibrationMissing):
        measure_between((0, 0), (10, 0), reference=degenerate)


def test_cylinder_surface():
    assert cylinder_surface_mm2(8, 100) == pytest.approx(math.pi * 800)
    assert cylinder_surface_mm2(0, 100) == 0
    with pytest.raises(ValueError):
        cylinder_surface_mm2(-1, 100)
