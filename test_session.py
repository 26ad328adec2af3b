"""
Tests for the calibration session: recompute on every mutation, manual
corrections, snapshots and unit rescaling.
"""

import pytest

from config import CategoryThresholds
from errors import CalibrationMissing, DegenerateGeometry
from objects import ADJUSTED, DETECTED
from ruler import ruler_from_observations
from session import CalibrationSession
from test_objects import bar
from test_perspective import A4_FLAT, A4_TILTED


def tape_ruler():
    return ruler_from_observations([(100, 0), (150, 100), (200, 200), (250, 300), (300, 400)])


def make_session(tops=(300, 380, 420)):
    """0.5 px/mm tape, base line at 500, one bar per top_y (x = 100, 200, ...)."""
    session = CalibrationSession()
    session.set_ruler("y", tape_ruler())
    session.set_base_line(500)
    session.run_detection([bar(100 * (i + 1), top) for i, top in enumerate(tops)])
    return session


def test_run_detection_end_to_end():
    session = make_session()
    heights = [round(o.height_mm) for o in session.objects]
    assert heights == [400, 240, 160]
    assert [o.category for o in session.objects] == ["C", "B", "A"]
    assert [o.id for o in session.objects] == [1, 2, 3]
    assert all(o.state == DETECTED for o in session.objects)


def test_base_line_move_recomputes_everything():
    session = make_session()
    before = [(o.id, o.center_x) for o in session.objects]
    session.move_base_line(450)
    after = session.objects
    assert [(o.id, o.center_x) for o in after] == before
    assert [round(o.height_mm) for o in after] == [300, 140, 60]
    assert [o.category for o in after] == ["C", "A", "A"]
    assert session.base_line.real_value_mm == pytest.approx(700)


def test_move_base_line_requires_one():
    with pytest.raises(CalibrationMissing):
        CalibrationSession().move_base_line(300)


def test_thresholds_recategorise():
    session = make_session()
    session.set_thresholds(150, 250)
    assert [o.category for o in session.objects] == ["C", "B", "B"]
    with pytest.raises(ValueError):
        session.set_thresholds(250, 150)
    assert session.thresholds == CategoryThresholds(150, 250)


def test_adjust_object():
    session = make_session()
    obj = session.adjust_object(3, top_y=340)
    assert obj.state == ADJUSTED
    assert obj.height_mm == pytest.approx(320)
    assert obj.category == "C"


def test_removed_objects_stay_removed():
    session = make_session()
    session.remove_object(2)
    assert [o.id for o in session.objects] == [1, 3]
    session.set_base_line(480)
    assert [o.id for o in session.objects] == [1, 3]
    assert session.summary()["object_count"] == 2
    with pytest.raises(ValueError):
        session.adjust_object(2, top_y=100)
    with pytest.raises(ValueError):
        session.get_object(42)


def test_rerun_renumbers():
    session = make_session()
    session.remove_object(1)
    session.run_detection([bar(900, 300), bar(50, 300)])
    assert [(o.id, round(o.center_x)) for o in session.objects] == [(1, 50), (2, 900)]


def test_draw_ruler_and_degenerate():
    session = CalibrationSession()
    ruler = session.draw_ruler("y", (40, 100), (40, 900), 400)
    assert session.active_scale() == pytest.approx(2.0)
    assert ruler.source == "manual"
    with pytest.raises(DegenerateGeometry):
        session.draw_ruler("y", (40, 100), (40, 100))


def test_tilted_manual_ruler_base_line_value():
    session = CalibrationSession()
    session.draw_ruler("y", (0, 0), (300, 400), 500)
    assert session.active_scale() == pytest.approx(1.0)
    assert session.set_base_line(400).real_value_mm == pytest.approx(500)


def test_ruler_axis_mismatch():
    session = CalibrationSession()
    with pytest.raises(ValueError):
        session.set_ruler("x", tape_ruler())


def test_active_scale_requires_calibration():
    with pytest.raises(CalibrationMissing):
        CalibrationSession().active_scale()


def test_planar_reference_as_scale():
    session = CalibrationSession()
    session.set_planar_reference(A4_FLAT, "a4")
    assert session.active_scale() == pytest.approx(2.0)
    with pytest.raises(DegenerateGeometry):
        session.set_planar_reference([(0, 0), (1, 1), (2, 2), (3, 3)])


def test_perspective_applies_only_with_depth_ratio():
    session = CalibrationSession()
    session.set_planar_reference(A4_TILTED, "a4")
    session.set_base_line(900)
    session.run_detection([bar(300, 500, bottom_y=900)])
    plain = session.objects[0].height_mm
    session.adjust_object(1, depth_ratio=1.0)
    corrected = session.objects[0].height_mm
    assert corrected == pytest.approx(plain / session.perspective_ratio)


def test_explicit_perspective_ratio():
    session = make_session(tops=(300,))
    session.adjust_object(1, depth_ratio=1.0)
    session.set_perspective_ratio(2.0)
    assert session.objects[0].height_mm == pytest.approx(200)
    with pytest.raises(ValueError):
        session.set_perspective_ratio(-1)


def test_snapshot_is_frozen_copy():
    session = make_session()
    snap = session.snapshot()
    with pytest.raises(AttributeError):
        snap.base_line = None
    session.set_thresholds(100, 150)
    assert snap.thresholds == CategoryThresholds(200, 300)
    assert snap.active_ruler() is session.y_ruler


def test_apply_result_keeps_user_calibration():
    session = make_session()
    user_ruler = session.y_ruler

    class Result:
        x_ruler = None
        y_ruler = ruler_from_observations([(0, 0), (100, 100), (200, 200), (300, 300)])
        base_line = None
        objects = []

    session.apply_result(Result())
    assert session.y_ruler is user_ruler
    assert session.objects == []
    assert session.last_pass_at is not None


def test_rescale_keeps_heights():
    session = make_session()
    heights = [o.height_mm for o in session.objects]
    session.rescale(2.0)
    assert session.base_line.pixel_y == pytest.approx(1000)
    assert session.active_scale() == pytest.approx(1.0)
    assert [o.height_mm for o in session.objects] == pytest.approx(heights)
    assert session.objects[0].top_y == pytest.approx(600)


def test_reset_and_summary():
    session = make_session()
    summary = session.summary()
    assert summary["categories"] == {"A": 1, "B": 1, "C": 1}
    assert summary["scale_px_per_mm"] == pytest.approx(0.5)
    session.reset()
    assert session.objects == []
    assert session.active_ruler() is None
    assert session.summary()["object_count"] == 0
