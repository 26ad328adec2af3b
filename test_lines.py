"""
Tests for segment classification, clustering, ruler selection and base-line
search.
"""

import pytest

import config
from errors import DetectionFailure
from geometry import LineSegment
from lines import (
    BaseLine,
    classify_segment,
    cluster_segments,
    default_base_region,
    detect_base_line,
    detect_rulers,
    fallback_base_line,
    find_ruler_candidate,
    split_by_orientation,
)
from ruler import ruler_from_observations
from test_ruler import comb_sampler


def seg(x1, y1, x2, y2):
    return LineSegment.from_coords(x1, y1, x2, y2)


def flat_sampler(seg, axis):
    lo = int(min(seg.start.x, seg.end.x) if axis == "x" else min(seg.start.y, seg.end.y))
    hi = int(max(seg.start.x, seg.end.x) if axis == "x" else max(seg.start.y, seg.end.y))
    return list(range(lo, hi)), [200.0] * (hi - lo)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("s, expected", [
    (seg(0, 0, 100, 0), "h"),
    (seg(100, 0, 0, 0), "h"),
    (seg(0, 0, 100, 30), "h"),       # ~16.7 deg
    (seg(0, 0, 0, 100), "v"),
    (seg(0, 100, 0, 0), "v"),
    (seg(0, 0, 30, 100), "v"),       # ~73.3 deg
    (seg(0, 0, 100, 100), None),     # 45 deg
    (seg(5, 5, 5, 5), None),
])
def test_classify_segment(s, expected):
    assert classify_segment(s) == expected


def test_split_by_orientation():
    h, v = split_by_orientation([seg(0, 0, 100, 0), seg(0, 0, 0, 100), seg(0, 0, 50, 50)])
    assert len(h) == 1 and len(v) == 1


def test_cluster_keeps_longest_per_group():
    segments = [seg(0, 100, 200, 100), seg(0, 105, 300, 105), seg(0, 160, 100, 160)]
    merged = cluster_segments(segments, "h", threshold=15)
    assert len(merged) == 2
    assert merged[0].length == pytest.approx(300)
    assert cluster_segments([], "h") == []


# ---------------------------------------------------------------------------
# Rulers
# ---------------------------------------------------------------------------

def test_tick_pattern_beats_length():
    short_ruler = seg(50, 100, 50, 500)
    long_edge = seg(400, 0, 400, 700)

    def sampler(s, axis):
        if s is long_edge:
            return flat_sampler(s, axis)
        return comb_sampler(20)(s, axis)

    ruler = find_ruler_candidate([long_edge, short_ruler], "y", sampler)
    assert ruler.source == "ticks"
    assert ruler.scale_px_per_mm == pytest.approx(2.0)


def test_longest_line_fallback():
    ruler = find_ruler_candidate([seg(10, 0, 10, 400), seg(20, 0, 20, 800)], "y", flat_sampler)
    assert ruler.source == "longest_line"
    assert ruler.scale_px_per_mm == pytest.approx(800 / config.DEFAULT_RULER_LENGTH_MM)


def test_no_candidates():
    assert find_ruler_candidate([], "x", flat_sampler) is None


def test_detect_rulers_both_axes():
    segments = [seg(100, 50, 600, 50), seg(50, 100, 50, 500), seg(0, 0, 300, 300)]
    pair = detect_rulers(segments, comb_sampler(20))
    assert pair.x_ruler.axis == "x"
    assert pair.y_ruler.axis == "y"


def test_detect_rulers_clusters_duplicates():
    # twelve Hough pieces of one long unmarked edge would fill the candidate list
    duplicates = [seg(400 + i, 0, 400 + i, 800 - i) for i in range(12)]
    tape = seg(50, 100, 50, 500)

    def sampler(s, axis):
        if s.start.x == 50:
            return comb_sampler(20)(s, axis)
        return flat_sampler(s, axis)

    pair = detect_rulers(duplicates + [tape], sampler)
    assert pair.y_ruler.source == "ticks"
    assert pair.y_ruler.scale_px_per_mm == pytest.approx(2.0)


def test_detect_rulers_failure():
    with pytest.raises(DetectionFailure) as exc:
        detect_rulers([seg(0, 0, 100, 100)], flat_sampler)
    assert exc.value.fallback


# ---------------------------------------------------------------------------
# Base line
# ---------------------------------------------------------------------------

def test_base_line_is_topmost_not_longest():
    region = default_base_region(1000, 1000)  # y from 400
    segments = [
        seg(0, 900, 1000, 900),     # longest, lower
        seg(100, 610, 400, 612),    # topmost qualifying
        seg(100, 500, 200, 500),    # too short
        seg(0, 300, 1000, 300),     # outside region
        seg(100, 450, 400, 600),    # too steep
    ]
    base = detect_base_line(segments, region)
    assert base.pixel_y == 611


def test_base_line_mm_value_from_ruler():
    ruler = ruler_from_observations([(100, 0), (150, 100), (200, 200), (250, 300), (300, 400)])
    region = default_base_region(1000, 1000)
    base = detect_base_line([seg(0, 500, 800, 500)], region, y_ruler=ruler)
    assert base.real_value_mm == pytest.approx(800.0)


def test_base_line_none_and_fallback():
    region = default_base_region(1000, 1000)
    assert detect_base_line([], region) is None
    fb = fallback_base_line(1000)
    assert fb.pixel_y == 750
    assert fb.real_value_mm == 0


def test_base_line_scaled():
    assert BaseLine(100, 20).scaled(2).pixel_y == 200
