"""
lines.py – Line segment classification, clustering and ruler / base-line
selection.

Segments come from an external probabilistic Hough step. Each is
classified by its angle; same-orientation candidates are ranked by length
and tried for tick calibration, where a valid tick pattern outranks raw
length. The base line is the TOPMOST long near-horizontal segment inside a
search region, not the longest.
"""

import logging
from typing import Iterable, List, Optional, Tuple

import config
from errors import DetectionFailure
from geometry import LineSegment
from ruler import Ruler, StripSampler, calibrate_ticks, two_point_ruler

log = logging.getLogger("photoscale.lines")


class BaseLine:
    def __init__(self, pixel_y: float, real_value_mm: float = 0.0):
        self.pixel_y = float(pixel_y)
        self.real_value_mm = float(real_value_mm)

    def scaled(self, factor: float) -> "BaseLine":
        return BaseLine(self.pixel_y * factor, self.real_value_mm)

    def to_dict(self) -> dict:
        return {"y": self.pixel_y, "mm_value": self.real_value_mm}

    def __repr__(self):
        return f"BaseLine(y={self.pixel_y:.1f}, {self.real_value_mm:.1f}mm)"


class RulerPair:
    def __init__(self, x_ruler: Optional[Ruler] = None, y_ruler: Optional[Ruler] = None):
        self.x_ruler = x_ruler
        self.y_ruler = y_ruler

    def to_dict(self) -> dict:
        return {
            "x_ruler": self.x_ruler.to_dict() if self.x_ruler else None,
            "y_ruler": self.y_ruler.to_dict() if self.y_ruler else None,
        }


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

def classify_segment(seg: LineSegment, tolerance: float = config.ORIENTATION_TOLERANCE_DEG) -> Optional[str]:
    """'h', 'v' or None (diagonal / zero length)."""
    if seg.length < 1e-6:
        return None
    angle = abs(seg.angle_deg)  # 0..180
    if angle < tolerance or angle > 180.0 - tolerance:
        return "h"
    if abs(angle - 90.0) < tolerance:
        return "v"
    return None


def split_by_orientation(segments: Iterable[LineSegment]) -> Tuple[List[LineSegment], List[LineSegment]]:
    horizontal, vertical = [], []
    for seg in segments:
        kind = classify_segment(seg)
        if kind == "h":
            horizontal.append(seg)
        elif kind == "v":
            vertical.append(seg)
    return horizontal, vertical


def cluster_segments(segments: List[LineSegment], axis: str,
                     threshold: float = config.CLUSTER_THRESHOLD_PX) -> List[LineSegment]:
    """
    Merge near-duplicate parallel segments. Horizontal ('h') segments are
    grouped by mid-y, vertical ('v') by mid-x; the longest of each group wins.
    """
    if not segments:
        return []
    key_fn = (lambda s: s.midpoint.y) if axis == "h" else (lambda s: s.midpoint.x)
    ordered = sorted(segments, key=key_fn)

    clusters = [[ordered[0]]]
    for seg in ordered[1:]:
        if abs(key_fn(seg) - key_fn(clusters[-1][-1])) > threshold:
            clusters.append([seg])
        else:
            clusters[-1].append(seg)
    return [max(c, key=lambda s: s.length) for c in clusters]


# ---------------------------------------------------------------------------
# Ruler selection
# ---------------------------------------------------------------------------

def find_ruler_candidate(segments: List[LineSegment], axis: str, sampler: StripSampler,
                         max_candidates: int = config.RULER_MAX_CANDIDATES,
                         min_ticks: int = config.RULER_MIN_TICKS) -> Optional[Ruler]:
    """
    Try the longest segments for a tick pattern; fall back to the longest
    segment as a two-point ruler of DEFAULT_RULER_LENGTH_MM.
    """
    candidates = sorted((s for s in segments if s.length >= 1e-6), key=lambda s: s.length, reverse=True)
    if not candidates:
        return None

    for i, seg in enumerate(candidates[:max_candidates]):
        ruler = calibrate_ticks(seg, sampler, axis)
        if ruler is not None and len(ruler.ticks) >= min_ticks:
            log.info("Ruler %s: candidate %d, %d ticks, %.3f px/mm",
                     axis, i, len(ruler.ticks), ruler.scale_px_per_mm)
            return ruler
        log.debug("Ruler %s: candidate %d (len=%.0f) rejected", axis, i, seg.length)

    longest = candidates[0]
    log.warning("Ruler %s: no tick pattern found, using longest line (%.0fpx) as %gmm",
                axis, longest.length, config.DEFAULT_RULER_LENGTH_MM)
    return two_point_ruler(longest.start, longest.end, config.DEFAULT_RULER_LENGTH_MM,
                           axis=axis, source="longest_line")


def detect_rulers(segments: Iterable[LineSegment], sampler: StripSampler) -> RulerPair:
    """
    Horizontal segments calibrate the x ruler, vertical ones the y ruler.
    Near-duplicate segments (double Canny edges, split Hough pieces)
    are clustered first so they do not crowd out other candidates.

    Raises:
        DetectionFailure if neither axis yields a ruler.
    """
    horizontal, vertical = split_by_orientation(segments)
    horizontal = cluster_segments(horizontal, "h")
    vertical = cluster_segments(vertical, "v")
    log.debug("Segments after clustering: %d horizontal, %d vertical", len(horizontal), len(vertical))

    pair = RulerPair(
        x_ruler=find_ruler_candidate(horizontal, "x", sampler),
        y_ruler=find_ruler_candidate(vertical, "y", sampler),
    )
    if pair.x_ruler is None and pair.y_ruler is None:
        raise DetectionFailure(
            "Could not detect rulers.",
            "Draw the ruler manually or ensure the rulers are visible with good contrast.",
        )
    return pair


# ---------------------------------------------------------------------------
# Base line
# ---------------------------------------------------------------------------

def default_base_region(image_width: float, image_height: float) -> Tuple[float, float, float, float]:
    """(x, y, w, h) of the lower part of the image where the jig base sits."""
    top = image_height * config.BASE_LINE_REGION_TOP_FRAC
    return 0.0, top, float(image_width), image_height - top


def _inside(seg: LineSegment, region: Tuple[float, float, float, float]) -> bool:
    x, y, w, h = region
    for p in (seg.start, seg.end):
        if not (x <= p.x <= x + w and y <= p.y <= y + h):
            return False
    return True


def base_line_value(pixel_y: float, y_ruler: Optional[Ruler]) -> float:
    if y_ruler is None:
        return 0.0
    return y_ruler.value_at(pixel_y)


def detect_base_line(segments: Iterable[LineSegment], region: Tuple[float, float, float, float],
                     y_ruler: Optional[Ruler] = None,
                     min_length: Optional[float] = None) -> Optional[BaseLine]:
    """
    Topmost sufficiently long near-horizontal segment inside region.

    Args:
        segments: candidate segments in full-image coordinates
        region: (x, y, w, h) search window
        y_ruler: optional vertical ruler used to express the line in mm
        min_length: defaults to BASE_LINE_MIN_WIDTH_FRAC of the region width

    Returns:
        BaseLine or None if nothing qualifies.
    """
    if min_length is None:
        min_length = region[2] * config.BASE_LINE_MIN_WIDTH_FRAC

    best_y = None
    for seg in segments:
        if not _inside(seg, region):
            continue
        if classify_segment(seg, config.BASE_LINE_ANGLE_DEG) != "h":
            continue
        if seg.length <= min_length:
            continue
        y = seg.midpoint.y
        if best_y is None or y < best_y:
            best_y = y

    if best_y is None:
        log.warning("No base line candidate in region %s", region)
        return None
    base_y = float(round(best_y))
    log.info("Base line at y=%.0f", base_y)
    return BaseLine(base_y, base_line_value(base_y, y_ruler))


def fallback_base_line(image_height: float, y_ruler: Optional[Ruler] = None) -> BaseLine:
    """Placeholder base line for manual dragging when detection fails."""
    y = float(round(image_height * config.BASE_LINE_FALLBACK_FRAC))
    return BaseLine(y, base_line_value(y, y_ruler))
