"""
ruler.py – Tick extraction and the canonical Ruler type.

Every calibration source ends up as a Ruler:
  - auto-detected tick pixels along a candidate segment (median spacing)
  - externally observed (pixel, value) pairs (regression with >= 4 pairs)
  - two endpoints with an assumed real length (fallback / manual)

Tick filtering policy: each candidate tick is compared with the last
KEPT tick, not the last raw one, so a single spurious mark between two
real ticks is dropped without also dropping the real tick after it.
"""

import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np

import config
from geometry import LineSegment, Point
from signal_utils import linear_regression, local_minima, median, moving_average

log = logging.getLogger("photoscale.ruler")

# sampler(segment, axis) -> (pixel positions along axis, mean strip intensity)
StripSampler = Callable[[LineSegment, str], Tuple[Sequence[float], Sequence[float]]]


def axis_coord(p: Point, axis: str) -> float:
    return p.x if axis == "x" else p.y


def _point_on_axis(axis: str, along: float, across: float) -> Point:
    return Point(along, across) if axis == "x" else Point(across, along)


class Tick:
    __slots__ = ("pixel_offset", "real_value_mm")

    def __init__(self, pixel_offset: float, real_value_mm: float):
        self.pixel_offset = float(pixel_offset)
        self.real_value_mm = float(real_value_mm)

    def to_dict(self) -> dict:
        return {"px": self.pixel_offset, "mm": self.real_value_mm}

    def __repr__(self):
        return f"Tick({self.pixel_offset:.1f}px, {self.real_value_mm:g}mm)"


class Ruler:
    """
    A calibrated scale along one image axis.

    origin_px is the axis pixel coordinate of the 0 mm reference and
    direction is +1 when values grow with the pixel coordinate, -1 otherwise.
    Tick pixel offsets are measured from origin_px in the value direction.

    scale_px_per_mm is measured along the ruler line and converts lengths.
    axis_scale_px_per_mm is the same scale projected onto the axis and maps
    axis pixels to values; the two differ only for a tilted ruler.
    """

    def __init__(
        self,
        line: LineSegment,
        ticks: List[Tick],
        scale_px_per_mm: float,
        axis: str,
        origin_px: float,
        direction: int = 1,
        source: str = "ticks",
        axis_scale_px_per_mm: Optional[float] = None,
    ):
        if axis not in ("x", "y"):
            raise ValueError(f"axis must be 'x' or 'y', got {axis!r}")
        if not scale_px_per_mm > 0:
            raise ValueError(f"scale_px_per_mm must be positive, got {scale_px_per_mm}")
        if len(ticks) < 2:
            raise ValueError("a ruler needs at least two ticks")
        values = [t.real_value_mm for t in ticks]
        if any(b <= a for a, b in zip(values, values[1:])):
            raise ValueError("tick values must be strictly increasing")
        self.line = line
        self.ticks = list(ticks)
        self.scale_px_per_mm = float(scale_px_per_mm)
        if axis_scale_px_per_mm is None:
            axis_scale_px_per_mm = scale_px_per_mm
        if not axis_scale_px_per_mm > 0:
            raise ValueError(f"axis_scale_px_per_mm must be positive, got {axis_scale_px_per_mm}")
        self.axis_scale_px_per_mm = float(axis_scale_px_per_mm)
        self.axis = axis
        self.origin_px = float(origin_px)
        self.direction = 1 if direction >= 0 else -1
        self.source = source

    @property
    def real_length_mm(self) -> float:
        return self.ticks[-1].real_value_mm - self.ticks[0].real_value_mm

    def value_at(self, pixel: float) -> float:
        return self.direction * (pixel - self.origin_px) / self.axis_scale_px_per_mm

    def pixel_at(self, value_mm: float) -> float:
        return self.origin_px + self.direction * value_mm * self.axis_scale_px_per_mm

    def tick_pixels(self) -> List[float]:
        return [self.origin_px + self.direction * t.pixel_offset for t in self.ticks]

    def piecewise_value_at(self, pixel: float) -> float:
        """Value by linear interpolation between ticks; global scale outside them."""
        xp = np.asarray(self.tick_pixels(), dtype=np.float64)
        fp = np.asarray([t.real_value_mm for t in self.ticks], dtype=np.float64)
        if self.direction < 0:
            xp, fp = xp[::-1], fp[::-1]
        if pixel < xp[0]:
            return float(fp[0] + self.direction * (pixel - xp[0]) / self.axis_scale_px_per_mm)
        if pixel > xp[-1]:
            return float(fp[-1] + self.direction * (pixel - xp[-1]) / self.axis_scale_px_per_mm)
        return float(np.interp(pixel, xp, fp))

    def piecewise_mm(self, p0: float, p1: float) -> float:
        return abs(self.piecewise_value_at(p1) - self.piecewise_value_at(p0))

    def scaled(self, factor: float) -> "Ruler":
        """Same ruler with every pixel quantity multiplied by factor."""
        return Ruler(
            line=self.line.scaled(factor),
            ticks=[Tick(t.pixel_offset * factor, t.real_value_mm) for t in self.ticks],
            scale_px_per_mm=self.scale_px_per_mm * factor,
            axis=self.axis,
            origin_px=self.origin_px * factor,
            direction=self.direction,
            source=self.source,
            axis_scale_px_per_mm=self.axis_scale_px_per_mm * factor,
        )

    def to_dict(self) -> dict:
        return {
            "axis": self.axis,
            "line": self.line.to_dict(),
            "ticks": [t.to_dict() for t in self.ticks],
            "scale_px_per_mm": self.scale_px_per_mm,
            "axis_scale_px_per_mm": self.axis_scale_px_per_mm,
            "real_length_mm": self.real_length_mm,
            "origin_px": self.origin_px,
            "source": self.source,
        }

    def __repr__(self):
        return (f"Ruler({self.axis}, {len(self.ticks)} ticks, "
                f"{self.scale_px_per_mm:.3f}px/mm, {self.source})")


# ---------------------------------------------------------------------------
# Tick extraction
# ---------------------------------------------------------------------------

def filter_tick_spacing(positions: Sequence[float], expected: float,
                        tolerance: float = config.TICK_SPACING_TOLERANCE) -> List[float]:
    """Keep the first tick, then every tick whose distance from the last kept
    tick deviates less than `tolerance` (relative) from `expected`."""
    if not positions or expected <= 0:
        return []
    kept = [positions[0]]
    for p in positions[1:]:
        spacing = abs(p - kept[-1])
        if abs(spacing - expected) / expected < tolerance:
            kept.append(p)
    return kept


def extract_tick_positions(positions: Sequence[float], values: Sequence[float]) -> Optional[Tuple[List[float], float]]:
    """
    Profile -> (filtered tick pixel positions, median spacing), or None.
    """
    if len(values) < config.MIN_PROFILE_SAMPLES or len(positions) != len(values):
        log.debug("Profile too short: %d samples", len(values))
        return None

    smoothed = moving_average(values, config.TICK_SMOOTH_WINDOW)
    idx = local_minima(smoothed, config.TICK_MIN_DISTANCE_PX, config.TICK_MIN_PROMINENCE)
    if len(idx) < config.TICK_MIN_COUNT:
        log.debug("Only %d tick minima found (need %d)", len(idx), config.TICK_MIN_COUNT)
        return None

    raw = [float(positions[i]) for i in idx]
    spacings = [abs(b - a) for a, b in zip(raw, raw[1:])]
    spacing = median(spacings)
    if spacing <= 0:
        return None

    kept = filter_tick_spacing(raw, spacing)
    if len(kept) < config.TICK_MIN_COUNT:
        log.debug("Only %d ticks survived spacing filter (median=%.1fpx)", len(kept), spacing)
        return None
    log.debug("Ticks: %d raw, %d kept, median spacing %.2fpx", len(raw), len(kept), spacing)
    return kept, spacing


def ruler_from_ticks(segment: LineSegment, positions: Sequence[float], axis: str,
                     spacing: Optional[float] = None) -> Optional[Ruler]:
    """
    Ruler from detected tick pixels assumed to be one TICK_INTERVAL_MM apart.
    Scale is median spacing / interval.
    """
    pos = sorted(float(p) for p in positions)
    if len(pos) < 2:
        return None
    if spacing is None:
        spacing = median([b - a for a, b in zip(pos, pos[1:])])
    if spacing <= 0:
        return None
    scale = spacing / config.TICK_INTERVAL_MM
    origin = pos[0]
    ticks = [Tick(p - origin, i * config.TICK_INTERVAL_MM) for i, p in enumerate(pos)]
    across = axis_coord(segment.midpoint, "y" if axis == "x" else "x")
    line = LineSegment(_point_on_axis(axis, pos[0], across), _point_on_axis(axis, pos[-1], across))
    return Ruler(line, ticks, scale, axis, origin_px=origin, direction=1, source="ticks")


def calibrate_ticks(segment: LineSegment, sampler: StripSampler, axis: str) -> Optional[Ruler]:
    """
    Sample the intensity profile along a candidate segment and build a
    tick-calibrated Ruler. None when the evidence is insufficient.
    """
    if segment.length < 1e-6:
        return None
    positions, values = sampler(segment, axis)
    found = extract_tick_positions(positions, values)
    if found is None:
        return None
    kept, spacing = found
    return ruler_from_ticks(segment, kept, axis, spacing)


# ---------------------------------------------------------------------------
# Other construction paths
# ---------------------------------------------------------------------------

def ruler_from_observations(pairs: Sequence[Tuple[float, float]], axis: str = "y",
                            line: Optional[LineSegment] = None) -> Optional[Ruler]:
    """
    Ruler from externally observed (pixel, value_mm) pairs.

    With >= REGRESSION_MIN_PAIRS pairs the pixel/value relation is fit by
    least squares (slope -> scale, intercept -> zero-reference pixel);
    with fewer, the first and last pairs define it.
    """
    by_value = {}
    for pixel, value in sorted(pairs, key=lambda pv: pv[1]):
        by_value.setdefault(float(value), float(pixel))
    values = sorted(by_value)
    pixels = [by_value[v] for v in values]
    if len(values) < 2:
        return None

    if len(values) >= config.REGRESSION_MIN_PAIRS:
        fit = linear_regression(values, pixels)
        if fit is None:
            return None
        slope, intercept = fit
        source = "regression"
    else:
        slope = (pixels[-1] - pixels[0]) / (values[-1] - values[0])
        intercept = pixels[0] - slope * values[0]
        source = "observed"

    scale = abs(slope)
    if scale < 1e-9:
        log.debug("Observed ticks give a flat scale, rejecting")
        return None
    direction = 1 if slope > 0 else -1
    ticks = [Tick(direction * (p - intercept), v) for v, p in zip(values, pixels)]
    if line is None:
        line = LineSegment(_point_on_axis(axis, pixels[0], 0.0), _point_on_axis(axis, pixels[-1], 0.0))
    log.debug("Observed ruler: %d pairs, %.4f px/mm via %s", len(values), scale, source)
    return Ruler(line, ticks, scale, axis, origin_px=intercept, direction=direction, source=source)


def two_point_ruler(start, end, real_length_mm: float = config.DEFAULT_RULER_LENGTH_MM,
                    axis: Optional[str] = None, source: str = "two_point") -> Optional[Ruler]:
    """
    Ruler spanning two endpoints of known real length. None for a zero-length span.

    Lengths use the scale along the line. Axis values use the projection of
    the span onto the axis, so the end tick sits at the end pixel even when
    the ruler is tilted. A span perpendicular to the axis keeps the line scale.
    """
    seg = LineSegment(start, end)
    length_px = seg.length
    if length_px < 1e-6 or real_length_mm <= 0:
        return None
    if axis is None:
        axis = "x" if abs(seg.dx) >= abs(seg.dy) else "y"
    delta = axis_coord(seg.end, axis) - axis_coord(seg.start, axis)
    direction = -1 if delta < 0 else 1
    along = abs(delta) if abs(delta) >= 1e-6 else length_px
    ticks = [Tick(0.0, 0.0), Tick(along, real_length_mm)]
    return Ruler(seg, ticks, length_px / real_length_mm, axis,
                 origin_px=axis_coord(seg.start, axis), direction=direction, source=source,
                 axis_scale_px_per_mm=along / real_length_mm)
