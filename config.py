"""
config.py – Detection defaults and environment overrides.

All tunables live here as module-level constants. DetectionParams and
CategoryThresholds are the per-session, user-adjustable subsets.
"""

import os
import logging

log = logging.getLogger("photoscale.config")

# ---------------------------------------------------------------------------
# Tick detection
# ---------------------------------------------------------------------------

TICK_SMOOTH_WINDOW = 5
TICK_MIN_DISTANCE_PX = 15
TICK_MIN_PROMINENCE = 20.0   # 0-255 intensity domain
TICK_MIN_COUNT = 3
TICK_SPACING_TOLERANCE = 0.4  # max relative deviation from median spacing
TICK_INTERVAL_MM = 10.0       # one tick per centimetre
MIN_PROFILE_SAMPLES = 50
STRIP_WIDTH_PX = 30

# Minimum tick count for a tick-calibrated ruler to beat the raw longest line
RULER_MIN_TICKS = 5
RULER_MAX_CANDIDATES = 10
# Externally observed (pixel, value) pairs needed before regression is used
REGRESSION_MIN_PAIRS = 4

DEFAULT_RULER_LENGTH_MM = float(os.environ.get("PHOTOSCALE_DEFAULT_RULER_MM", "400"))

# ---------------------------------------------------------------------------
# Line classification
# ---------------------------------------------------------------------------

ORIENTATION_TOLERANCE_DEG = 20.0
BASE_LINE_ANGLE_DEG = 15.0
BASE_LINE_MIN_WIDTH_FRAC = 0.15
BASE_LINE_REGION_TOP_FRAC = 0.4
BASE_LINE_FALLBACK_FRAC = 0.75
CLUSTER_THRESHOLD_PX = 15

# ---------------------------------------------------------------------------
# Planar references (mm)
# ---------------------------------------------------------------------------

PAPER_SIZES = {
    "a4": (210.0, 297.0),
    "letter": (215.9, 279.4),
    "a5": (148.0, 210.0),
}

RECTIFIED_PX_PER_MM = 3.0


class CategoryThresholds:
    """Half-open bins: A < short_max <= B < medium_max <= C."""

    def __init__(self, short_max_mm: float = 200.0, medium_max_mm: float = 300.0):
        if not short_max_mm < medium_max_mm:
            raise ValueError(
                f"short_max_mm ({short_max_mm}) must be below medium_max_mm ({medium_max_mm})"
            )
        self.short_max_mm = float(short_max_mm)
        self.medium_max_mm = float(medium_max_mm)

    def to_dict(self) -> dict:
        return {"short_max_mm": self.short_max_mm, "medium_max_mm": self.medium_max_mm}

    def __eq__(self, other):
        return isinstance(other, CategoryThresholds) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"CategoryThresholds({self.short_max_mm}, {self.medium_max_mm})"


class DetectionParams:
    def __init__(
        self,
        min_contour_area: float = 1000.0,
        min_aspect_ratio: float = 3.0,
        adaptive_block_size: int = 15,
        adaptive_c: int = 5,
        base_line_tolerance: float = 30.0,
        min_height_mm: float = 10.0,
        use_piecewise: bool = False,
        paper: str = "a4",
    ):
        if adaptive_block_size < 3 or adaptive_block_size % 2 == 0:
            raise ValueError("adaptive_block_size must be an odd number >= 3")
        if paper not in PAPER_SIZES:
            raise ValueError(f"unknown paper size {paper!r}")
        self.min_contour_area = float(min_contour_area)
        self.min_aspect_ratio = float(min_aspect_ratio)
        self.adaptive_block_size = int(adaptive_block_size)
        self.adaptive_c = int(adaptive_c)
        self.base_line_tolerance = float(base_line_tolerance)
        self.min_height_mm = float(min_height_mm)
        self.use_piecewise = bool(use_piecewise)
        self.paper = paper

    def to_dict(self) -> dict:
        return dict(vars(self))

    def copy(self, **overrides) -> "DetectionParams":
        values = self.to_dict()
        values.update(overrides)
        return DetectionParams(**values)


def load_from_env():
    """Build (thresholds, params) from PHOTOSCALE_* environment variables."""
    thresholds = CategoryThresholds(
        short_max_mm=float(os.environ.get("PHOTOSCALE_SHORT_MAX_MM", "200")),
        medium_max_mm=float(os.environ.get("PHOTOSCALE_MEDIUM_MAX_MM", "300")),
    )
    params = DetectionParams(
        min_contour_area=float(os.environ.get("PHOTOSCALE_MIN_CONTOUR_AREA", "1000")),
        min_aspect_ratio=float(os.environ.get("PHOTOSCALE_MIN_ASPECT_RATIO", "3.0")),
        base_line_tolerance=float(os.environ.get("PHOTOSCALE_BASE_LINE_TOLERANCE", "30")),
        use_piecewise=os.environ.get("PHOTOSCALE_PIECEWISE", "false").lower() in ("true", "1", "yes"),
        paper=os.environ.get("PHOTOSCALE_PAPER", "a4").lower(),
    )
    log.debug("Config loaded: thresholds=%s params=%s", thresholds.to_dict(), params.to_dict())
    return thresholds, params
