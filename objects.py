"""
objects.py – Contours -> oriented boxes -> calibrated heights -> categories.

Heights are measured upward from the base line: height_px = base_y - top_y.
Results are sorted left to right and numbered 1..N on every pass; ids are
positional labels, not identity, and change whenever a pass is re-run.
"""

import logging
from typing import Iterable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from config import CategoryThresholds, DetectionParams
from errors import CalibrationMissing
from geometry import Point
from lines import BaseLine
from perspective import corrected_height_mm
from ruler import Ruler

log = logging.getLogger("photoscale.objects")

DETECTED = "detected"
ADJUSTED = "adjusted"
REMOVED = "removed"


def category_of(height_mm: float, thresholds: CategoryThresholds) -> str:
    """'A' below short_max, 'B' below medium_max, else 'C'. Thresholds belong to the upper bin."""
    if height_mm < thresholds.short_max_mm:
        return "A"
    if height_mm < thresholds.medium_max_mm:
        return "B"
    return "C"


class OrientedBox:
    def __init__(self, center: Tuple[float, float], size: Tuple[float, float], angle: float):
        self.center = (float(center[0]), float(center[1]))
        self.size = (float(size[0]), float(size[1]))
        self.angle = float(angle)

    def scaled(self, factor: float) -> "OrientedBox":
        return OrientedBox(
            (self.center[0] * factor, self.center[1] * factor),
            (self.size[0] * factor, self.size[1] * factor),
            self.angle,
        )

    def to_dict(self) -> dict:
        return {"center": list(self.center), "size": list(self.size), "angle": self.angle}


class DetectedObject:
    def __init__(
        self,
        box: Optional[OrientedBox],
        vertices: List[Point],
        top_y: float,
        bottom_y: float,
        center_x: float,
        height_px: float = 0.0,
        height_mm: float = 0.0,
        category: str = "A",
        depth_ratio: Optional[float] = None,
        object_id: int = 0,
        state: str = DETECTED,
    ):
        self.id = object_id
        self.box = box
        self.vertices = vertices
        self.top_y = float(top_y)
        self.bottom_y = float(bottom_y)
        self.center_x = float(center_x)
        self.height_px = float(height_px)
        self.height_mm = float(height_mm)
        self.category = category
        self.depth_ratio = depth_ratio
        self.state = state

    @property
    def removed(self) -> bool:
        return self.state == REMOVED

    def scale_geometry(self, factor: float) -> None:
        self.box = self.box.scaled(factor) if self.box else None
        self.vertices = [v.scaled(factor) for v in self.vertices]
        self.top_y *= factor
        self.bottom_y *= factor
        self.center_x *= factor
        self.height_px *= factor

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "box": self.box.to_dict() if self.box else None,
            "vertices": [v.to_dict() for v in self.vertices],
            "top_y": self.top_y,
            "bottom_y": self.bottom_y,
            "center_x": self.center_x,
            "height_px": round(self.height_px, 2),
            "height_mm": round(self.height_mm, 1),
            "category": self.category,
            "depth_ratio": self.depth_ratio,
            "state": self.state,
        }

    def __repr__(self):
        return (f"DetectedObject(#{self.id}, x={self.center_x:.0f}, "
                f"{self.height_mm:.1f}mm, {self.category}, {self.state})")


# ---------------------------------------------------------------------------
# Height computation (shared by detection, ingestion and session recompute)
# ---------------------------------------------------------------------------

def measure_height(
    top_y: float,
    reference_y: float,
    ruler: Ruler,
    use_piecewise: bool = False,
    perspective_ratio: Optional[float] = None,
    depth_ratio: Optional[float] = None,
) -> Tuple[float, float]:
    """
    (height_px, height_mm) of an object whose tip is at top_y, measured
    upward from reference_y (the base line, or the object's own bottom).
    """
    height_px = reference_y - top_y
    if perspective_ratio is not None and depth_ratio is not None:
        height_mm = corrected_height_mm(height_px, ruler.scale_px_per_mm, perspective_ratio, depth_ratio)
    elif use_piecewise and len(ruler.ticks) >= 2:
        height_mm = ruler.piecewise_mm(top_y, reference_y)
        if height_px < 0:
            height_mm = -height_mm
    else:
        height_mm = height_px / ruler.scale_px_per_mm
    return height_px, height_mm


def renumber(objects: List[DetectedObject]) -> List[DetectedObject]:
    """Sort by center_x and assign ids 1..N in place; returns the sorted list."""
    objects.sort(key=lambda o: o.center_x)
    for i, obj in enumerate(objects):
        obj.id = i + 1
    return objects


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

def _as_contour(contour) -> Optional[np.ndarray]:
    pts = np.asarray(contour, dtype=np.float32).reshape(-1, 2)
    if pts.shape[0] < 3 or not np.all(np.isfinite(pts)):
        return None
    return pts.reshape(-1, 1, 2)


def detect_objects(
    contours: Iterable,
    ruler: Optional[Ruler],
    base_line: Optional[BaseLine],
    thresholds: CategoryThresholds,
    params: DetectionParams,
) -> List[DetectedObject]:
    """
    Filter contours into measured objects standing on the base line.

    Returns an empty list when nothing survives; that is a valid result.

    Raises:
        CalibrationMissing if the ruler or base line has not been set.
    """
    if ruler is None:
        raise CalibrationMissing("Object detection needs a vertical ruler.",
                                 "Detect or draw the ruler first.")
    if base_line is None:
        raise CalibrationMissing("Object detection needs a base line.",
                                 "Detect or place the base line first.")

    objects: List[DetectedObject] = []
    skipped = {"area": 0, "aspect": 0, "base": 0, "height": 0}

    for raw in contours:
        cnt = _as_contour(raw)
        if cnt is None or cv2.contourArea(cnt) < params.min_contour_area:
            skipped["area"] += 1
            continue

        rect = cv2.minAreaRect(cnt)
        center, (w, h), angle = rect
        short_side, long_side = min(w, h), max(w, h)
        if short_side <= 0 or long_side / short_side < params.min_aspect_ratio:
            skipped["aspect"] += 1
            continue

        vertices = [Point(float(x), float(y)) for x, y in cv2.boxPoints(rect)]
        top_y = min(v.y for v in vertices)
        bottom_y = max(v.y for v in vertices)

        if abs(bottom_y - base_line.pixel_y) > params.base_line_tolerance:
            skipped["base"] += 1
            continue

        height_px, height_mm = measure_height(top_y, base_line.pixel_y, ruler, params.use_piecewise)
        if height_mm < params.min_height_mm:
            skipped["height"] += 1
            continue

        objects.append(DetectedObject(
            box=OrientedBox(center, (w, h), angle),
            vertices=vertices,
            top_y=top_y,
            bottom_y=bottom_y,
            center_x=float(center[0]),
            height_px=height_px,
            height_mm=height_mm,
            category=category_of(height_mm, thresholds),
        ))

    renumber(objects)
    log.info("Detected %d objects (skipped: %s)", len(objects), skipped)
    return objects


def object_from_observation(
    center_x: float,
    top_y: float,
    ruler: Ruler,
    thresholds: CategoryThresholds,
    base_line: Optional[BaseLine] = None,
    width_px: float = 20.0,
    bottom_y: Optional[float] = None,
    depth_ratio: Optional[float] = None,
    perspective_ratio: Optional[float] = None,
) -> DetectedObject:
    """
    Build an object from externally reported coordinates through the same
    height/category path as contour detection. The box is axis-aligned.
    """
    if bottom_y is None:
        bottom_y = base_line.pixel_y if base_line is not None else top_y
    half = (width_px or 20.0) / 2
    vertices = [
        Point(center_x - half, top_y),
        Point(center_x + half, top_y),
        Point(center_x + half, bottom_y),
        Point(center_x - half, bottom_y),
    ]
    reference_y = base_line.pixel_y if base_line is not None else bottom_y
    height_px, height_mm = measure_height(top_y, reference_y, ruler,
                                          perspective_ratio=perspective_ratio,
                                          depth_ratio=depth_ratio)
    return DetectedObject(
        box=None,
        vertices=vertices,
        top_y=top_y,
        bottom_y=bottom_y,
        center_x=center_x,
        height_px=height_px,
        height_mm=height_mm,
        category=category_of(height_mm, thresholds),
        depth_ratio=depth_ratio,
    )


def category_counts(objects: Sequence[DetectedObject]) -> dict:
    counts = {"A": 0, "B": 0, "C": 0}
    for obj in objects:
        if not obj.removed:
            counts[obj.category] += 1
    return counts
