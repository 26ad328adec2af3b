"""
session.py – Calibration session: rulers, base line, objects, thresholds.

The session is the single owner of calibration state. Every mutation goes
through update(), which re-derives height_mm / category of all
non-removed objects afterwards. Derived fields are a pure function of
(top_y, base line or bottom_y, active scale, perspective); ids, boxes and
object states are never touched by a recompute.

Not thread-safe: callers serialize mutations. Off-thread passes work on
snapshot() and hand their result back through apply_result().
"""

import logging
import time
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar

import config
from config import CategoryThresholds, DetectionParams
from errors import CalibrationMissing, DegenerateGeometry
from lines import BaseLine, base_line_value
from objects import (
    ADJUSTED,
    DETECTED,
    REMOVED,
    DetectedObject,
    category_counts,
    category_of,
    detect_objects,
    measure_height,
)
from perspective import PlanarReference
from ruler import Ruler, two_point_ruler

log = logging.getLogger("photoscale.session")

T = TypeVar("T")


class SessionSnapshot:
    """Frozen copy of the inputs a detection pass needs."""

    __slots__ = ("x_ruler", "y_ruler", "base_line", "planar_reference", "perspective_ratio",
                 "thresholds", "params", "taken_at", "_frozen")

    def __init__(self, x_ruler, y_ruler, base_line, planar_reference, perspective_ratio,
                 thresholds, params, taken_at):
        self.x_ruler = x_ruler
        self.y_ruler = y_ruler
        self.base_line = base_line
        self.planar_reference = planar_reference
        self.perspective_ratio = perspective_ratio
        self.thresholds = thresholds
        self.params = params
        self.taken_at = taken_at
        self._frozen = True

    def __setattr__(self, name, value):
        if getattr(self, "_frozen", False):
            raise AttributeError("SessionSnapshot is read-only")
        object.__setattr__(self, name, value)

    def active_ruler(self) -> Optional[Ruler]:
        return _active_ruler(self.y_ruler, self.planar_reference)


def _active_ruler(y_ruler: Optional[Ruler], reference: Optional[PlanarReference]) -> Optional[Ruler]:
    if y_ruler is not None:
        return y_ruler
    if reference is not None:
        return reference.as_ruler()
    return None


class CalibrationSession:
    def __init__(self, thresholds: Optional[CategoryThresholds] = None,
                 params: Optional[DetectionParams] = None):
        self.thresholds = thresholds or CategoryThresholds()
        self.params = params or DetectionParams()
        self.x_ruler: Optional[Ruler] = None
        self.y_ruler: Optional[Ruler] = None
        self.base_line: Optional[BaseLine] = None
        self.planar_reference: Optional[PlanarReference] = None
        self._perspective_ratio: Optional[float] = None
        self._objects: List[DetectedObject] = []
        self.last_pass_at: Optional[float] = None

    # -----------------------------------------------------------------------
    # Mutation core
    # -----------------------------------------------------------------------

    def update(self, mutator: Callable[["CalibrationSession"], T]) -> T:
        """Apply mutator, then recompute every derived object field."""
        result = mutator(self)
        self.recompute()
        return result

    def recompute(self) -> None:
        ruler = self.active_ruler()
        if ruler is None:
            log.debug("Recompute skipped: no active scale")
            return
        ratio = self.perspective_ratio
        for obj in self.objects:
            self._derive(obj, ruler, ratio)

    def _derive(self, obj: DetectedObject, ruler: Ruler, ratio: Optional[float]) -> None:
        reference_y = self.base_line.pixel_y if self.base_line is not None else obj.bottom_y
        obj.height_px, obj.height_mm = measure_height(
            obj.top_y, reference_y, ruler,
            use_piecewise=self.params.use_piecewise,
            perspective_ratio=ratio if obj.depth_ratio is not None else None,
            depth_ratio=obj.depth_ratio,
        )
        obj.category = category_of(obj.height_mm, self.thresholds)

    # -----------------------------------------------------------------------
    # Calibration inputs
    # -----------------------------------------------------------------------

    @property
    def perspective_ratio(self) -> Optional[float]:
        if self._perspective_ratio is not None:
            return self._perspective_ratio
        if self.planar_reference is not None:
            return self.planar_reference.perspective_ratio
        return None

    def active_ruler(self) -> Optional[Ruler]:
        return _active_ruler(self.y_ruler, self.planar_reference)

    def active_scale(self) -> float:
        ruler = self.active_ruler()
        if ruler is None:
            raise CalibrationMissing("No scale available.",
                                     "Calibrate a ruler or a reference sheet first.")
        return ruler.scale_px_per_mm

    def set_ruler(self, axis: str, ruler: Optional[Ruler]) -> None:
        if ruler is not None and ruler.axis != axis:
            raise ValueError(f"ruler axis {ruler.axis!r} does not match slot {axis!r}")

        def _mutate(s: "CalibrationSession"):
            if axis == "x":
                s.x_ruler = ruler
            elif axis == "y":
                s.y_ruler = ruler
                if s.base_line is not None:
                    s.base_line = BaseLine(s.base_line.pixel_y, base_line_value(s.base_line.pixel_y, ruler))
            else:
                raise ValueError(f"axis must be 'x' or 'y', got {axis!r}")

        self.update(_mutate)
        log.info("Ruler %s set: %s", axis, ruler)

    def draw_ruler(self, axis: str, start, end,
                   real_length_mm: float = config.DEFAULT_RULER_LENGTH_MM) -> Ruler:
        """Manual two-point ruler from user-drawn endpoints."""
        ruler = two_point_ruler(start, end, real_length_mm, axis=axis, source="manual")
        if ruler is None:
            raise DegenerateGeometry("Ruler endpoints coincide.",
                                     "Draw the ruler again along its full length.")
        self.set_ruler(axis, ruler)
        return ruler

    def set_base_line(self, pixel_y: float) -> BaseLine:
        """Place (or drag) the base line; all heights are recomputed."""
        def _mutate(s: "CalibrationSession"):
            s.base_line = BaseLine(pixel_y, base_line_value(pixel_y, s.y_ruler))
            return s.base_line

        base = self.update(_mutate)
        log.info("Base line moved to y=%.1f", base.pixel_y)
        return base

    def move_base_line(self, pixel_y: float) -> BaseLine:
        """Drag an existing base line. Removed objects stay removed."""
        if self.base_line is None:
            raise CalibrationMissing("No base line to move.", "Place the base line first.")
        return self.set_base_line(pixel_y)

    def set_thresholds(self, short_max_mm: float, medium_max_mm: float) -> None:
        thresholds = CategoryThresholds(short_max_mm, medium_max_mm)

        def _mutate(s: "CalibrationSession"):
            s.thresholds = thresholds

        self.update(_mutate)

    def set_params(self, **overrides) -> None:
        params = self.params.copy(**overrides)

        def _mutate(s: "CalibrationSession"):
            s.params = params

        self.update(_mutate)

    def set_planar_reference(self, corners: Sequence, paper: str = "a4") -> PlanarReference:
        reference = PlanarReference(corners, paper)
        if reference.degenerate or reference.homography() is None:
            raise DegenerateGeometry(
                "Reference sheet corners are degenerate.",
                "Drag the corners onto the four sheet corners and try again.",
            )

        def _mutate(s: "CalibrationSession"):
            s.planar_reference = reference

        self.update(_mutate)
        log.info("Planar reference %s: %.3f px/mm, perspective ratio %.3f",
                 paper, reference.scale_px_per_mm, reference.perspective_ratio or 1.0)
        return reference

    def set_perspective_ratio(self, ratio: Optional[float]) -> None:
        if ratio is not None and ratio <= 0:
            raise ValueError("perspective ratio must be positive")

        def _mutate(s: "CalibrationSession"):
            s._perspective_ratio = ratio

        self.update(_mutate)

    # -----------------------------------------------------------------------
    # Objects
    # -----------------------------------------------------------------------

    @property
    def objects(self) -> List[DetectedObject]:
        return [o for o in self._objects if not o.removed]

    def run_detection(self, contours: Iterable) -> List[DetectedObject]:
        """Replace all objects with a fresh pass; ids are reassigned by position."""
        found = detect_objects(contours, self.active_ruler(), self.base_line,
                               self.thresholds, self.params)
        self.update(lambda s: setattr(s, "_objects", found))
        self.last_pass_at = time.monotonic()
        if not found:
            log.info("No objects found")
        return self.objects

    def get_object(self, object_id: int) -> DetectedObject:
        for obj in self.objects:
            if obj.id == object_id:
                return obj
        raise ValueError(f"Object #{object_id} not found.")

    def adjust_object(self, object_id: int, top_y: Optional[float] = None,
                      bottom_y: Optional[float] = None,
                      depth_ratio: Optional[float] = None) -> DetectedObject:
        obj = self.get_object(object_id)

        def _mutate(s: "CalibrationSession"):
            if top_y is not None:
                obj.top_y = float(top_y)
            if bottom_y is not None:
                obj.bottom_y = float(bottom_y)
            if depth_ratio is not None:
                obj.depth_ratio = float(depth_ratio)
            obj.state = ADJUSTED

        self.update(_mutate)
        return obj

    def remove_object(self, object_id: int) -> None:
        obj = self.get_object(object_id)
        obj.state = REMOVED
        log.info("Object #%d removed", object_id)

    # -----------------------------------------------------------------------
    # Passes, snapshots, units
    # -----------------------------------------------------------------------

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            x_ruler=self.x_ruler,
            y_ruler=self.y_ruler,
            base_line=self.base_line,
            planar_reference=self.planar_reference,
            perspective_ratio=self.perspective_ratio,
            thresholds=CategoryThresholds(self.thresholds.short_max_mm, self.thresholds.medium_max_mm),
            params=self.params.copy(),
            taken_at=time.monotonic(),
        )

    def apply_result(self, result) -> None:
        """
        Install a pass result (anything with x_ruler, y_ruler, base_line and
        objects attributes, optionally planar_reference). Calibration the user already set is kept.
        """
        def _mutate(s: "CalibrationSession"):
            if s.x_ruler is None and result.x_ruler is not None:
                s.x_ruler = result.x_ruler
            if s.y_ruler is None and result.y_ruler is not None:
                s.y_ruler = result.y_ruler
            if s.base_line is None and result.base_line is not None:
                s.base_line = result.base_line
            reference = getattr(result, "planar_reference", None)
            if s.planar_reference is None and reference is not None:
                s.planar_reference = reference
            s._objects = list(result.objects)

        self.update(_mutate)
        self.last_pass_at = time.monotonic()

    def rescale(self, factor: float) -> None:
        """Multiply every stored pixel quantity by factor (e.g. 1/downscale)."""
        if not factor > 0:
            raise ValueError("rescale factor must be positive")

        def _mutate(s: "CalibrationSession"):
            s.x_ruler = s.x_ruler.scaled(factor) if s.x_ruler else None
            s.y_ruler = s.y_ruler.scaled(factor) if s.y_ruler else None
            s.base_line = s.base_line.scaled(factor) if s.base_line else None
            s.planar_reference = s.planar_reference.scaled(factor) if s.planar_reference else None
            for obj in s._objects:
                obj.scale_geometry(factor)

        self.update(_mutate)

    def reset(self) -> None:
        self.x_ruler = None
        self.y_ruler = None
        self.base_line = None
        self.planar_reference = None
        self._perspective_ratio = None
        self._objects = []
        self.thresholds = CategoryThresholds()
        self.params = DetectionParams()
        self.last_pass_at = None

    def summary(self) -> dict:
        ruler = self.active_ruler()
        return {
            "scale_px_per_mm": ruler.scale_px_per_mm if ruler else None,
            "base_line": self.base_line.to_dict() if self.base_line else None,
            "perspective_ratio": self.perspective_ratio,
            "thresholds": self.thresholds.to_dict(),
            "object_count": len(self.objects),
            "categories": category_counts(self.objects),
            "detected": sum(1 for o in self.objects if o.state == DETECTED),
            "adjusted": sum(1 for o in self.objects if o.state == ADJUSTED),
        }
