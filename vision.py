"""
vision.py – Ingest calibration data supplied by a hosted vision model.

The service itself is not called from here. Whatever produced the payload,
it is validated with pydantic and resolved ONCE into tagged calibration
sources, which are then built into the same Ruler / BaseLine /
DetectedObject types as local detection uses:

  TickListSource         ruler.ticks[{cm, pixelY}]      (current schema)
  TwoPointSource         xRuler / yRuler endpoints      (legacy schema)
  PlanarReferenceSource  a4Paper near/far edge lengths

Coordinates in the payload refer to the image that was sent; when that
image was downscaled, every pixel quantity is multiplied back by
1 / resize_scale.
"""

import json
import logging
import re
from typing import Annotated, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError

import config
from config import CategoryThresholds
from errors import DetectionFailure, MeasurementError
from geometry import Point
from lines import BaseLine, base_line_value
from objects import DetectedObject, object_from_observation, renumber
from perspective import perspective_from_edges
from ruler import Ruler, ruler_from_observations, two_point_ruler

log = logging.getLogger("photoscale.vision")

A4_SHORT_SIDE_MM = config.PAPER_SIZES["a4"][0]

# ---------------------------------------------------------------------------
# Payload schema
# ---------------------------------------------------------------------------


class TickObservation(BaseModel):
    cm: float
    pixelY: float


class RulerTicks(BaseModel):
    ticks: List[TickObservation] = []


class PaperObservation(BaseModel):
    nearEdgePx: float = 0.0
    farEdgePx: float = 0.0
    perspectiveRatio: Optional[float] = None
    scalePxPerMm: Optional[float] = None


class LegacyRuler(BaseModel):
    startX: float
    startY: float
    endX: float
    endY: float
    lengthCm: float = config.DEFAULT_RULER_LENGTH_MM / 10


class DrillObservation(BaseModel):
    centerX: float
    topY: float
    widthPx: Optional[float] = 20.0
    bottomY: Optional[float] = None
    depthRatio: Optional[float] = None


class JigPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ruler: Optional[RulerTicks] = None
    a4Paper: Optional[PaperObservation] = None
    xRuler: Optional[LegacyRuler] = None
    yRuler: Optional[LegacyRuler] = None
    baseLineY: Optional[float] = None
    drills: List[DrillObservation] = []


# ---------------------------------------------------------------------------
# Calibration sources (tagged variant)
# ---------------------------------------------------------------------------


class TickListSource(BaseModel):
    kind: Literal["ticks"] = "ticks"
    axis: Literal["x", "y"] = "y"
    pairs: List[Tuple[float, float]]  # (pixel, value_mm)


class TwoPointSource(BaseModel):
    kind: Literal["two_point"] = "two_point"
    axis: Literal["x", "y"]
    start: Tuple[float, float]
    end: Tuple[float, float]
    length_mm: float


class PlanarReferenceSource(BaseModel):
    kind: Literal["planar"] = "planar"
    axis: Literal["x", "y"] = "x"
    near_edge_px: float
    far_edge_px: float
    scale_px_per_mm: Optional[float] = None
    edge_mm: float = A4_SHORT_SIDE_MM

    @property
    def perspective_ratio(self) -> Optional[float]:
        return perspective_from_edges(self.near_edge_px, self.far_edge_px)


CalibrationSource = Annotated[
    Union[TickListSource, TwoPointSource, PlanarReferenceSource],
    Field(discriminator="kind"),
]
_source_adapter = TypeAdapter(CalibrationSource)


def parse_source(data: dict):
    """Validate a raw {"kind": ...} dict into its calibration source."""
    return _source_adapter.validate_python(data)


def calibration_sources(payload: JigPayload) -> list:
    """Resolve both payload generations into one list of sources."""
    sources = []
    if payload.ruler is not None and payload.ruler.ticks:
        sources.append(TickListSource(
            axis="y",
            pairs=[(t.pixelY, t.cm * 10.0) for t in payload.ruler.ticks],
        ))
    elif payload.yRuler is not None:
        r = payload.yRuler
        sources.append(TwoPointSource(axis="y", start=(r.startX, r.startY), end=(r.endX, r.endY),
                                      length_mm=r.lengthCm * 10.0))

    if payload.a4Paper is not None and (payload.a4Paper.scalePxPerMm or payload.a4Paper.nearEdgePx):
        p = payload.a4Paper
        sources.append(PlanarReferenceSource(near_edge_px=p.nearEdgePx, far_edge_px=p.farEdgePx,
                                             scale_px_per_mm=p.scalePxPerMm))
    elif payload.xRuler is not None:
        r = payload.xRuler
        sources.append(TwoPointSource(axis="x", start=(r.startX, r.startY), end=(r.endX, r.endY),
                                      length_mm=r.lengthCm * 10.0))
    return sources


def ruler_from_source(source) -> Optional[Ruler]:
    if isinstance(source, TickListSource):
        return ruler_from_observations(source.pairs, axis=source.axis)
    if isinstance(source, TwoPointSource):
        return two_point_ruler(source.start, source.end, source.length_mm,
                               axis=source.axis, source="two_point")
    if isinstance(source, PlanarReferenceSource):
        scale = source.scale_px_per_mm or (source.near_edge_px / source.edge_mm)
        if not scale > 0:
            return None
        end = Point(scale * source.edge_mm, 0) if source.axis == "x" else Point(0, scale * source.edge_mm)
        return two_point_ruler(Point(0, 0), end, source.edge_mm, axis=source.axis, source="planar")
    raise TypeError(f"unknown calibration source {type(source).__name__}")


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------


class Ingested:
    def __init__(self, x_ruler: Optional[Ruler], y_ruler: Optional[Ruler],
                 base_line: Optional[BaseLine], objects: List[DetectedObject],
                 perspective_ratio: Optional[float] = None):
        self.x_ruler = x_ruler
        self.y_ruler = y_ruler
        self.base_line = base_line
        self.objects = objects
        self.perspective_ratio = perspective_ratio

    def rescale(self, factor: float) -> None:
        self.x_ruler = self.x_ruler.scaled(factor) if self.x_ruler else None
        self.y_ruler = self.y_ruler.scaled(factor) if self.y_ruler else None
        self.base_line = self.base_line.scaled(factor) if self.base_line else None
        for obj in self.objects:
            obj.scale_geometry(factor)

    def to_dict(self) -> dict:
        return {
            "x_ruler": self.x_ruler.to_dict() if self.x_ruler else None,
            "y_ruler": self.y_ruler.to_dict() if self.y_ruler else None,
            "base_line": self.base_line.to_dict() if self.base_line else None,
            "perspective_ratio": self.perspective_ratio,
            "objects": [o.to_dict() for o in self.objects],
        }


def extract_json(text: str) -> str:
    """Strip markdown code fences or surrounding prose around a JSON object."""
    content = text.strip()
    fence = re.search(r"```(?:json)?\s*\n?([\s\S]*?)\n?```", content)
    if fence:
        return fence.group(1).strip()
    obj = re.search(r"\{[\s\S]*\}", content)
    if obj:
        return obj.group(0)
    return content


def parse_payload(data: Union[str, dict, JigPayload]) -> JigPayload:
    if isinstance(data, JigPayload):
        return data
    try:
        if isinstance(data, str):
            data = json.loads(extract_json(data))
        return JigPayload.model_validate(data)
    except (json.JSONDecodeError, ValidationError) as e:
        log.warning("Vision payload rejected: %s", e)
        raise MeasurementError(
            f"Could not parse vision payload: {e}",
            "Try again with a clearer photo or calibrate manually.",
        ) from e


def ingest(data: Union[str, dict, JigPayload], thresholds: CategoryThresholds,
           resize_scale: float = 1.0) -> Ingested:
    """
    Build rulers, base line and objects from a hosted-vision payload.

    Args:
        data: raw response text, decoded JSON or a validated JigPayload
        thresholds: category bins
        resize_scale: factor the image was downscaled by before sending (<= 1)

    Raises:
        MeasurementError if the payload cannot be parsed
        DetectionFailure if it carries no usable scale or no objects
    """
    payload = parse_payload(data)

    rulers = {"x": None, "y": None}
    perspective_ratio = None
    for source in calibration_sources(payload):
        ruler = ruler_from_source(source)
        if ruler is None:
            log.warning("Discarding degenerate %s source", source.kind)
            continue
        rulers[source.axis] = ruler
        if isinstance(source, PlanarReferenceSource):
            perspective_ratio = payload.a4Paper.perspectiveRatio or source.perspective_ratio

    scale_ruler = rulers["y"] or rulers["x"]
    if scale_ruler is None:
        raise DetectionFailure("Vision payload has no usable ruler or reference sheet.",
                               "Calibrate the ruler manually.")

    base_line = None
    if payload.baseLineY is not None:
        base_line = BaseLine(payload.baseLineY, base_line_value(payload.baseLineY, rulers["y"]))

    objects = [
        object_from_observation(
            center_x=d.centerX,
            top_y=d.topY,
            ruler=scale_ruler,
            thresholds=thresholds,
            base_line=base_line,
            width_px=d.widthPx or 20.0,
            bottom_y=d.bottomY,
            depth_ratio=d.depthRatio,
            perspective_ratio=perspective_ratio if d.depthRatio is not None else None,
        )
        for d in payload.drills
    ]
    renumber(objects)
    if not objects:
        log.warning("Vision payload contains no objects")
        raise DetectionFailure("No drill bits detected in the vision payload.",
                               "Ensure the drill bits are clearly visible, or run local detection.")

    result = Ingested(rulers["x"], rulers["y"], base_line, objects, perspective_ratio)
    if 0 < resize_scale < 1:
        result.rescale(1.0 / resize_scale)
    log.info("Ingested vision payload: %d objects, scale %.3f px/mm",
             len(objects), scale_ruler.scale_px_per_mm)
    return result


def apply_to_session(ingested: Ingested, session) -> None:
    """Install ingested calibration and objects into a CalibrationSession."""
    def _mutate(s):
        s.x_ruler = ingested.x_ruler
        s.y_ruler = ingested.y_ruler
        s.base_line = ingested.base_line
        s._perspective_ratio = ingested.perspective_ratio
        s._objects = list(ingested.objects)

    session.update(_mutate)
