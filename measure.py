"""
measure.py – OpenCV adapter: image -> segments / contours / tick profiles.

Pipeline of one detection pass:
  1. Detect line segments (Canny + probabilistic Hough)
  2. Scale: rulers from tick profiles along the longest candidates, else
     a reference sheet (white quad) found in view
  3. Base line (topmost long horizontal in the lower image part)
  4. Object contours (adaptive threshold + vertical morphology)
  5. Contours -> heights -> categories

Steps 2 and 3 are skipped when the snapshot already carries a ruler or a
base line. A pass with no surviving objects is a valid, empty result.
"""

import logging
from typing import List, Optional, Tuple

import cv2
import numpy as np

import config
from config import DetectionParams
from errors import DegenerateGeometry, DetectionFailure, MeasurementError
from geometry import LineSegment
from lines import (
    BaseLine,
    RulerPair,
    default_base_region,
    detect_base_line,
    detect_rulers,
    fallback_base_line,
)
from objects import DetectedObject, detect_objects
from perspective import PlanarReference, select_sheet_quad
from ruler import Ruler, StripSampler

log = logging.getLogger("photoscale.measure")

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

CANNY_LOW = 50
CANNY_HIGH = 150
HOUGH_THRESHOLD = 80
HOUGH_MIN_LENGTH_FRAC = 0.15  # of the smaller image dimension
HOUGH_MAX_GAP = 15

# Base-line search runs on the cropped lower region with looser settings
BASE_HOUGH_THRESHOLD = 60
BASE_HOUGH_MIN_LENGTH_FRAC = 0.2  # of the image width
BASE_HOUGH_MAX_GAP = 20


class PassResult:
    def __init__(
        self,
        x_ruler: Optional[Ruler],
        y_ruler: Optional[Ruler],
        base_line: Optional[BaseLine],
        objects: List[DetectedObject],
        base_line_detected: bool = True,
        planar_reference: Optional[PlanarReference] = None,
    ):
        self.x_ruler = x_ruler
        self.y_ruler = y_ruler
        self.base_line = base_line
        self.objects = objects
        self.base_line_detected = base_line_detected
        self.planar_reference = planar_reference

    @property
    def empty(self) -> bool:
        return not self.objects

    def to_dict(self) -> dict:
        return {
            "x_ruler": self.x_ruler.to_dict() if self.x_ruler else None,
            "y_ruler": self.y_ruler.to_dict() if self.y_ruler else None,
            "base_line": self.base_line.to_dict() if self.base_line else None,
            "base_line_detected": self.base_line_detected,
            "planar_reference": self.planar_reference.to_dict() if self.planar_reference else None,
            "objects": [o.to_dict() for o in self.objects],
            "empty": self.empty,
        }


# ---------------------------------------------------------------------------
# Image helpers
# ---------------------------------------------------------------------------

def decode_image(image_bytes: bytes) -> np.ndarray:
    arr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR)
    if img is None:
        raise MeasurementError("Could not decode image.", "Use a JPEG or PNG photo.")
    return img


def downscale(img: np.ndarray, max_dim: int) -> Tuple[np.ndarray, float]:
    """Shrink so the longer side is at most max_dim; returns (image, scale <= 1)."""
    h, w = img.shape[:2]
    longest = max(h, w)
    if max_dim <= 0 or longest <= max_dim:
        return img, 1.0
    scale = max_dim / longest
    small = cv2.resize(img, (int(round(w * scale)), int(round(h * scale))), interpolation=cv2.INTER_AREA)
    log.debug("Downscaled %dx%d -> %dx%d (scale %.3f)", w, h, small.shape[1], small.shape[0], scale)
    return small, scale


def to_gray(img: np.ndarray) -> np.ndarray:
    if img.ndim == 2:
        return img
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)


def _segments(lines, dx: float = 0.0, dy: float = 0.0) -> List[LineSegment]:
    if lines is None:
        return []
    return [
        LineSegment.from_coords(x1 + dx, y1 + dy, x2 + dx, y2 + dy)
        for x1, y1, x2, y2 in lines.reshape(-1, 4).tolist()
    ]


def detect_segments(gray: np.ndarray) -> List[LineSegment]:
    """Probabilistic Hough segments over the whole image."""
    blur = cv2.GaussianBlur(gray, (3, 3), 0)
    edges = cv2.Canny(blur, CANNY_LOW, CANNY_HIGH)
    lines = cv2.HoughLinesP(
        edges, rho=1, theta=np.pi / 180,
        threshold=HOUGH_THRESHOLD,
        minLineLength=int(min(gray.shape[:2]) * HOUGH_MIN_LENGTH_FRAC),
        maxLineGap=HOUGH_MAX_GAP,
    )
    segments = _segments(lines)
    log.debug("Hough: %d segments", len(segments))
    return segments


def detect_segments_in(gray: np.ndarray, region: Tuple[float, float, float, float]) -> List[LineSegment]:
    """Hough segments inside region (x, y, w, h), returned in full-image coordinates."""
    x, y, w, h = (int(round(v)) for v in region)
    x, y = max(x, 0), max(y, 0)
    roi = gray[y:y + h, x:x + w]
    if roi.size == 0:
        return []
    blur = cv2.GaussianBlur(roi, (3, 3), 0)
    edges = cv2.Canny(blur, CANNY_LOW, CANNY_HIGH)
    lines = cv2.HoughLinesP(
        edges, rho=1, theta=np.pi / 180,
        threshold=BASE_HOUGH_THRESHOLD,
        minLineLength=int(gray.shape[1] * BASE_HOUGH_MIN_LENGTH_FRAC),
        maxLineGap=BASE_HOUGH_MAX_GAP,
    )
    return _segments(lines, x, y)


def extract_contours(gray: np.ndarray, params: DetectionParams) -> list:
    """
    Candidate object outlines. The vertical 3x7 kernel separates bits that
    touch side by side without merging them vertically.
    """
    binary = cv2.adaptiveThreshold(
        gray, 255, cv2.ADAPTIVE_THRESH_GAUSSIAN_C,
        cv2.THRESH_BINARY_INV, params.adaptive_block_size, params.adaptive_c,
    )
    vert_kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (3, 7))
    eroded = cv2.erode(binary, vert_kernel, iterations=1)
    dilated = cv2.dilate(eroded, vert_kernel, iterations=1)
    closed = cv2.morphologyEx(dilated, cv2.MORPH_CLOSE, np.ones((5, 5), np.uint8))
    contours, _ = cv2.findContours(closed, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    log.debug("Found %d contours", len(contours))
    return list(contours)


def make_strip_sampler(gray: np.ndarray, width: int = config.STRIP_WIDTH_PX) -> StripSampler:
    """
    Sampler averaging a strip `width` px wide across the segment: column
    means for a horizontal ruler, row means for a vertical one.
    """
    img_h, img_w = gray.shape[:2]
    half = width // 2

    def sample(seg: LineSegment, axis: str):
        if axis == "x":
            lo = max(0, int(min(seg.start.x, seg.end.x)))
            hi = min(img_w - 1, int(max(seg.start.x, seg.end.x)))
            center = int(round(seg.midpoint.y))
            strip = gray[max(0, center - half):min(img_h - 1, center + half), lo:hi]
            values = strip.mean(axis=0) if strip.size else np.empty(0)
        else:
            lo = max(0, int(min(seg.start.y, seg.end.y)))
            hi = min(img_h - 1, int(max(seg.start.y, seg.end.y)))
            center = int(round(seg.midpoint.x))
            strip = gray[lo:hi, max(0, center - half):min(img_w - 1, center + half)]
            values = strip.mean(axis=1) if strip.size else np.empty(0)
        positions = np.arange(lo, lo + len(values), dtype=np.float64)
        return positions.tolist(), values.astype(np.float64).tolist()

    return sample


# (canny low, canny high, dilate iterations, approx epsilon) tried in order
SHEET_EDGE_STRATEGIES = [
    (30, 100, 2, 0.02),
    (50, 150, 1, 0.02),
    (20, 80, 3, 0.03),
    (75, 200, 0, 0.02),
]


def _white_mask(img: np.ndarray) -> np.ndarray:
    """Light, unsaturated pixels (paper), holes from markings closed."""
    if img.ndim == 2:
        mask = cv2.inRange(img, np.array([80], np.uint8), np.array([255], np.uint8))
    else:
        bgr = cv2.cvtColor(img, cv2.COLOR_BGRA2BGR) if img.shape[2] == 4 else img
        hsv = cv2.cvtColor(bgr, cv2.COLOR_BGR2HSV)
        mask = cv2.inRange(hsv, np.array([0, 0, 80], np.uint8), np.array([180, 100, 255], np.uint8))
    kernel = np.ones((15, 15), np.uint8)
    mask = cv2.morphologyEx(mask, cv2.MORPH_CLOSE, kernel, iterations=3)
    return cv2.morphologyEx(mask, cv2.MORPH_OPEN, kernel)


def detect_sheet(img: np.ndarray, paper: str = "a4") -> Optional[PlanarReference]:
    """
    Find a reference sheet lying in view and return it as a PlanarReference.

    The white mask is tried first; if it yields no sheet-like quad, Canny
    edges of the masked, blurred image are tried with progressively looser
    settings.
    """
    mask = _white_mask(img)
    shape = mask.shape[:2]
    contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    corners = select_sheet_quad(contours, shape)

    if corners is None:
        blurred = cv2.GaussianBlur(cv2.bitwise_and(to_gray(img), mask), (9, 9), 0)
        for low, high, dilate_iter, epsilon in SHEET_EDGE_STRATEGIES:
            edges = cv2.Canny(blurred, low, high)
            if dilate_iter:
                edges = cv2.dilate(edges, np.ones((3, 3), np.uint8), iterations=dilate_iter)
            contours, _ = cv2.findContours(edges, cv2.RETR_LIST, cv2.CHAIN_APPROX_SIMPLE)
            corners = select_sheet_quad(contours, shape, epsilon_frac=epsilon)
            if corners is not None:
                log.debug("Sheet found with Canny %d/%d", low, high)
                break

    if corners is None:
        log.info("No reference sheet found")
        return None
    return PlanarReference(corners, paper)


def warp_to_reference(img: np.ndarray, reference: PlanarReference,
                      px_per_mm: float = config.RECTIFIED_PX_PER_MM) -> np.ndarray:
    """Top-down view of the reference sheet at px_per_mm resolution."""
    H = reference.homography(px_per_mm)
    if H is None:
        raise DegenerateGeometry("Reference sheet corners are degenerate.",
                                 "Drag the corners onto the four sheet corners and try again.")
    size = (int(round(reference.width_mm * px_per_mm)), int(round(reference.height_mm * px_per_mm)))
    return cv2.warpPerspective(img, H.matrix, size, flags=cv2.INTER_LINEAR,
                               borderMode=cv2.BORDER_CONSTANT)


# ---------------------------------------------------------------------------
# Full pass
# ---------------------------------------------------------------------------

def run_pass(image: np.ndarray, snapshot) -> PassResult:
    """
    One synchronous detection pass over `image` using calibration from a
    SessionSnapshot.

    Without a calibrated vertical ruler, a reference sheet found in the image
    takes precedence over a guessed-length longest line.

    Raises:
        DetectionFailure if no vertical scale can be found
    """
    gray = to_gray(image)
    img_h, img_w = gray.shape[:2]

    x_ruler, y_ruler = snapshot.x_ruler, snapshot.y_ruler
    reference = snapshot.planar_reference
    if y_ruler is None and reference is None:
        try:
            pair = detect_rulers(detect_segments(gray), make_strip_sampler(gray))
        except DetectionFailure as e:
            log.warning("Ruler detection failed: %s", e)
            pair = RulerPair()
        x_ruler = x_ruler or pair.x_ruler
        y_ruler = pair.y_ruler
        if y_ruler is None or y_ruler.source == "longest_line":
            sheet = detect_sheet(image, snapshot.params.paper)
            if sheet is not None:
                log.info("Using %s sheet for scale (%.3f px/mm)", sheet.paper, sheet.scale_px_per_mm)
                y_ruler, reference = None, sheet

    ruler = y_ruler if y_ruler is not None else (reference.as_ruler() if reference else None)
    if ruler is None:
        log.warning("No vertical scale for this pass")
        raise DetectionFailure(
            "No vertical ruler found.",
            "Draw the vertical ruler manually or place a reference sheet in view.",
        )

    base_line = snapshot.base_line
    base_detected = True
    if base_line is None:
        region = default_base_region(img_w, img_h)
        base_line = detect_base_line(detect_segments_in(gray, region), region, ruler,
                                     min_length=img_w * config.BASE_LINE_MIN_WIDTH_FRAC)
        if base_line is None:
            log.warning("Could not auto-detect base line, placing it at %.0f%% height",
                        config.BASE_LINE_FALLBACK_FRAC * 100)
            base_line = fallback_base_line(img_h, ruler)
            base_detected = False

    objects = detect_objects(extract_contours(gray, snapshot.params), ruler, base_line,
                             snapshot.thresholds, snapshot.params)

    log.info("Pass complete: %d objects, %.3f px/mm, base line y=%.0f",
             len(objects), ruler.scale_px_per_mm, base_line.pixel_y)
    return PassResult(x_ruler, y_ruler, base_line, objects, base_detected, reference)


def load_pass():
    """Capability loader: verifies the OpenCV build and hands out run_pass."""
    log.info("OpenCV %s ready", cv2.__version__)
    return run_pass


# ---------------------------------------------------------------------------
# Debug overlay
# ---------------------------------------------------------------------------

CATEGORY_COLORS = {
    "A": (80, 200, 80),
    "B": (0, 200, 255),
    "C": (60, 60, 230),
}


def draw_overlay(img: np.ndarray, result: PassResult) -> np.ndarray:
    """Copy of img with rulers, base line and labelled object boxes drawn in."""
    debug = img.copy() if img.ndim == 3 else cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    font = cv2.FONT_HERSHEY_SIMPLEX

    for ruler in (result.x_ruler, result.y_ruler):
        if ruler is None:
            continue
        p1 = (int(ruler.line.start.x), int(ruler.line.start.y))
        p2 = (int(ruler.line.end.x), int(ruler.line.end.y))
        cv2.line(debug, p1, p2, (255, 128, 0), 2)

    if result.planar_reference is not None:
        quad = np.array([[int(c.x), int(c.y)] for c in result.planar_reference.corners], dtype=np.int32)
        cv2.polylines(debug, [quad], True, (255, 0, 255), 2)

    if result.base_line is not None:
        y = int(result.base_line.pixel_y)
        cv2.line(debug, (0, y), (debug.shape[1] - 1, y), (255, 255, 255), 2)

    for obj in result.objects:
        color = CATEGORY_COLORS.get(obj.category, (0, 255, 0))
        box = np.array([[int(v.x), int(v.y)] for v in obj.vertices], dtype=np.int32)
        cv2.drawContours(debug, [box], 0, color, 2)
        label = f"#{obj.id} {obj.height_mm:.0f}mm {obj.category}"
        cv2.putText(debug, label, (int(obj.center_x) - 30, int(obj.top_y) - 10),
                    font, 0.5, color, 1)
    return debug
