"""
main.py – Command-line entry point for photoscale.

Measures every drill bit standing in the jig on one photo and prints
heights and categories, plus any requested point-to-point distances.
Calibration comes from local detection (rulers, reference sheet, base
line, contours), from manual overrides on the command line, or from a
hosted-vision JSON payload.

Usage:
    python main.py photo.jpg
    python main.py photo.jpg --ruler 120,80,120,880 --ruler-mm 400 --base-line 900
    python main.py photo.jpg --vision-json response.txt --resize-scale 0.5
    python main.py photo.jpg --max-size 1600 --debug-out overlay.jpg -v
    python main.py photo.jpg --measure 410,300,422,300 --measure 416,120,416,880 --surface
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional, Tuple

import cv2

import config
import measure
import vision
from errors import MeasurementError
from perspective import cylinder_surface_mm2, measure_between
from runner import Capability, DetectionRunner
from session import CalibrationSession

log = logging.getLogger("photoscale")


def _coords(text: str, count: int) -> Tuple[float, ...]:
    values = tuple(float(v) for v in text.replace(" ", "").split(","))
    if len(values) != count:
        raise argparse.ArgumentTypeError(f"expected {count} comma-separated numbers, got {text!r}")
    return values


def _corners(text: str) -> List[Tuple[float, float]]:
    values = _coords(text, 8)
    return [(values[i], values[i + 1]) for i in range(0, 8, 2)]


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Measure drill bit heights in a jig photo.")
    ap.add_argument("image", help="JPEG/PNG photo of the jig")
    ap.add_argument("--vision-json", default="", help="Hosted-vision response (text or JSON file) to ingest")
    ap.add_argument("--resize-scale", type=float, default=1.0,
                    help="Downscale factor of the image the vision payload refers to.")
    ap.add_argument("--ruler", type=lambda s: _coords(s, 4), default=None,
                    help="Manual vertical ruler x1,y1,x2,y2 (original image pixels).")
    ap.add_argument("--ruler-mm", type=float, default=config.DEFAULT_RULER_LENGTH_MM,
                    help="Real length of the manual ruler in mm.")
    ap.add_argument("--base-line", type=float, default=None, help="Manual base line y (original pixels).")
    ap.add_argument("--paper", type=_corners, default=None,
                    help="Reference sheet corners x1,y1,...,x4,y4 (original pixels).")
    ap.add_argument("--paper-size", default=None, choices=sorted(config.PAPER_SIZES),
                    help="Reference sheet size (default: PHOTOSCALE_PAPER or a4).")
    ap.add_argument("--measure", type=lambda s: _coords(s, 4), action="append", default=[],
                    help="Distance x1,y1,x2,y2 to measure in mm (original pixels, repeatable).")
    ap.add_argument("--surface", action="store_true",
                    help="With two --measure distances (diameter, length), print the cylinder surface.")
    ap.add_argument("--max-size", type=int, default=0, help="Downscale so the longer side fits (0 = off).")
    ap.add_argument("--debug-out", default="", help="Write an annotated overlay image here.")
    ap.add_argument("--json", action="store_true", help="Print the result as JSON.")
    ap.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return ap


def _apply_manual(session: CalibrationSession, args, scale: float) -> None:
    """Manual inputs are given in original pixels; the pass runs at `scale`."""
    if args.ruler is not None:
        x1, y1, x2, y2 = (v * scale for v in args.ruler)
        session.draw_ruler("y", (x1, y1), (x2, y2), args.ruler_mm)
    if args.paper is not None:
        session.set_planar_reference([(x * scale, y * scale) for x, y in args.paper],
                                      args.paper_size or session.params.paper)
    if args.base_line is not None:
        session.set_base_line(args.base_line * scale)


def measure_file(args) -> CalibrationSession:
    thresholds, params = config.load_from_env()
    session = CalibrationSession(thresholds, params)
    if args.paper_size:
        session.set_params(paper=args.paper_size)

    with open(args.image, "rb") as f:
        img = measure.decode_image(f.read())

    if args.vision_json:
        with open(args.vision_json, "r", encoding="utf-8") as f:
            ingested = vision.ingest(f.read(), thresholds, resize_scale=args.resize_scale)
        vision.apply_to_session(ingested, session)
        return session

    small, scale = measure.downscale(img, args.max_size)
    _apply_manual(session, args, scale)

    with Capability(measure.load_pass) as capability:
        asyncio.run(DetectionRunner(session, capability).run(small))
    if scale < 1.0:
        session.rescale(1.0 / scale)

    if args.debug_out:
        result = measure.PassResult(session.x_ruler, session.y_ruler, session.base_line, session.objects,
                                    planar_reference=session.planar_reference)
        cv2.imwrite(args.debug_out, measure.draw_overlay(img, result))
        log.info("Overlay written to %s", args.debug_out)
    return session


def measure_distances(session: CalibrationSession, args) -> dict:
    """Requested --measure distances (and the --surface area) in mm."""
    distances = []
    for x1, y1, x2, y2 in args.measure:
        mm = measure_between((x1, y1), (x2, y2), session.active_ruler(), session.planar_reference)
        distances.append({"from": [x1, y1], "to": [x2, y2], "mm": mm})
    out = {"distances": distances}
    if args.surface:
        if len(distances) != 2:
            raise MeasurementError("--surface needs exactly two --measure distances.",
                                   "Pass the diameter first, then the length.")
        out["surface_mm2"] = cylinder_surface_mm2(distances[0]["mm"], distances[1]["mm"])
    return out


def _print_table(session: CalibrationSession, extra: dict) -> None:
    summary = session.summary()
    print(f"Scale: {summary['scale_px_per_mm']:.3f} px/mm" if summary["scale_px_per_mm"] else "Scale: -")
    if session.base_line is not None:
        print(f"Base line: y={session.base_line.pixel_y:.0f}")
    if not session.objects:
        print("No objects found.")
    else:
        print(f"{'#':>3}  {'x':>6}  {'height':>9}  cat")
        for obj in session.objects:
            print(f"{obj.id:>3}  {obj.center_x:>6.0f}  {obj.height_mm:>7.1f}mm  {obj.category}")
        counts = summary["categories"]
        print(f"A: {counts['A']}  B: {counts['B']}  C: {counts['C']}")
    for d in extra["distances"]:
        print(f"Distance {d['from']} -> {d['to']}: {d['mm']:.1f}mm")
    if "surface_mm2" in extra:
        print(f"Surface: {extra['surface_mm2']:.0f}mm^2")


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(name)s %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        session = measure_file(args)
        extra = measure_distances(session, args)
    except MeasurementError as e:
        log.warning("Measurement failed: %s", e)
        if args.json:
            print(json.dumps(e.to_dict(), indent=2))
        else:
            print(f"Error: {e}")
            if e.fallback:
                print(f"Hint: {e.fallback}")
        return 1

    if args.json:
        out = session.summary()
        out["objects"] = [o.to_dict() for o in session.objects]
        if args.measure:
            out.update(extra)
        print(json.dumps(out, indent=2))
    else:
        _print_table(session, extra)
    return 0


if __name__ == "__main__":
    sys.exit(main())
