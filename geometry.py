"""
geometry.py – Point / line segment value types and corner helpers.
"""

import math
from typing import List, Optional, Sequence


class Point:
    __slots__ = ("x", "y")

    def __init__(self, x: float, y: float):
        self.x = float(x)
        self.y = float(y)

    @classmethod
    def of(cls, value) -> "Point":
        """Accept a Point, an (x, y) pair or a {"x", "y"} dict."""
        if isinstance(value, Point):
            return value
        if isinstance(value, dict):
            return cls(value["x"], value["y"])
        x, y = value
        return cls(x, y)

    def scaled(self, factor: float) -> "Point":
        return Point(self.x * factor, self.y * factor)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y}

    def __iter__(self):
        yield self.x
        yield self.y

    def __eq__(self, other):
        if not isinstance(other, Point):
            return NotImplemented
        return self.x == other.x and self.y == other.y

    def __hash__(self):
        return hash((self.x, self.y))

    def __repr__(self):
        return f"Point({self.x:.2f}, {self.y:.2f})"


class LineSegment:
    __slots__ = ("start", "end")

    def __init__(self, start, end):
        self.start = Point.of(start)
        self.end = Point.of(end)

    @classmethod
    def from_coords(cls, x1: float, y1: float, x2: float, y2: float) -> "LineSegment":
        return cls(Point(x1, y1), Point(x2, y2))

    @property
    def dx(self) -> float:
        return self.end.x - self.start.x

    @property
    def dy(self) -> float:
        return self.end.y - self.start.y

    @property
    def length(self) -> float:
        return math.hypot(self.dx, self.dy)

    @property
    def angle_deg(self) -> float:
        """Direction angle in degrees, atan2(dy, dx)."""
        return math.degrees(math.atan2(self.dy, self.dx))

    @property
    def midpoint(self) -> Point:
        return Point((self.start.x + self.end.x) / 2, (self.start.y + self.end.y) / 2)

    def scaled(self, factor: float) -> "LineSegment":
        return LineSegment(self.start.scaled(factor), self.end.scaled(factor))

    def to_dict(self) -> dict:
        return {"start": self.start.to_dict(), "end": self.end.to_dict()}

    def __repr__(self):
        return f"LineSegment({self.start!r} -> {self.end!r}, len={self.length:.1f})"


def distance(p1, p2) -> float:
    a, b = Point.of(p1), Point.of(p2)
    return math.hypot(b.x - a.x, b.y - a.y)


def order_corners(points: Sequence) -> Optional[List[Point]]:
    """
    Order four corners as (TL, TR, BR, BL).

    Sort by y into a top and a bottom pair, then by x within each pair.
    Returns None unless exactly four points are given.
    """
    pts = [Point.of(p) for p in points]
    if len(pts) != 4:
        return None
    by_y = sorted(pts, key=lambda p: p.y)
    top = sorted(by_y[:2], key=lambda p: p.x)
    bottom = sorted(by_y[2:], key=lambda p: p.x)
    return [top[0], top[1], bottom[1], bottom[0]]


def _cross(o: Point, a: Point, b: Point) -> float:
    return (a.x - o.x) * (b.y - o.y) - (a.y - o.y) * (b.x - o.x)


def has_collinear_triple(points: Sequence, tol: float = 1e-6) -> bool:
    """True if any three of the points are (nearly) collinear or coincide."""
    pts = [Point.of(p) for p in points]
    n = len(pts)
    scale = max([abs(c) for p in pts for c in p] + [1.0])
    for i in range(n):
        for j in range(i + 1, n):
            for k in range(j + 1, n):
                if abs(_cross(pts[i], pts[j], pts[k])) <= tol * scale * scale:
                    return True
    return False
