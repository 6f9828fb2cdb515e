"""Geometry primitives shared by the extraction, sequencing and planning stages.

Points and polylines are immutable values.  Later stages reorder or flip
polylines by building new instances, never by mutating the ones they were
given.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

# Two points closer than this are treated as the same point.
EPSILON = 1e-9


class Point(NamedTuple):
    """A 2D position, in millimetres unless stated otherwise."""

    x: float
    y: float

    def distance(self, other: "Point") -> float:
        return math.hypot(self.x - other.x, self.y - other.y)

    def lerp(self, other: "Point", t: float) -> "Point":
        return Point(self.x + (other.x - self.x) * t, self.y + (other.y - self.y) * t)


@dataclass(frozen=True)
class Polyline:
    """One continuous pen-down stroke.

    Use :meth:`build` to create instances from raw points; it prunes
    zero-length edges and reports degenerate strokes by returning ``None``.
    Direct construction validates the same invariant and raises instead.
    """

    points: Tuple[Point, ...]

    def __post_init__(self) -> None:
        if len(self.points) < 2:
            raise ValueError("Polyline needs at least two distinct points")
        for a, b in zip(self.points, self.points[1:]):
            if a.distance(b) <= EPSILON:
                raise ValueError(f"Polyline has coincident consecutive points at {a}")

    @classmethod
    def build(cls, points: Iterable[Sequence[float]], *, eps: float = EPSILON) -> Optional["Polyline"]:
        pruned: List[Point] = []
        for raw in points:
            p = Point(float(raw[0]), float(raw[1]))
            if pruned and pruned[-1].distance(p) <= eps:
                continue
            pruned.append(p)
        if len(pruned) < 2:
            return None
        return cls(tuple(pruned))

    @property
    def start(self) -> Point:
        return self.points[0]

    @property
    def end(self) -> Point:
        return self.points[-1]

    def endpoints(self) -> Tuple[Point, Point]:
        return self.start, self.end

    def reversed(self) -> "Polyline":
        return Polyline(tuple(reversed(self.points)))

    def length(self) -> float:
        return sum(a.distance(b) for a, b in zip(self.points, self.points[1:]))

    def __len__(self) -> int:
        return len(self.points)


def bounding_box(polylines: Iterable[Polyline]) -> Optional[Tuple[Point, Point]]:
    xs: List[float] = []
    ys: List[float] = []
    for poly in polylines:
        for x, y in poly.points:
            xs.append(x)
            ys.append(y)
    if not xs:
        return None
    return Point(min(xs), min(ys)), Point(max(xs), max(ys))


def total_length(polylines: Iterable[Polyline]) -> float:
    return sum(poly.length() for poly in polylines)


__all__ = ["EPSILON", "Point", "Polyline", "bounding_box", "total_length"]
